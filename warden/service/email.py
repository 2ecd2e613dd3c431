from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Mapping, Optional, Protocol, Tuple

from warden.logging import get_logger, redact_email

logger = get_logger(__name__)

PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"


class NotificationDispatcher(Protocol):
    def send(self, recipient: str, template_kind: str, data: Mapping[str, Any]) -> bool: ...


_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.5; color: #222;">
  <h2>{heading}</h2>
  <p>{intro}</p>
  <p><a href="{url}">{action}</a></p>
  <p>{expiry}</p>
  <p style="font-size: 12px; color: #666;">{app_name}. If the link does not open, paste this address into your browser: {url}</p>
</body>
</html>
"""

_TEXT_LAYOUT = """{heading}

{intro}

{url}

{expiry}

-- {app_name}
"""


class EmailService:
    """SMTP dispatcher for account emails.

    When no SMTP host is configured the message is logged instead of sent,
    which keeps local development and tests free of a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Warden",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, recipient: str, template_kind: str, data: Mapping[str, Any]) -> bool:
        subject, html_body, text_body = self._render(template_kind, data)
        return self._send_email(recipient, subject, html_body, text_body)

    def _render(self, template_kind: str, data: Mapping[str, Any]) -> Tuple[str, str, str]:
        token = data.get("token")
        if not token:
            raise ValueError(f"template {template_kind!r} requires a token")
        if template_kind == PASSWORD_RESET:
            minutes = data.get("expires_in_minutes", 15)
            parts = {
                "heading": "Reset your password",
                "intro": "Someone asked to reset the password for this account. Use the link below to pick a new one.",
                "url": f"{self.base_url}/reset-password?token={token}",
                "action": "Choose a new password",
                "expiry": f"The link expires in {minutes} minutes. If you did not ask for this, ignore this email.",
            }
            subject = f"Reset your {self.from_name} password"
        elif template_kind == EMAIL_VERIFICATION:
            hours = data.get("expires_in_hours", 24)
            parts = {
                "heading": "Confirm your email address",
                "intro": "Confirm this address to activate your account.",
                "url": f"{self.base_url}/verify-email?token={token}",
                "action": "Confirm email",
                "expiry": f"The link expires in {hours} hours.",
            }
            subject = f"Confirm your {self.from_name} email"
        else:
            raise ValueError(f"unknown email template {template_kind!r}")
        parts["app_name"] = self.from_name
        return subject, _HTML_LAYOUT.format(**parts), _TEXT_LAYOUT.format(**parts)

    def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> bool:
        """Returns True if the message was handed to the SMTP server (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_email(to_email))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True
