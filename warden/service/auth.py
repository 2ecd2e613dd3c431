from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from warden.config import Settings, get_settings
from warden.logging import get_logger, hash_email, sanitize_error_message
from warden.service.clock import Clock, RandomSource, SystemClock, SystemRandomSource
from warden.service.email import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    EmailService,
    NotificationDispatcher,
)
from warden.service.errors import (
    ConflictError,
    ErrorKind,
    Invalid2FACodeError,
    InvalidCredentialsError,
    InvalidTokenError,
    RateLimitExceededError,
    ServiceError,
    ServiceUnavailableError,
    TwoFactorRequiredError,
    UserNotFoundError,
    ValidationError,
    WeakPasswordError,
    error_for_kind,
)
from warden.service.one_time_tokens import OneTimeTokenVault
from warden.service.passwords import (
    Argon2PasswordHasher,
    PasswordHasher,
    password_strength_errors,
)
from warden.service.rate_limit import MemoryRateLimiter, RateLimiter
from warden.service.schemas import LoginRequest, normalize_email
from warden.service.security_events import AlertHook, SecurityEventRecorder
from warden.service.sessions import SessionManager
from warden.service.tokens import REFRESH, TokenSigner
from warden.service.two_factor import TwoFactorAuthenticator, TwoFactorSetup
from warden.storage.errors import ConstraintViolation
from warden.storage.memory import MemoryStore
from warden.storage.models import (
    Account,
    AccountStatus,
    RiskLevel,
    SecurityEventType,
    Session,
    TokenPurpose,
)

logger = get_logger(__name__)

LOGIN_WINDOW_SECONDS = 60
PASSWORD_RESET_WINDOW_SECONDS = 24 * 60 * 60
VERIFICATION_WINDOW_SECONDS = 60 * 60

ROLE_PERMISSIONS: Dict[str, frozenset[str]] = {
    "admin": frozenset({"*"}),
    "manager": frozenset(
        {
            "view_users",
            "manage_users",
            "view_reports",
            "view_security_events",
            "revoke_sessions",
            "update_own_profile",
            "manage_own_sessions",
            "manage_own_2fa",
        }
    ),
    "user": frozenset(
        {
            "view_own_profile",
            "update_own_profile",
            "manage_own_sessions",
            "manage_own_2fa",
        }
    ),
}

# Login gate failures that are expected user states rather than attacks
_LOW_RISK_GATES = frozenset({ErrorKind.EMAIL_NOT_VERIFIED, ErrorKind.PASSWORD_EXPIRED})


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"


@dataclass
class LoginResult:
    account: Dict[str, Any]
    access_token: str
    refresh_token: str
    session_id: str
    expires_at: datetime
    risk_level: RiskLevel = RiskLevel.LOW


@dataclass
class RegistrationResult:
    account: Dict[str, Any]
    verification_sent: bool


@dataclass
class AuthContext:
    account_id: str
    role: str
    session_id: str
    email: Optional[str] = None


@dataclass
class SecurityMetrics:
    active_sessions: int = 0
    recent_logins: int = 0
    failed_attempts: int = 0
    security_events: int = 0


@dataclass
class ServiceStatus:
    status: str
    active_sessions: int
    logins_today: int
    pending_verifications: int
    failed_logins_last_hour: int
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)


def _audited(exc: ServiceError) -> ServiceError:
    exc.audited = True
    return exc


class AuthService:
    """Login state machine and account security flows.

    Public operations are coroutines and raise ``ServiceError`` subclasses.
    Every failed login, whichever gate rejects it, lands in the security
    event log before the error reaches the caller. Failures of the store or
    of other collaborators surface as ``ServiceUnavailableError``.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        rng: Optional[RandomSource] = None,
        hasher: Optional[PasswordHasher] = None,
        signer: Optional[TokenSigner] = None,
        rate_limiter: Optional[RateLimiter] = None,
        notifier: Optional[NotificationDispatcher] = None,
        alert_hook: Optional[AlertHook] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.rng = rng or SystemRandomSource()
        self.hasher = hasher or Argon2PasswordHasher()
        self.signer = signer or TokenSigner(
            self.settings.jwt_secret,
            refresh_secret=self.settings.refresh_signing_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            clock=self.clock,
        )
        self.rate_limiter = rate_limiter or MemoryRateLimiter(self.clock)
        self.notifier = notifier or EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.events = SecurityEventRecorder(
            store,
            self.clock,
            alert_hook=alert_hook,
            lookback=timedelta(hours=self.settings.risk_lookback_hours),
            sample_size=self.settings.risk_sample_size,
            distinct_ip_threshold=self.settings.risk_distinct_ip_threshold,
            distinct_agent_threshold=self.settings.risk_distinct_agent_threshold,
            event_threshold=self.settings.risk_event_threshold,
        )
        self.tokens = OneTimeTokenVault(store, self.clock, self.rng)
        self.sessions = SessionManager(
            store,
            self.clock,
            self.rng,
            max_sessions=self.settings.max_active_sessions,
            idle_timeout=timedelta(minutes=self.settings.session_idle_timeout_minutes),
        )
        self.two_factor = TwoFactorAuthenticator(
            store,
            self.clock,
            self.rng,
            self.events,
            issuer=self.settings.totp_issuer,
            window=self.settings.totp_window_steps,
            interval=self.settings.totp_interval_seconds,
            backup_code_count=self.settings.backup_code_count,
        )
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    # ------------------------------------------------------------------ helpers

    @contextlib.contextmanager
    def _guard(self, operation: str):
        """Translate collaborator failures into the service error taxonomy."""
        try:
            yield
        except ServiceError:
            raise
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        except Exception as exc:
            self.logger.error(
                "auth_collaborator_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise ServiceUnavailableError("authentication service unavailable") from exc

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise UserNotFoundError("account not found")
        return account

    def _verify_dummy(self, password: str) -> None:
        """Spend one hash verification so unknown emails cost as much as wrong passwords."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hasher.hash(self.rng.token_urlsafe(16))
        self.hasher.verify(password, self._dummy_hash)

    def _check_password_strength(self, password: str) -> None:
        errors = password_strength_errors(
            password or "", min_length=self.settings.strong_password_min_length
        )
        if errors:
            raise WeakPasswordError("password does not meet requirements", detail={"errors": errors})

    async def _dispatch(self, recipient: str, template_kind: str, data: Mapping[str, Any]) -> bool:
        """Hand a message to the notifier; delivery problems are logged, never raised."""
        try:
            return bool(await asyncio.to_thread(self.notifier.send, recipient, template_kind, data))
        except Exception as exc:
            self.logger.error(
                "notification_dispatch_failed",
                template=template_kind,
                email_hash=hash_email(recipient),
                error_type=type(exc).__name__,
            )
            return False

    def _issue_tokens(self, account: Account, session_id: str) -> TokenPair:
        now = self.clock.now()
        access_ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        access_token = self.signer.sign_access_token(
            {"sub": account.id, "email": account.email, "role": account.role, "sid": session_id},
            access_ttl,
        )
        refresh_token = self.signer.sign_refresh_token(
            {"sub": account.id, "sid": session_id}, refresh_ttl
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + access_ttl,
        )

    # ------------------------------------------------------------------- login

    def _parse_login(self, request: Union[LoginRequest, Mapping[str, Any]]) -> LoginRequest:
        try:
            parsed = (
                request
                if isinstance(request, LoginRequest)
                else LoginRequest.model_validate(dict(request))
            )
        except PydanticValidationError as exc:
            raise ValidationError(
                "invalid login request",
                detail={"errors": [err["msg"] for err in exc.errors()]},
            ) from exc
        except (TypeError, ValueError) as exc:
            raise ValidationError("invalid login request") from exc
        min_length = self.settings.login_password_min_length
        if len(parsed.password) < min_length:
            raise ValidationError(
                "invalid login request",
                detail={"errors": [f"password must be at least {min_length} characters"]},
            )
        return parsed

    def _check_account_status(self, account: Account, now: datetime) -> Optional[ErrorKind]:
        """First failing login gate for ``account``, or None when it may proceed."""
        if account.status == AccountStatus.SUSPENDED:
            return ErrorKind.ACCOUNT_SUSPENDED
        if account.status == AccountStatus.PENDING_VERIFICATION:
            return ErrorKind.EMAIL_NOT_VERIFIED
        if account.is_locked(now):
            return ErrorKind.ACCOUNT_LOCKED
        if account.password_expired(now, timedelta(days=self.settings.password_max_age_days)):
            return ErrorKind.PASSWORD_EXPIRED
        if not account.email_verified:
            return ErrorKind.EMAIL_NOT_VERIFIED
        return None

    async def login(
        self,
        request: Union[LoginRequest, Mapping[str, Any]],
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        req = self._parse_login(request)
        ip_addr = ip_addr or "unknown"
        with self._guard("login_rate_limit"):
            allowed = await self.rate_limiter.allow(
                f"login_{ip_addr}",
                self.settings.login_rate_limit_per_minute,
                LOGIN_WINDOW_SECONDS,
            )
            if not allowed:
                await self.events.record(
                    SecurityEventType.FAILED_LOGIN,
                    None,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    details={
                        "reason": "rate_limit_exceeded",
                        "email_hash": hash_email(req.email),
                    },
                    risk_level=RiskLevel.MEDIUM,
                )
        if not allowed:
            raise RateLimitExceededError(
                "too many login attempts",
                detail={"retry_after_seconds": LOGIN_WINDOW_SECONDS},
            )

        try:
            with self._guard("login"):
                return await self._attempt_login(req, ip_addr, user_agent)
        except ServiceError as exc:
            if not exc.audited:
                with self._guard("login_audit"):
                    await self.events.record(
                        SecurityEventType.FAILED_LOGIN,
                        None,
                        ip_addr=ip_addr,
                        user_agent=user_agent,
                        details={
                            "reason": exc.error_code,
                            "error": sanitize_error_message(exc.message),
                            "email_hash": hash_email(req.email),
                        },
                        risk_level=RiskLevel.MEDIUM,
                    )
                exc.audited = True
            raise

    async def _attempt_login(
        self, req: LoginRequest, ip_addr: str, user_agent: Optional[str]
    ) -> LoginResult:
        account = self.store.get_account_by_email(req.email)
        if account is None:
            self._verify_dummy(req.password)
            raise InvalidCredentialsError("invalid email or password")

        now = self.clock.now()
        gate = self._check_account_status(account, now)
        if gate is not None:
            detail: Dict[str, Any] = {}
            if gate == ErrorKind.ACCOUNT_LOCKED and account.account_locked_until:
                detail["locked_until"] = account.account_locked_until.isoformat()
            await self.events.record(
                SecurityEventType.FAILED_LOGIN,
                account.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                details={"reason": gate.value, **detail},
                risk_level=RiskLevel.LOW if gate in _LOW_RISK_GATES else RiskLevel.MEDIUM,
            )
            raise _audited(error_for_kind(gate, detail=detail))

        risk = self.events.classify_login_risk(account.id)

        if account.two_factor_enabled:
            if not req.two_factor_code:
                await self.events.record(
                    SecurityEventType.LOGIN,
                    account.id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    details={"requires_2fa": True},
                    risk_level=risk,
                )
                raise _audited(TwoFactorRequiredError("two-factor code required"))
            verified = await self.two_factor.verify_code(
                account.id, req.two_factor_code, ip_addr=ip_addr, user_agent=user_agent
            )
            if not verified:
                await self._handle_failed_login(account, ip_addr, user_agent, "invalid_2fa")
                raise _audited(Invalid2FACodeError("invalid two-factor code"))

        if not self.hasher.verify(req.password, account.hashed_password):
            await self._handle_failed_login(account, ip_addr, user_agent, "invalid_password")
            raise _audited(InvalidCredentialsError("invalid email or password"))

        account = self.store.record_successful_login(account.id, now=self.clock.now()) or account
        session = self.sessions.create(
            account.id, device_info=req.device_info, ip_addr=ip_addr, user_agent=user_agent
        )
        tokens = self._issue_tokens(account, session.id)
        await self.events.record(
            SecurityEventType.LOGIN,
            account.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            details={
                "successful": True,
                "device_info": dict(req.device_info),
                "risk_level": risk.value,
            },
            risk_level=risk,
        )
        self.logger.info("login_succeeded", account_id=account.id, risk_level=risk.value)
        return LoginResult(
            account=account.to_public(),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            session_id=session.id,
            expires_at=tokens.expires_at,
            risk_level=risk,
        )

    async def _handle_failed_login(
        self, account: Account, ip_addr: str, user_agent: Optional[str], reason: str
    ) -> None:
        now = self.clock.now()
        updated = self.store.record_failed_login(
            account.id,
            now=now,
            threshold=self.settings.lockout_threshold,
            step_minutes=self.settings.lockout_step_minutes,
            max_minutes=self.settings.lockout_max_minutes,
        )
        attempts = updated.failed_login_attempts if updated else account.failed_login_attempts + 1
        locked = bool(updated and updated.is_locked(now))
        details: Dict[str, Any] = {"reason": reason, "attempts": attempts, "is_locked": locked}
        if locked and updated.account_locked_until:
            details["locked_until"] = updated.account_locked_until.isoformat()
        await self.events.record(
            SecurityEventType.FAILED_LOGIN,
            account.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            details=details,
            risk_level=RiskLevel.HIGH if locked else RiskLevel.MEDIUM,
        )
        if locked:
            self.logger.warning("account_locked", account_id=account.id, attempts=attempts)

    # --------------------------------------------------------- sessions/tokens

    async def logout(
        self,
        session_id: str,
        account_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """End one session. Unknown or already closed sessions are not an error."""
        with self._guard("logout"):
            session = self.sessions.get(session_id) if session_id else None
            risk = RiskLevel.LOW
            if session is None:
                status = "session_not_found"
            elif account_id and session.account_id != account_id:
                status = "not_owner"
                risk = RiskLevel.MEDIUM
            elif not session.is_active:
                status = "already_inactive"
            else:
                self.sessions.invalidate(session_id)
                status = "success"
            owner = account_id or (session.account_id if session else None)
            await self.events.record(
                SecurityEventType.LOGOUT,
                owner,
                ip_addr=ip_addr,
                user_agent=user_agent,
                details={"status": status},
                risk_level=risk,
            )
        self.logger.info("logout", account_id=owner, status=status)

    async def logout_all(
        self,
        account_id: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        with self._guard("logout_all"):
            count = self.sessions.invalidate_all(account_id)
            await self.events.record(
                SecurityEventType.LOGOUT,
                account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                details={"action": "logout_all", "sessions_invalidated": count},
                risk_level=RiskLevel.MEDIUM,
            )
        return count

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair bound to the same session."""
        with self._guard("refresh_token"):
            try:
                claims = self.signer.verify(refresh_token, expected_type=REFRESH)
                session = self.sessions.validate(claims.get("sid", ""), claims.get("sub", ""))
                account = self._require_account(session.account_id)
                if account.status == AccountStatus.SUSPENDED or account.is_locked(self.clock.now()):
                    raise error_for_kind(
                        ErrorKind.ACCOUNT_SUSPENDED
                        if account.status == AccountStatus.SUSPENDED
                        else ErrorKind.ACCOUNT_LOCKED
                    )
            except ServiceError as exc:
                self.logger.info("refresh_rejected", reason=exc.error_code)
                raise InvalidTokenError("invalid or expired refresh token") from exc
            self.sessions.touch(session.id)
            return self._issue_tokens(account, session.id)

    async def authenticate(self, access_token: str) -> AuthContext:
        """Resolve an access token to its caller, requiring a live session."""
        with self._guard("authenticate"):
            claims = self.signer.verify(access_token)
            session = await self.validate_session(claims.get("sid", ""), claims.get("sub", ""))
            return AuthContext(
                account_id=session.account_id,
                role=claims.get("role", "user"),
                session_id=session.id,
                email=claims.get("email"),
            )

    async def validate_session(self, session_id: str, account_id: str) -> Session:
        with self._guard("validate_session"):
            session = self.sessions.validate(session_id, account_id)
            self.sessions.touch(session.id)
            return session

    # --------------------------------------------------------------- passwords

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Replace the password and end every session; returns the sessions ended."""
        ip_addr = ip_addr or "system"
        user_agent = user_agent or "system"
        with self._guard("change_password"):
            account = self._require_account(account_id)
            if not self.hasher.verify(current_password or "", account.hashed_password):
                await self.events.record(
                    SecurityEventType.PASSWORD_CHANGE,
                    account_id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    details={"successful": False, "reason": "invalid_current_password"},
                    risk_level=RiskLevel.MEDIUM,
                )
                raise InvalidCredentialsError("current password is incorrect")
            self._check_password_strength(new_password)
            new_hash = self.hasher.hash(new_password)
            now = self.clock.now()
            self.store.update_account(
                account_id,
                now=now,
                hashed_password=new_hash,
                password_changed_at=now,
                failed_login_attempts=0,
                account_locked_until=None,
            )
            count = self.sessions.invalidate_all(account_id)
            await self.events.record(
                SecurityEventType.PASSWORD_CHANGE,
                account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                details={"initiated_by_user": True, "sessions_invalidated": count},
                risk_level=RiskLevel.LOW,
            )
        return count

    async def forgot_password(
        self, email: str, ip_addr: Optional[str] = None, user_agent: Optional[str] = None
    ) -> None:
        """Start a reset. Returns the same way whether or not the address is registered."""
        normalized = (email or "").strip().lower()
        with self._guard("forgot_password_rate_limit"):
            allowed = await self.rate_limiter.allow(
                f"forgot_password_{normalized}",
                self.settings.password_reset_rate_limit_per_day,
                PASSWORD_RESET_WINDOW_SECONDS,
            )
        if not allowed:
            self.logger.warning("password_reset_rate_limited", email_hash=hash_email(normalized))
            raise RateLimitExceededError(
                "too many password reset requests",
                detail={"retry_after_seconds": PASSWORD_RESET_WINDOW_SECONDS},
            )
        try:
            with self._guard("forgot_password"):
                await self._start_password_reset(normalized, ip_addr, user_agent)
        except ServiceError as exc:
            # The caller must not learn whether the address exists
            self.logger.error(
                "password_reset_request_failed",
                email_hash=hash_email(normalized),
                error_code=exc.error_code,
            )

    async def _start_password_reset(
        self, email: str, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> None:
        account = self.store.get_account_by_email(email) if email else None
        if account is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return
        ttl = timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.tokens.invalidate(account.id, TokenPurpose.RESET)
        token = self.tokens.issue(account.id, TokenPurpose.RESET, ttl)
        await self.events.record(
            SecurityEventType.PASSWORD_RESET,
            account.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            details={"token_generated": True},
            risk_level=RiskLevel.MEDIUM,
        )
        await self._dispatch(
            account.email,
            PASSWORD_RESET,
            {"token": token, "expires_in_minutes": self.settings.password_reset_ttl_minutes},
        )

    async def reset_password(
        self,
        token: str,
        new_password: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        # Reject weak passwords before the token is spent
        self._check_password_strength(new_password)
        with self._guard("reset_password"):
            new_hash = self.hasher.hash(new_password)
            try:
                account_id = self.tokens.redeem(token, TokenPurpose.RESET)
            except InvalidTokenError:
                await self.events.record(
                    SecurityEventType.PASSWORD_RESET,
                    None,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    details={"completed": False, "reason": "invalid_token"},
                    risk_level=RiskLevel.MEDIUM,
                )
                raise
            self._require_account(account_id)
            now = self.clock.now()
            self.store.update_account(
                account_id,
                now=now,
                hashed_password=new_hash,
                password_changed_at=now,
                failed_login_attempts=0,
                account_locked_until=None,
            )
            count = self.sessions.invalidate_all(account_id)
            await self.events.record(
                SecurityEventType.PASSWORD_RESET,
                account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                details={"completed": True, "sessions_invalidated": count},
                risk_level=RiskLevel.MEDIUM,
            )

    # -------------------------------------------------------------------- 2FA

    async def setup_2fa(self, account_id: str) -> TwoFactorSetup:
        with self._guard("setup_2fa"):
            account = self._require_account(account_id)
            if account.two_factor_enabled:
                raise ValidationError(
                    "two-factor authentication is already enabled",
                    detail={"reason": "already_enabled"},
                )
            return self.two_factor.begin_setup(account_id)

    async def confirm_2fa(
        self,
        account_id: str,
        code: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        with self._guard("confirm_2fa"):
            try:
                self.two_factor.confirm_setup(account_id, code)
            except Invalid2FACodeError:
                await self.events.record(
                    SecurityEventType.TWO_FACTOR_SETUP,
                    account_id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    details={"successful": False, "reason": "invalid_2fa"},
                    risk_level=RiskLevel.MEDIUM,
                )
                raise
            await self.events.record(
                SecurityEventType.TWO_FACTOR_SETUP,
                account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                details={"successful": True},
                risk_level=RiskLevel.LOW,
            )

    async def disable_2fa(
        self,
        account_id: str,
        password: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        with self._guard("disable_2fa"):
            account = self._require_account(account_id)
            if not self.hasher.verify(password or "", account.hashed_password):
                await self.events.record(
                    SecurityEventType.TWO_FACTOR_DISABLE,
                    account_id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    details={"successful": False, "reason": "invalid_password"},
                    risk_level=RiskLevel.MEDIUM,
                )
                raise InvalidCredentialsError("password is incorrect")
            self.two_factor.disable(account_id)
            await self.events.record(
                SecurityEventType.TWO_FACTOR_DISABLE,
                account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                details={"successful": True},
                risk_level=RiskLevel.MEDIUM,
            )

    async def verify_2fa_code(
        self,
        account_id: str,
        code: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        with self._guard("verify_2fa_code"):
            return await self.two_factor.verify_code(
                account_id, code, ip_addr=ip_addr, user_agent=user_agent
            )

    # ------------------------------------------------------- email ownership

    async def register(
        self,
        email: str,
        password: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        role: str = "user",
    ) -> RegistrationResult:
        try:
            normalized = normalize_email(email)
        except ValueError as exc:
            raise ValidationError("invalid email address", detail={"errors": [str(exc)]}) from exc
        self._check_password_strength(password)
        if role not in ROLE_PERMISSIONS:
            raise ValidationError("unknown role", detail={"role": role})
        with self._guard("register"):
            if self.store.get_account_by_email(normalized):
                raise ConflictError("an account with this email already exists")
            account = self.store.create_account(
                normalized, self.hasher.hash(password), now=self.clock.now(), role=role
            )
            await self.events.record(
                SecurityEventType.REGISTRATION,
                account.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                details={"role": role},
                risk_level=RiskLevel.LOW,
            )
        try:
            sent = await self.send_email_verification(account.id, ip_addr, user_agent)
        except ServiceError as exc:
            self.logger.warning(
                "registration_verification_failed", account_id=account.id, error_code=exc.error_code
            )
            sent = False
        self.logger.info("account_registered", account_id=account.id, verification_sent=sent)
        return RegistrationResult(account=account.to_public(), verification_sent=sent)

    async def send_email_verification(
        self,
        account_id: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Issue a fresh verification token and mail it; returns whether delivery succeeded."""
        with self._guard("send_email_verification"):
            account = self._require_account(account_id)
            if account.email_verified:
                raise ValidationError(
                    "email address is already verified", detail={"reason": "already_verified"}
                )
            allowed = await self.rate_limiter.allow(
                f"verify_email_{account_id}",
                self.settings.verification_rate_limit_per_hour,
                VERIFICATION_WINDOW_SECONDS,
            )
            if not allowed:
                await self.events.record(
                    SecurityEventType.EMAIL_VERIFICATION,
                    account_id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    details={"action": "send", "reason": "rate_limit_exceeded"},
                    risk_level=RiskLevel.MEDIUM,
                )
                raise RateLimitExceededError(
                    "too many verification emails requested",
                    detail={"retry_after_seconds": VERIFICATION_WINDOW_SECONDS},
                )
            self.tokens.invalidate(account_id, TokenPurpose.VERIFY)
            token = self.tokens.issue(
                account_id,
                TokenPurpose.VERIFY,
                timedelta(hours=self.settings.email_verification_ttl_hours),
            )
            sent = await self._dispatch(
                account.email,
                EMAIL_VERIFICATION,
                {"token": token, "expires_in_hours": self.settings.email_verification_ttl_hours},
            )
            await self.events.record(
                SecurityEventType.EMAIL_VERIFICATION,
                account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                details={"action": "send", "delivered": sent},
                risk_level=RiskLevel.LOW,
            )
        return sent

    async def resend_email_verification(
        self, email: str, ip_addr: Optional[str] = None, user_agent: Optional[str] = None
    ) -> None:
        """Re-send the verification mail without revealing whether ``email`` is registered."""
        normalized = (email or "").strip().lower()
        with self._guard("resend_email_verification"):
            allowed = await self.rate_limiter.allow(
                f"resend_verification_{normalized}",
                self.settings.verification_rate_limit_per_hour,
                VERIFICATION_WINDOW_SECONDS,
            )
        if not allowed:
            raise RateLimitExceededError(
                "too many verification emails requested",
                detail={"retry_after_seconds": VERIFICATION_WINDOW_SECONDS},
            )
        with self._guard("resend_email_verification"):
            account = self.store.get_account_by_email(normalized) if normalized else None
        if account is None or account.email_verified:
            self.logger.info("verification_resend_skipped", email_hash=hash_email(normalized))
            return
        try:
            await self.send_email_verification(account.id, ip_addr, user_agent)
        except RateLimitExceededError:
            self.logger.info("verification_resend_rate_limited", account_id=account.id)

    async def verify_email(
        self, token: str, ip_addr: Optional[str] = None, user_agent: Optional[str] = None
    ) -> Dict[str, Any]:
        with self._guard("verify_email"):
            try:
                account_id = self.tokens.redeem(token, TokenPurpose.VERIFY)
            except InvalidTokenError:
                await self.events.record(
                    SecurityEventType.EMAIL_VERIFICATION,
                    None,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    details={"action": "verify", "successful": False, "reason": "invalid_token"},
                    risk_level=RiskLevel.MEDIUM,
                )
                raise
            account = self._require_account(account_id)
            if account.email_verified:
                raise ValidationError(
                    "email address is already verified", detail={"reason": "already_verified"}
                )
            fields: Dict[str, Any] = {"email_verified": True}
            if account.status == AccountStatus.PENDING_VERIFICATION:
                fields["status"] = AccountStatus.ACTIVE
            updated = self.store.update_account(account_id, now=self.clock.now(), **fields)
            await self.events.record(
                SecurityEventType.EMAIL_VERIFICATION,
                account_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                details={"action": "verify", "successful": True},
                risk_level=RiskLevel.LOW,
            )
        return (updated or account).to_public()

    # ------------------------------------------------------------- reporting

    async def has_permission(self, account_id: str, permission: str) -> bool:
        with self._guard("has_permission"):
            account = self.store.get_account(account_id)
        if not account or account.status == AccountStatus.SUSPENDED:
            return False
        allowed = ROLE_PERMISSIONS.get(account.role)
        if not allowed:
            return False
        return "*" in allowed or permission in allowed

    async def get_security_metrics(self, account_id: str) -> SecurityMetrics:
        with self._guard("get_security_metrics"):
            return SecurityMetrics(
                active_sessions=self.store.count_active_sessions(account_id),
                recent_logins=self.events.count(
                    account_id=account_id,
                    event_type=SecurityEventType.LOGIN,
                    within=timedelta(days=7),
                ),
                failed_attempts=self.events.count(
                    account_id=account_id,
                    event_type=SecurityEventType.FAILED_LOGIN,
                    within=timedelta(hours=24),
                ),
                security_events=self.events.count(
                    account_id=account_id, within=timedelta(days=30)
                ),
            )

    async def get_status(self) -> ServiceStatus:
        now = self.clock.now()
        midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        with self._guard("get_status"):
            return ServiceStatus(
                status="operational",
                active_sessions=self.store.count_active_sessions(),
                logins_today=self.events.count(
                    event_type=SecurityEventType.LOGIN, within=now - midnight
                ),
                pending_verifications=self.store.count_accounts(
                    status=AccountStatus.PENDING_VERIFICATION, email_verified=False
                ),
                failed_logins_last_hour=self.events.count(
                    event_type=SecurityEventType.FAILED_LOGIN, within=timedelta(hours=1)
                ),
                timestamp=now,
            )

    # ----------------------------------------------------------- maintenance

    async def cleanup_expired(self) -> Dict[str, int]:
        """Idempotent sweep run by an external scheduler."""
        with self._guard("cleanup_expired"):
            result = {
                "tokens_deleted": self.tokens.purge_expired(),
                "sessions_expired": self.sessions.deactivate_idle(),
                "rate_limit_keys_pruned": await self.rate_limiter.prune(),
            }
        self.logger.info("auth_cleanup_completed", **result)
        return result

    def active_sessions(self, account_id: str) -> List[Session]:
        return self.sessions.active_sessions(account_id)
