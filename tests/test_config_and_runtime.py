"""Tests for settings loading, service wiring, log hygiene and email rendering."""

import json
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    hash_email,
    redact_email,
    sanitize_error_message,
    set_correlation_id,
)
from warden.service.email import EMAIL_VERIFICATION, PASSWORD_RESET, EmailService
from warden.service.rate_limit import MemoryRateLimiter, RedisRateLimiter
from warden.service.runtime import (
    _mask_url_password,
    build_alert_hook,
    build_auth_service,
    build_rate_limiter,
)
from warden.service.security_events import LoggingAlertHook, WebhookAlertHook
from warden.storage.redis_cache import RedisCache


class TestSettings:
    def test_defaults(self, settings):
        assert settings.max_active_sessions == 5
        assert settings.session_idle_timeout_minutes == 30
        assert settings.login_rate_limit_per_minute == 10
        assert settings.password_reset_ttl_minutes == 15
        assert settings.email_verification_ttl_hours == 24
        assert settings.lockout_threshold == 5
        assert settings.password_max_age_days == 90
        assert settings.totp_window_steps == 2

    def test_from_env_reads_environment_and_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("MAX_ACTIVE_SESSIONS=2\nTOTP_ISSUER=Acme\n")
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
        monkeypatch.setenv("MAX_ACTIVE_SESSIONS", "4")

        settings = Settings.from_env()

        assert settings.lockout_threshold == 3
        # The process environment wins over .env
        assert settings.max_active_sessions == 4
        assert settings.totp_issuer == "Acme"

    def test_missing_jwt_secret_is_generated(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("JWT_SECRET", raising=False)

        first = Settings.from_env()
        second = Settings.from_env()

        assert len(first.jwt_secret) >= 64
        assert first.jwt_secret != second.jwt_secret

    def test_secret_fallbacks(self):
        settings = Settings(jwt_secret="x" * 40)
        assert settings.refresh_signing_secret == settings.jwt_secret
        assert settings.encryption_key_material == settings.jwt_secret

    def test_non_positive_limits_rejected(self):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="x" * 40, max_active_sessions=0)

    def test_get_settings_is_cached_until_reset(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TOTP_ISSUER", "First")
        first = get_settings()
        monkeypatch.setenv("TOTP_ISSUER", "Second")
        assert get_settings() is first

        reset_settings_cache()
        assert get_settings().totp_issuer == "Second"


class TestRuntimeWiring:
    def test_memory_limiter_without_redis(self, settings, clock):
        assert isinstance(build_rate_limiter(settings, clock), MemoryRateLimiter)

    def test_unreachable_redis_falls_back(self, settings, clock, monkeypatch):
        def refuse(self):
            raise ConnectionError("connection refused")

        monkeypatch.setattr(RedisCache, "verify_connection", refuse)
        configured = settings.model_copy(update={"redis_url": "redis://:hunter2@cache:6379/0"})

        assert isinstance(build_rate_limiter(configured, clock), MemoryRateLimiter)

    def test_reachable_redis_is_used(self, settings, clock, monkeypatch):
        monkeypatch.setattr(RedisCache, "verify_connection", lambda self: None)
        configured = settings.model_copy(update={"redis_url": "redis://cache:6379/0"})

        limiter = build_rate_limiter(configured, clock)

        assert isinstance(limiter, RedisRateLimiter)
        assert limiter.cache.redis_url == "redis://cache:6379/0"

    def test_alert_hook_selection(self, settings):
        assert isinstance(build_alert_hook(settings), LoggingAlertHook)
        configured = settings.model_copy(update={"alert_webhook_url": "https://hooks.example.com/x"})
        assert isinstance(build_alert_hook(configured), WebhookAlertHook)

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
        assert _mask_url_password(None) is None

    async def test_built_service_runs_a_flow(self, settings, clock, notifier):
        service = build_auth_service(settings, clock=clock, notifier=notifier)

        result = await service.register("alice@example.com", "Correct-Horse-42")

        assert result.verification_sent
        assert service.store.get_account_by_email("alice@example.com")
        assert isinstance(service.rate_limiter, MemoryRateLimiter)

    def test_services_do_not_share_state(self, settings, clock):
        one = build_auth_service(settings, clock=clock)
        two = build_auth_service(settings, clock=clock)
        assert one.store is not two.store


class TestLogHygiene:
    def test_redacts_sensitive_keys(self):
        event = _redact_pii(
            None,
            "info",
            {
                "email": "alice@example.com",
                "reset_token": "abcdefghijklmnop",
                "email_hash": "0123456789abcdef",
                "account_id": "acct-1",
            },
        )
        assert event["email"] == "al***om"
        assert event["reset_token"] == "ab***op"
        assert event["email_hash"] == "0123456789abcdef"
        assert event["account_id"] == "acct-1"

    def test_hash_email_is_case_insensitive(self):
        assert hash_email("Alice@Example.com ") == hash_email("alice@example.com")

    def test_redact_email(self):
        assert redact_email("alice@example.com") == "al***@example.com"
        assert redact_email("nonsense") == "redacted"

    def test_sanitize_error_message(self):
        cleaned = sanitize_error_message("lookup failed for bob@example.com at /var/lib/db")
        assert "bob@example.com" not in cleaned
        assert "/var/lib/db" not in cleaned
        assert sanitize_error_message("") == "An error occurred"

    def test_correlation_id_is_stamped_once_bound(self):
        token = correlation_id_var.set(None)
        try:
            assert "correlation_id" not in _add_correlation_id(None, "info", {})
            assert set_correlation_id("req-1") == "req-1"
            assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-1"
            assert set_correlation_id() != "req-1"
        finally:
            correlation_id_var.reset(token)


class TestEmailService:
    def test_dev_mode_logs_instead_of_sending(self, monkeypatch):
        smtp = MagicMock()
        monkeypatch.setattr("warden.service.email.smtplib.SMTP", smtp)
        service = EmailService()

        assert service.send("alice@example.com", PASSWORD_RESET, {"token": "tok123"})
        smtp.assert_not_called()

    def test_render_links_carry_token(self):
        service = EmailService(base_url="https://auth.example.com/")

        subject, html, text = service._render(EMAIL_VERIFICATION, {"token": "tok123"})

        assert "Confirm" in subject
        assert "https://auth.example.com/verify-email?token=tok123" in html
        assert "https://auth.example.com/verify-email?token=tok123" in text

    def test_render_rejects_unknown_template_and_missing_token(self):
        service = EmailService()
        with pytest.raises(ValueError):
            service._render("newsletter", {"token": "tok123"})
        with pytest.raises(ValueError):
            service._render(PASSWORD_RESET, {})

    def test_smtp_delivery(self, monkeypatch):
        smtp = MagicMock()
        monkeypatch.setattr("warden.service.email.smtplib.SMTP", smtp)
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="no-reply@example.com",
        )

        assert service.send("alice@example.com", PASSWORD_RESET, {"token": "tok123"})

        server = smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "pw")
        from_addr, to_addr, body = server.sendmail.call_args.args
        assert (from_addr, to_addr) == ("no-reply@example.com", "alice@example.com")
        assert "reset-password?token=tok123" in body

    def test_smtp_failure_returns_false(self, monkeypatch):
        smtp = MagicMock(side_effect=OSError("no route to host"))
        monkeypatch.setattr("warden.service.email.smtplib.SMTP", smtp)
        service = EmailService(smtp_host="smtp.example.com", from_email="no-reply@example.com")

        assert service.send("alice@example.com", PASSWORD_RESET, {"token": "tok123"}) is False


def test_sweep_script_reports_counts(monkeypatch, capsys, settings, clock):
    import importlib.util
    from pathlib import Path

    script = Path(__file__).resolve().parent.parent / "scripts" / "sweep_expired.py"
    spec = importlib.util.spec_from_file_location("sweep_expired", script)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    monkeypatch.setattr(
        "warden.service.runtime.build_auth_service",
        lambda: build_auth_service(settings, clock=clock),
    )

    token = correlation_id_var.set(None)
    try:
        assert module.main(["--json"]) == 0
        run_id = correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)

    out = json.loads(capsys.readouterr().out)
    assert run_id and out.pop("run_id") == run_id
    assert out == {"rate_limit_keys_pruned": 0, "sessions_expired": 0, "tokens_deleted": 0}
