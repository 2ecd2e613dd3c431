"""Tests for password change/reset, registration and email verification."""

import pytest
from conftest import STRONG_PASSWORD

from warden.service.email import EMAIL_VERIFICATION, PASSWORD_RESET
from warden.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    RateLimitExceededError,
    SessionExpiredError,
    ValidationError,
    WeakPasswordError,
)
from warden.storage.models import AccountStatus, SecurityEventType

NEW_PASSWORD = "Battery-Staple-77"


def _login(email="alice@example.com", password=STRONG_PASSWORD):
    return {"email": email, "password": password}


class TestChangePassword:
    async def test_change_ends_every_session(self, auth_service, make_account, clock):
        account = make_account()
        sessions = []
        for _ in range(2):
            sessions.append((await auth_service.login(_login(), "10.0.0.1")).session_id)
            clock.advance(seconds=1)

        ended = await auth_service.change_password(account.id, STRONG_PASSWORD, NEW_PASSWORD)

        assert ended == 2
        for session_id in sessions:
            with pytest.raises(SessionExpiredError):
                await auth_service.validate_session(session_id, account.id)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(_login(), "10.0.0.1")
        assert (await auth_service.login(_login(password=NEW_PASSWORD), "10.0.0.1")).session_id

    async def test_wrong_current_password(self, auth_service, make_account, store):
        account = make_account()
        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(account.id, "Wrong-Horse-42", NEW_PASSWORD)

        (event,) = store.list_events(types=[SecurityEventType.PASSWORD_CHANGE])
        assert event.details["successful"] is False
        assert event.ip_addr == "system"

    async def test_weak_new_password(self, auth_service, make_account, hasher, store):
        account = make_account()
        with pytest.raises(WeakPasswordError) as exc:
            await auth_service.change_password(account.id, STRONG_PASSWORD, "password")

        assert "password must contain a digit" in exc.value.detail["errors"]
        assert hasher.verify(STRONG_PASSWORD, store.get_account(account.id).hashed_password)


class TestForgotPassword:
    async def test_known_and_unknown_emails_look_the_same(self, auth_service, make_account, notifier):
        make_account()

        assert await auth_service.forgot_password("alice@example.com") is None
        assert await auth_service.forgot_password("nobody@example.com") is None

        assert [recipient for recipient, _, _ in notifier.sent] == ["alice@example.com"]
        _, kind, data = notifier.sent[0]
        assert kind == PASSWORD_RESET
        assert data["expires_in_minutes"] == 15

    async def test_rate_limited_per_email(self, auth_service, make_account):
        make_account()
        for _ in range(3):
            await auth_service.forgot_password("alice@example.com")
        with pytest.raises(RateLimitExceededError):
            await auth_service.forgot_password("ALICE@example.com")

        # Unknown addresses hit the same limit, so the limit reveals nothing either
        for _ in range(3):
            await auth_service.forgot_password("nobody@example.com")
        with pytest.raises(RateLimitExceededError):
            await auth_service.forgot_password("nobody@example.com")

    async def test_delivery_failure_is_silent(self, auth_service, make_account, notifier, store):
        make_account()
        notifier.fail = True

        assert await auth_service.forgot_password("alice@example.com") is None
        assert store.list_events(types=[SecurityEventType.PASSWORD_RESET])

    async def test_new_request_replaces_old_token(self, auth_service, make_account, notifier):
        make_account()
        await auth_service.forgot_password("alice@example.com")
        first = notifier.last_token(PASSWORD_RESET)
        await auth_service.forgot_password("alice@example.com")
        second = notifier.last_token(PASSWORD_RESET)

        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password(first, NEW_PASSWORD)
        await auth_service.reset_password(second, NEW_PASSWORD)


class TestResetPassword:
    async def test_reset_is_single_use(self, auth_service, make_account, notifier, store):
        make_account()
        await auth_service.forgot_password("alice@example.com")
        token = notifier.last_token(PASSWORD_RESET)

        await auth_service.reset_password(token, NEW_PASSWORD, "10.0.0.1", "pytest")
        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password(token, "Another-Pass-99")

        completed = [
            e.details["completed"]
            for e in store.list_events(types=[SecurityEventType.PASSWORD_RESET])
            if "completed" in e.details
        ]
        assert sorted(completed) == [False, True]
        assert (await auth_service.login(_login(password=NEW_PASSWORD), "10.0.0.1")).session_id

    async def test_weak_password_keeps_token_usable(self, auth_service, make_account, notifier):
        make_account()
        await auth_service.forgot_password("alice@example.com")
        token = notifier.last_token(PASSWORD_RESET)

        with pytest.raises(WeakPasswordError):
            await auth_service.reset_password(token, "weak")
        await auth_service.reset_password(token, NEW_PASSWORD)

    async def test_expired_token(self, auth_service, make_account, notifier, clock):
        make_account()
        await auth_service.forgot_password("alice@example.com")
        token = notifier.last_token(PASSWORD_RESET)
        clock.advance(minutes=16)

        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password(token, NEW_PASSWORD)

    async def test_reset_clears_lockout_and_sessions(self, auth_service, make_account, notifier, store):
        account = make_account()
        session_id = (await auth_service.login(_login(), "10.0.0.1")).session_id
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login(_login(password="Wrong-Horse-42"), "10.0.0.2")
        with pytest.raises(AccountLockedError):
            await auth_service.login(_login(), "10.0.0.2")

        await auth_service.forgot_password("alice@example.com")
        await auth_service.reset_password(notifier.last_token(PASSWORD_RESET), NEW_PASSWORD)

        refreshed = store.get_account(account.id)
        assert refreshed.failed_login_attempts == 0
        assert refreshed.account_locked_until is None
        assert not store.get_session(session_id).is_active
        assert (await auth_service.login(_login(password=NEW_PASSWORD), "10.0.0.3")).session_id


class TestRegistration:
    async def test_rejects_bad_input(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("not-an-email", STRONG_PASSWORD)
        with pytest.raises(WeakPasswordError):
            await auth_service.register("alice@example.com", "alllowercase")
        with pytest.raises(ValidationError):
            await auth_service.register("alice@example.com", STRONG_PASSWORD, role="emperor")

    async def test_duplicate_email(self, auth_service):
        await auth_service.register("alice@example.com", STRONG_PASSWORD)
        with pytest.raises(ConflictError):
            await auth_service.register("ALICE@example.com", STRONG_PASSWORD)

    async def test_delivery_failure_still_registers(self, auth_service, notifier, store):
        notifier.fail = True

        result = await auth_service.register("alice@example.com", STRONG_PASSWORD)

        assert result.verification_sent is False
        assert store.get_account_by_email("alice@example.com") is not None


class TestEmailVerification:
    async def test_token_is_single_use(self, auth_service, notifier, store):
        result = await auth_service.register("alice@example.com", STRONG_PASSWORD)
        token = notifier.last_token(EMAIL_VERIFICATION)

        await auth_service.verify_email(token)
        with pytest.raises(InvalidTokenError):
            await auth_service.verify_email(token)

        account = store.get_account(result.account["id"])
        assert account.email_verified
        assert account.status == AccountStatus.ACTIVE

    async def test_already_verified(self, auth_service, make_account):
        account = make_account()
        with pytest.raises(ValidationError):
            await auth_service.send_email_verification(account.id)

    async def test_resend_replaces_token_and_is_rate_limited(self, auth_service, notifier):
        result = await auth_service.register("alice@example.com", STRONG_PASSWORD)
        account_id = result.account["id"]
        first = notifier.last_token(EMAIL_VERIFICATION)

        assert await auth_service.send_email_verification(account_id)
        assert await auth_service.send_email_verification(account_id)
        with pytest.raises(RateLimitExceededError):
            await auth_service.send_email_verification(account_id)

        with pytest.raises(InvalidTokenError):
            await auth_service.verify_email(first)
        await auth_service.verify_email(notifier.last_token(EMAIL_VERIFICATION))

    async def test_verification_token_expires(self, auth_service, notifier, clock):
        await auth_service.register("alice@example.com", STRONG_PASSWORD)
        token = notifier.last_token(EMAIL_VERIFICATION)
        clock.advance(hours=25)

        with pytest.raises(InvalidTokenError):
            await auth_service.verify_email(token)

    async def test_resend_by_email_never_reveals_registration(self, auth_service, make_account, notifier):
        make_account("verified@example.com")
        await auth_service.register("pending@example.com", STRONG_PASSWORD)
        sent_before = len(notifier.sent)

        await auth_service.resend_email_verification("nobody@example.com")
        await auth_service.resend_email_verification("verified@example.com")
        assert len(notifier.sent) == sent_before

        await auth_service.resend_email_verification("pending@example.com")
        assert len(notifier.sent) == sent_before + 1
        assert notifier.sent[-1][0] == "pending@example.com"

    async def test_invalid_token_is_audited(self, auth_service, store):
        with pytest.raises(InvalidTokenError):
            await auth_service.verify_email("made-up-token")

        (event,) = store.list_events(types=[SecurityEventType.EMAIL_VERIFICATION])
        assert event.account_id == "unknown"
        assert event.details["successful"] is False
