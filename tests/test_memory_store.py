"""Tests for the in-memory store's atomic primitives."""

import threading
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from warden.storage.errors import ConstraintViolation
from warden.storage.memory import MemoryStore
from warden.storage.models import (
    OneTimeToken,
    RedeemOutcome,
    Session,
    TokenPurpose,
)


@pytest.fixture
def account(store, clock):
    return store.create_account("Bob@Example.com", "argon-hash", now=clock.now())


class TestAccounts:
    def test_email_is_unique_case_insensitively(self, store, clock, account):
        with pytest.raises(ConstraintViolation):
            store.create_account("bob@example.COM", "other-hash", now=clock.now())

    def test_lookup_by_email_ignores_case(self, store, account):
        assert store.get_account_by_email("BOB@example.com").id == account.id

    def test_empty_hash_rejected(self, store, clock):
        with pytest.raises(ConstraintViolation):
            store.create_account("carol@example.com", "", now=clock.now())

    def test_returned_records_are_copies(self, store, account):
        account.backup_codes.append("DEADBEEF")
        account.failed_login_attempts = 99
        fresh = store.get_account(account.id)
        assert fresh.backup_codes == []
        assert fresh.failed_login_attempts == 0

    def test_update_rejects_unknown_fields(self, store, clock, account):
        with pytest.raises(ValueError):
            store.update_account(account.id, now=clock.now(), login_count=5)


class TestFailedLoginCounter:
    def test_lockout_escalates_and_caps(self, store, clock, account):
        durations = []
        for _ in range(14):
            updated = store.record_failed_login(
                account.id, now=clock.now(), threshold=5, step_minutes=5, max_minutes=60
            )
            if updated.account_locked_until:
                durations.append(updated.account_locked_until - clock.now())

        assert updated.failed_login_attempts == 14
        assert durations[0] == timedelta(minutes=25)
        assert durations[1] == timedelta(minutes=30)
        assert durations[-1] == timedelta(minutes=60)

    def test_concurrent_failures_are_not_lost(self, store, clock, account):
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            store.record_failed_login(
                account.id, now=clock.now(), threshold=5, step_minutes=5, max_minutes=60
            )

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get_account(account.id).failed_login_attempts == 20

    def test_successful_login_resets_counter(self, store, clock, account):
        store.record_failed_login(
            account.id, now=clock.now(), threshold=1, step_minutes=5, max_minutes=60
        )
        updated = store.record_successful_login(account.id, now=clock.now())
        assert updated.failed_login_attempts == 0
        assert updated.account_locked_until is None
        assert updated.login_count == 1


class TestTokenRedemption:
    def _save(self, store, clock, account, *, ttl=timedelta(minutes=15)):
        store.save_token(
            OneTimeToken(
                token_hash="h1",
                account_id=account.id,
                purpose=TokenPurpose.RESET,
                expires_at=clock.now() + ttl,
                created_at=clock.now(),
            )
        )

    def test_outcomes_are_distinguished_internally(self, store, clock, account):
        self._save(store, clock, account)
        assert store.redeem_token("nope", TokenPurpose.RESET, now=clock.now())[0] == RedeemOutcome.NOT_FOUND
        assert store.redeem_token("h1", TokenPurpose.VERIFY, now=clock.now())[0] == RedeemOutcome.WRONG_PURPOSE
        assert store.redeem_token("h1", TokenPurpose.RESET, now=clock.now())[0] == RedeemOutcome.REDEEMED
        assert store.redeem_token("h1", TokenPurpose.RESET, now=clock.now())[0] == RedeemOutcome.ALREADY_USED

    def test_expired_token_is_not_redeemable(self, store, clock, account):
        self._save(store, clock, account)
        outcome, _ = store.redeem_token(
            "h1", TokenPurpose.RESET, now=clock.now() + timedelta(minutes=15)
        )
        assert outcome == RedeemOutcome.EXPIRED

    def test_concurrent_redemption_succeeds_once(self, store, clock, account):
        self._save(store, clock, account)
        barrier = threading.Barrier(12)
        outcomes = []

        def worker():
            barrier.wait()
            outcomes.append(store.redeem_token("h1", TokenPurpose.RESET, now=clock.now())[0])

        threads = [threading.Thread(target=worker) for _ in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(RedeemOutcome.REDEEMED) == 1
        assert outcomes.count(RedeemOutcome.ALREADY_USED) == 11


class TestSessions:
    def _session(self, account, clock, sid, *, age_minutes=0):
        at = clock.now() - timedelta(minutes=age_minutes)
        return Session(id=sid, account_id=account.id, created_at=at, last_activity=at)

    def test_cap_evicts_stalest(self, store, clock, account):
        for i, age in enumerate([5, 50, 1, 30]):
            store.create_session(self._session(account, clock, f"s{i}", age_minutes=age), max_active=10)

        evicted = store.create_session(self._session(account, clock, "new"), max_active=3)

        assert set(evicted) == {"s1", "s3"}
        active = {s.id for s in store.list_sessions(account.id)}
        assert active == {"new", "s0", "s2"}

    def test_session_requires_existing_account(self, store, clock, account):
        orphan = Session(
            id="x", account_id="missing", created_at=clock.now(), last_activity=clock.now()
        )
        with pytest.raises(ConstraintViolation):
            store.create_session(orphan, max_active=5)


class TestSecretEncryption:
    def test_two_factor_secret_encrypted_at_rest(self, store, clock, account):
        store.enable_two_factor(account.id, "JBSWY3DPEHPK3PXP", ["AAAA1111"], now=clock.now())

        raw = store.accounts[account.id].two_factor_secret
        assert raw != "JBSWY3DPEHPK3PXP"
        assert store.get_account(account.id).two_factor_secret == "JBSWY3DPEHPK3PXP"

    def test_key_is_derived_from_material(self, clock):
        one = MemoryStore(encryption_key="material")
        two = MemoryStore(encryption_key="material")
        token = one._encrypt_secret("value")
        assert two._decrypt_secret(token) == "value"
        assert Fernet(MemoryStore._derive_cipher_key("material"))

    def test_backup_code_consumed_once(self, store, clock, account):
        store.enable_two_factor(account.id, "JBSWY3DPEHPK3PXP", ["AAAA1111", "BBBB2222"], now=clock.now())
        assert store.consume_backup_code(account.id, "AAAA1111") == 1
        assert store.consume_backup_code(account.id, "AAAA1111") is None
