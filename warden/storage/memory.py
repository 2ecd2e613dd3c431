from __future__ import annotations

import base64
import copy
import hashlib
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    Account,
    AccountStatus,
    OneTimeToken,
    PendingTwoFactor,
    RedeemOutcome,
    SecurityEvent,
    SecurityEventType,
    Session,
    TokenPurpose,
)

_UPDATABLE_ACCOUNT_FIELDS = frozenset(
    {
        "hashed_password",
        "status",
        "role",
        "email_verified",
        "failed_login_attempts",
        "account_locked_until",
        "password_changed_at",
        "meta",
    }
)


class MemoryStore:
    """In-process document store backing accounts, sessions, tokens and events.

    Every multi-field mutation runs under one re-entrant lock, which gives the
    per-document atomic updates and compare-and-swap the auth engine relies
    on. Records are copied on the way in and out so callers never hold live
    references to stored state. 2FA secrets are Fernet-encrypted at rest.
    """

    def __init__(self, *, encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.tokens: Dict[str, OneTimeToken] = {}
        self.events: List[SecurityEvent] = []
        self.pending_two_factor: Dict[str, PendingTwoFactor] = {}
        # RLock so compound operations can call other locked helpers
        self._data_lock = threading.RLock()
        self._cipher = self._build_cipher(encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        if not key_material:
            self.logger.warning(
                "secret_cipher_ephemeral",
                message="No encryption key configured; 2FA secrets use a per-process key",
            )
            return Fernet(Fernet.generate_key())
        try:
            return Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize secret cipher") from exc

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.error("secret_decrypt_failed")
            raise

    def _export_account(self, account: Account) -> Account:
        exported = account.copy()
        exported.two_factor_secret = self._decrypt_secret(account.two_factor_secret)
        return exported

    # accounts
    def create_account(
        self,
        email: str,
        hashed_password: str,
        *,
        now: datetime,
        role: str = "user",
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
        email_verified: bool = False,
    ) -> Account:
        if not hashed_password:
            raise ConstraintViolation("password hash required", {"field": "hashed_password"})
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                hashed_password=hashed_password,
                status=status,
                role=role,
                email_verified=email_verified,
                password_changed_at=now,
                created_at=now,
                updated_at=now,
                meta={},
            )
            self.accounts[account.id] = account
            return self._export_account(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._export_account(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return self._export_account(account) if account else None

    def update_account(self, account_id: str, *, now: datetime, **fields) -> Optional[Account]:
        unknown = set(fields) - _UPDATABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        if "hashed_password" in fields and not fields["hashed_password"]:
            raise ConstraintViolation("password hash required", {"field": "hashed_password"})
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            for name, value in fields.items():
                setattr(account, name, value)
            account.updated_at = now
            return self._export_account(account)

    def record_failed_login(
        self,
        account_id: str,
        *,
        now: datetime,
        threshold: int,
        step_minutes: int,
        max_minutes: int,
    ) -> Optional[Account]:
        """Increment the failure counter and apply the escalating lockout atomically."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_attempts += 1
            attempts = account.failed_login_attempts
            if attempts >= threshold:
                minutes = min(attempts * step_minutes, max_minutes)
                account.account_locked_until = now + timedelta(minutes=minutes)
            account.updated_at = now
            return self._export_account(account)

    def record_successful_login(self, account_id: str, *, now: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_attempts = 0
            account.account_locked_until = None
            account.login_count += 1
            account.last_login_at = now
            account.updated_at = now
            return self._export_account(account)

    def count_accounts(
        self,
        *,
        status: Optional[AccountStatus] = None,
        email_verified: Optional[bool] = None,
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.accounts.values()
                if (status is None or a.status == status)
                and (email_verified is None or a.email_verified == email_verified)
            )

    # two-factor
    def save_pending_two_factor(self, pending: PendingTwoFactor) -> None:
        with self._data_lock:
            if pending.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for 2fa", {"account_id": pending.account_id}
                )
            self.pending_two_factor[pending.account_id] = replace(
                pending,
                secret=self._encrypt_secret(pending.secret),
                backup_codes=list(pending.backup_codes),
            )

    def get_pending_two_factor(self, account_id: str) -> Optional[PendingTwoFactor]:
        with self._data_lock:
            pending = self.pending_two_factor.get(account_id)
            if not pending:
                return None
            return replace(
                pending,
                secret=self._decrypt_secret(pending.secret),
                backup_codes=list(pending.backup_codes),
            )

    def delete_pending_two_factor(self, account_id: str) -> None:
        with self._data_lock:
            self.pending_two_factor.pop(account_id, None)

    def enable_two_factor(
        self, account_id: str, secret: str, backup_codes: Iterable[str], *, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.two_factor_enabled = True
            account.two_factor_secret = self._encrypt_secret(secret)
            account.backup_codes = list(backup_codes)
            account.updated_at = now
            self.pending_two_factor.pop(account_id, None)
            return self._export_account(account)

    def disable_two_factor(self, account_id: str, *, now: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.two_factor_enabled = False
            account.two_factor_secret = None
            account.backup_codes = []
            account.updated_at = now
            return self._export_account(account)

    def consume_backup_code(self, account_id: str, code: str) -> Optional[int]:
        """Remove ``code`` if present; returns the remaining count or None on no match."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or code not in account.backup_codes:
                return None
            account.backup_codes.remove(code)
            return len(account.backup_codes)

    # sessions
    def create_session(self, session: Session, *, max_active: int) -> List[str]:
        """Insert ``session`` keeping at most ``max_active`` active sessions.

        The stalest sessions (by last activity) are deactivated first. Returns
        the ids of the sessions that were deactivated to make room.
        """
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            active = sorted(
                (
                    s
                    for s in self.sessions.values()
                    if s.account_id == session.account_id and s.is_active
                ),
                key=lambda s: s.last_activity,
                reverse=True,
            )
            evicted: List[str] = []
            for stale in active[max(max_active - 1, 0):]:
                stale.is_active = False
                stale.logged_out_at = session.created_at
                evicted.append(stale.id)
            self.sessions[session.id] = replace(session)
            return evicted

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def touch_session(self, session_id: str, *, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and sess.is_active:
                sess.last_activity = now

    def deactivate_session(self, session_id: str, *, now: datetime) -> bool:
        """Returns True only when an active session was switched off."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            sess.logged_out_at = now
            return True

    def deactivate_account_sessions(self, account_id: str, *, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.account_id == account_id and sess.is_active:
                    sess.is_active = False
                    sess.logged_out_at = now
                    count += 1
            return count

    def deactivate_idle_sessions(self, *, cutoff: datetime, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.is_active and sess.last_activity < cutoff:
                    sess.is_active = False
                    sess.logged_out_at = now
                    count += 1
            return count

    def list_sessions(self, account_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            return sorted(
                (
                    replace(s)
                    for s in self.sessions.values()
                    if s.account_id == account_id and (s.is_active or not active_only)
                ),
                key=lambda s: s.last_activity,
                reverse=True,
            )

    def count_active_sessions(self, account_id: Optional[str] = None) -> int:
        with self._data_lock:
            return sum(
                1
                for s in self.sessions.values()
                if s.is_active and (account_id is None or s.account_id == account_id)
            )

    # one-time tokens
    def save_token(self, token: OneTimeToken) -> None:
        with self._data_lock:
            if token.token_hash in self.tokens:
                raise ConstraintViolation("token hash collision", {"field": "token_hash"})
            self.tokens[token.token_hash] = replace(token)

    def redeem_token(
        self, token_hash: str, purpose: TokenPurpose, *, now: datetime
    ) -> Tuple[RedeemOutcome, Optional[OneTimeToken]]:
        """Compare-and-swap the used flag; at most one caller ever sees REDEEMED."""
        with self._data_lock:
            token = self.tokens.get(token_hash)
            if not token:
                return RedeemOutcome.NOT_FOUND, None
            if token.purpose != purpose:
                return RedeemOutcome.WRONG_PURPOSE, None
            if token.is_used:
                return RedeemOutcome.ALREADY_USED, replace(token)
            if token.expires_at <= now:
                return RedeemOutcome.EXPIRED, replace(token)
            token.is_used = True
            token.used_at = now
            return RedeemOutcome.REDEEMED, replace(token)

    def invalidate_tokens(
        self, account_id: str, purpose: TokenPurpose, *, now: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for token in self.tokens.values():
                if (
                    token.account_id == account_id
                    and token.purpose == purpose
                    and not token.is_used
                ):
                    token.is_used = True
                    token.used_at = now
                    count += 1
            return count

    def delete_expired_tokens(self, *, now: datetime) -> int:
        with self._data_lock:
            expired = [h for h, t in self.tokens.items() if t.expires_at <= now]
            for token_hash in expired:
                self.tokens.pop(token_hash, None)
            return len(expired)

    # security events
    def append_event(self, event: SecurityEvent) -> SecurityEvent:
        stored = replace(
            event, id=event.id or str(uuid.uuid4()), details=copy.deepcopy(event.details)
        )
        with self._data_lock:
            self.events.append(stored)
        return replace(stored, details=copy.deepcopy(stored.details))

    def list_events(
        self,
        *,
        account_id: Optional[str] = None,
        types: Optional[Iterable[SecurityEventType]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        """Events matching the filters, newest first."""
        type_set = set(types) if types is not None else None
        with self._data_lock:
            matched = [
                e
                for e in reversed(self.events)
                if (account_id is None or e.account_id == account_id)
                and (type_set is None or e.type in type_set)
                and (since is None or e.timestamp > since)
            ]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        if limit is not None:
            matched = matched[:limit]
        # Stored events are never handed out; details is the only mutable field
        return [replace(e, details=copy.deepcopy(e.details)) for e in matched]

    def count_events(
        self,
        *,
        account_id: Optional[str] = None,
        types: Optional[Iterable[SecurityEventType]] = None,
        since: Optional[datetime] = None,
    ) -> int:
        return len(self.list_events(account_id=account_id, types=types, since=since))
