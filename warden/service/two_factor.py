from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from typing import List, Optional

from warden.logging import get_logger
from warden.service.clock import Clock, RandomSource
from warden.service.errors import Invalid2FACodeError, InvalidTokenError, UserNotFoundError
from warden.service.security_events import SecurityEventRecorder
from warden.service.totp import encode_secret, provisioning_uri, verify_totp
from warden.storage.memory import MemoryStore
from warden.storage.models import PendingTwoFactor, RiskLevel, SecurityEventType

logger = get_logger(__name__)

SECRET_BYTES = 20
BACKUP_CODE_BYTES = 4


@dataclass
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


class TwoFactorAuthenticator:
    """TOTP enrolment and verification.

    Enrolment is two-phase: ``begin_setup`` parks a secret and backup codes in
    a pending record, and only ``confirm_setup`` with a valid code copies them
    onto the account. Backup codes are removed from the account atomically as
    they are used.
    """

    def __init__(
        self,
        store: MemoryStore,
        clock: Clock,
        rng: RandomSource,
        recorder: SecurityEventRecorder,
        *,
        issuer: str = "Warden",
        window: int = 2,
        interval: int = 30,
        backup_code_count: int = 8,
    ) -> None:
        self.store = store
        self.clock = clock
        self.rng = rng
        self.recorder = recorder
        self.issuer = issuer
        self.window = window
        self.interval = interval
        self.backup_code_count = backup_code_count

    def _new_backup_codes(self) -> List[str]:
        codes: List[str] = []
        while len(codes) < self.backup_code_count:
            code = self.rng.token_hex(BACKUP_CODE_BYTES).upper()
            if code not in codes:
                codes.append(code)
        return codes

    def begin_setup(self, account_id: str) -> TwoFactorSetup:
        account = self.store.get_account(account_id)
        if not account:
            raise UserNotFoundError("account not found")
        secret = encode_secret(self.rng.token_bytes(SECRET_BYTES))
        codes = self._new_backup_codes()
        # Replaces any earlier unconfirmed enrolment
        self.store.save_pending_two_factor(
            PendingTwoFactor(
                account_id=account_id,
                secret=secret,
                backup_codes=codes,
                created_at=self.clock.now(),
            )
        )
        logger.info("two_factor_setup_started", account_id=account_id)
        return TwoFactorSetup(
            secret=secret,
            provisioning_uri=provisioning_uri(
                secret, account.email, issuer=self.issuer, interval=self.interval
            ),
            backup_codes=list(codes),
        )

    def confirm_setup(self, account_id: str, code: str) -> None:
        pending = self.store.get_pending_two_factor(account_id)
        if not pending:
            raise InvalidTokenError("no two-factor setup in progress")
        if not self._totp_matches(pending.secret, code):
            logger.info("two_factor_setup_code_rejected", account_id=account_id)
            raise Invalid2FACodeError("invalid two-factor code")
        account = self.store.enable_two_factor(
            account_id, pending.secret, pending.backup_codes, now=self.clock.now()
        )
        if not account:
            raise UserNotFoundError("account not found")
        logger.info("two_factor_enabled", account_id=account_id)

    async def verify_code(
        self,
        account_id: str,
        code: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """True for a current TOTP code or an unused backup code.

        A matching backup code is consumed and audited with the number left.
        """
        if not code:
            return False
        account = self.store.get_account(account_id)
        if not account or not account.two_factor_enabled or not account.two_factor_secret:
            return False
        normalized = code.strip().replace(" ", "")
        if not normalized.isascii():
            return False
        if self._totp_matches(account.two_factor_secret, normalized):
            return True
        if not any(hmac.compare_digest(c, normalized.upper()) for c in account.backup_codes):
            return False
        remaining = self.store.consume_backup_code(account_id, normalized.upper())
        if remaining is None:
            # Lost a race with a concurrent use of the same code
            return False
        await self.recorder.record(
            SecurityEventType.BACKUP_CODE_USED,
            account_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            details={"codes_remaining": remaining},
            risk_level=RiskLevel.MEDIUM,
        )
        return True

    def disable(self, account_id: str) -> None:
        """Clear the secret and backup codes; the caller re-verifies the password first."""
        account = self.store.disable_two_factor(account_id, now=self.clock.now())
        if not account:
            raise UserNotFoundError("account not found")
        self.store.delete_pending_two_factor(account_id)
        logger.info("two_factor_disabled", account_id=account_id)

    def _totp_matches(self, secret: str, code: Optional[str]) -> bool:
        if not code:
            return False
        return verify_totp(
            secret,
            code.strip().replace(" ", ""),
            self.clock.now(),
            window=self.window,
            interval=self.interval,
        )
