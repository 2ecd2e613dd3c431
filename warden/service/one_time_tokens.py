from __future__ import annotations

import hashlib
from datetime import timedelta

from warden.logging import get_logger
from warden.service.clock import Clock, RandomSource
from warden.service.errors import InvalidTokenError
from warden.storage.memory import MemoryStore
from warden.storage.models import OneTimeToken, RedeemOutcome, TokenPurpose

logger = get_logger(__name__)

TOKEN_BYTES = 32


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class OneTimeTokenVault:
    """Single-use tokens for password reset and email verification.

    Only the SHA-256 of a token is stored. Redemption is a compare-and-swap
    on the used flag inside the store, and every failure (unknown, used,
    expired, wrong purpose) surfaces as the same ``InvalidTokenError``; the
    distinction is only logged.
    """

    def __init__(self, store: MemoryStore, clock: Clock, rng: RandomSource) -> None:
        self.store = store
        self.clock = clock
        self.rng = rng

    def issue(self, account_id: str, purpose: TokenPurpose, ttl: timedelta) -> str:
        token = self.rng.token_urlsafe(TOKEN_BYTES)
        now = self.clock.now()
        self.store.save_token(
            OneTimeToken(
                token_hash=hash_token(token),
                account_id=account_id,
                purpose=purpose,
                expires_at=now + ttl,
                created_at=now,
            )
        )
        logger.info(
            "one_time_token_issued",
            account_id=account_id,
            purpose=purpose.value,
            expires_in_seconds=int(ttl.total_seconds()),
        )
        return token

    def redeem(self, token: str, purpose: TokenPurpose) -> str:
        """Consume ``token`` and return the account id it was issued for."""
        if not isinstance(token, str) or not token.strip():
            raise InvalidTokenError("invalid or expired token")
        token_hash = hash_token(token.strip())
        outcome, record = self.store.redeem_token(token_hash, purpose, now=self.clock.now())
        if outcome != RedeemOutcome.REDEEMED or record is None:
            logger.warning(
                "one_time_token_rejected",
                purpose=purpose.value,
                outcome=outcome.value,
                token_hash_prefix=token_hash[:8],
            )
            raise InvalidTokenError("invalid or expired token")
        logger.info(
            "one_time_token_redeemed", account_id=record.account_id, purpose=purpose.value
        )
        return record.account_id

    def invalidate(self, account_id: str, purpose: TokenPurpose) -> int:
        """Retire every unused token for the pair; used before issuing a replacement."""
        count = self.store.invalidate_tokens(account_id, purpose, now=self.clock.now())
        if count:
            logger.info(
                "one_time_tokens_invalidated",
                account_id=account_id,
                purpose=purpose.value,
                count=count,
            )
        return count

    def purge_expired(self) -> int:
        return self.store.delete_expired_tokens(now=self.clock.now())
