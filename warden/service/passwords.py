from __future__ import annotations

import re
from typing import List, Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger

logger = get_logger(__name__)

MAX_PASSWORD_LENGTH = 128

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, hashed: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing; output is salted so identical input hashes differently."""

    def __init__(
        self,
        *,
        time_cost: int | None = None,
        memory_cost: int | None = None,
        parallelism: int | None = None,
    ) -> None:
        kwargs = {
            name: value
            for name, value in (
                ("time_cost", time_cost),
                ("memory_cost", memory_cost),
                ("parallelism", parallelism),
            )
            if value is not None
        }
        self._hasher = _Argon2Hasher(type=Type.ID, **kwargs)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> bool:
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False


def password_strength_errors(password: str, *, min_length: int) -> List[str]:
    """Return every policy violation for ``password``; empty means acceptable."""
    errors: List[str] = []
    if len(password) < min_length:
        errors.append(f"password must be at least {min_length} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not _UPPER.search(password):
        errors.append("password must contain an uppercase letter")
    if not _LOWER.search(password):
        errors.append("password must contain a lowercase letter")
    if not _DIGIT.search(password):
        errors.append("password must contain a digit")
    if not _SPECIAL.search(password):
        errors.append("password must contain a special character")
    return errors
