from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from warden.service.passwords import MAX_PASSWORD_LENGTH

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(value: str) -> str:
    """Lower-case, NFKC-normalise and shape-check an address; raises ValueError."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if not normalized:
        raise ValueError("email is required")
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    """Login payload; the minimum password length comes from settings at validation time."""

    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    two_factor_code: Optional[str] = Field(default=None, max_length=16)
    device_info: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("two_factor_code")
    @classmethod
    def _strip_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().replace(" ", "")
        return value or None
