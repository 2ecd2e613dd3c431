"""RFC 6238 time-based one-time passwords (HMAC-SHA1, 6 digits)."""

from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime
from urllib.parse import quote, urlencode

from warden.logging import get_logger

logger = get_logger(__name__)

DEFAULT_INTERVAL = 30
DEFAULT_DIGITS = 6


def encode_secret(raw: bytes) -> str:
    """Base32 without padding, the form authenticator apps expect."""
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> bytes | None:
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return None


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
) -> str:
    key = _decode_secret(secret)
    if key is None:
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    at: datetime,
    *,
    window: int = 2,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
) -> bool:
    """Accept ``code`` if it matches any step within ``window`` steps of ``at``."""
    # isdigit() alone admits full-width and other non-ASCII digits
    if not code or len(code) != digits or not (code.isascii() and code.isdigit()):
        return False
    timestamp = at.timestamp()
    matched = False
    # Check every step so the comparison cost does not depend on which one matched
    for offset in range(-window, window + 1):
        generated = generate_totp(
            secret, timestamp + offset * interval, interval=interval, digits=digits
        )
        if generated and hmac.compare_digest(generated, code):
            matched = True
    return matched


def provisioning_uri(
    secret: str,
    account_name: str,
    *,
    issuer: str,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
) -> str:
    label = quote(f"{issuer}:{account_name}")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": digits,
            "period": interval,
        }
    )
    return f"otpauth://totp/{label}?{params}"
