from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import timedelta
from typing import Any, Mapping, Optional

from warden.logging import get_logger
from warden.service.clock import Clock, SystemClock
from warden.service.errors import InvalidTokenError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

# Access tokens carry identity for authorization; refresh tokens only the session binding
_ACCESS_CLAIMS = ("sub", "email", "role", "sid")
_REFRESH_CLAIMS = ("sub", "sid")


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HS256 JWT issuance and verification.

    Access and refresh tokens are signed with separate keys (the refresh key
    falls back to the access key when unset) and carry a ``token_type`` claim,
    so one can never be replayed as the other. Expiry is checked against the
    injected clock with a small leeway for skew between hosts.
    """

    def __init__(
        self,
        secret: str,
        *,
        refresh_secret: Optional[str] = None,
        issuer: str,
        audience: str,
        clock: Clock | None = None,
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        if not secret:
            raise ValueError("signing secret required")
        self._keys = {
            ACCESS: secret.encode(),
            REFRESH: (refresh_secret or secret).encode(),
        }
        self.issuer = issuer
        self.audience = audience
        self.clock = clock or SystemClock()
        self.leeway = leeway

    def sign_access_token(self, claims: Mapping[str, Any], ttl: timedelta) -> str:
        return self._sign(claims, ttl, ACCESS, _ACCESS_CLAIMS)

    def sign_refresh_token(self, claims: Mapping[str, Any], ttl: timedelta) -> str:
        return self._sign(claims, ttl, REFRESH, _REFRESH_CLAIMS)

    def verify(self, token: str, *, expected_type: str = ACCESS) -> dict[str, Any]:
        """Return the claims of a valid token of ``expected_type``; raises InvalidTokenError."""
        payload = self._decode(token, expected_type)
        if payload is None:
            raise InvalidTokenError("invalid or expired token")
        return payload

    def _sign(
        self,
        claims: Mapping[str, Any],
        ttl: timedelta,
        token_type: str,
        allowed: tuple[str, ...],
    ) -> str:
        missing = [name for name in allowed if not claims.get(name)]
        if missing:
            raise ValueError(f"missing token claims: {missing}")
        now = self.clock.now()
        payload = {name: claims[name] for name in allowed}
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "token_type": token_type,
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int((now + ttl).timestamp()),
            }
        )
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._keys[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _decode(self, token: str, expected_type: str) -> Optional[dict[str, Any]]:
        key = self._keys.get(expected_type)
        if key is None or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != expected_type:
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self.clock.now().timestamp() - self.leeway.total_seconds():
            return None
        return payload
