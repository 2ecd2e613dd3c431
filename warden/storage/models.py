from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional


class AccountStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    LOCKED = "locked"


class TokenPurpose(str, Enum):
    RESET = "reset"
    VERIFY = "verify"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SecurityEventType(str, Enum):
    LOGIN = "login"
    FAILED_LOGIN = "failed_login"
    LOGOUT = "logout"
    REGISTRATION = "registration"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    TWO_FACTOR_SETUP = "2fa_setup"
    TWO_FACTOR_DISABLE = "2fa_disable"
    BACKUP_CODE_USED = "backup_code_used"
    EMAIL_VERIFICATION = "email_verification"


class RedeemOutcome(str, Enum):
    """Internal result of a one-time token redemption attempt."""

    REDEEMED = "redeemed"
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"
    WRONG_PURPOSE = "wrong_purpose"


@dataclass
class Account:
    id: str
    email: str
    hashed_password: str
    status: AccountStatus = AccountStatus.PENDING_VERIFICATION
    role: str = "user"
    email_verified: bool = False
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    login_count: int = 0
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    meta: Dict | None = None

    def is_locked(self, now: datetime) -> bool:
        if self.status == AccountStatus.LOCKED:
            return True
        return self.account_locked_until is not None and self.account_locked_until > now

    def password_expired(self, now: datetime, max_age: timedelta) -> bool:
        if self.password_changed_at is None:
            return False
        return now - self.password_changed_at > max_age

    def copy(self) -> "Account":
        return replace(self, backup_codes=list(self.backup_codes), meta=dict(self.meta or {}))

    def to_public(self) -> dict:
        """Client-safe view; never includes the hash, 2FA secret or backup codes."""
        return {
            "id": self.id,
            "email": self.email,
            "status": self.status.value,
            "role": self.role,
            "email_verified": self.email_verified,
            "two_factor_enabled": self.two_factor_enabled,
            "login_count": self.login_count,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class Session:
    id: str
    account_id: str
    created_at: datetime
    last_activity: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Dict | None = None
    is_active: bool = True
    logged_out_at: Optional[datetime] = None

    def idle_for(self, now: datetime) -> timedelta:
        return now - self.last_activity


@dataclass
class OneTimeToken:
    token_hash: str
    account_id: str
    purpose: TokenPurpose
    expires_at: datetime
    created_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None


@dataclass(frozen=True)
class SecurityEvent:
    type: SecurityEventType
    account_id: str
    timestamp: datetime
    ip_addr: str = "unknown"
    user_agent: str = "unknown"
    details: Dict[str, Any] = field(default_factory=dict)
    risk_level: RiskLevel = RiskLevel.LOW
    id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "account_id": self.account_id,
            "timestamp": self.timestamp.isoformat(),
            "ip_addr": self.ip_addr,
            "user_agent": self.user_agent,
            "details": dict(self.details),
            "risk_level": self.risk_level.value,
        }


@dataclass
class PendingTwoFactor:
    """Unconfirmed 2FA enrolment, kept apart from the live account fields."""

    account_id: str
    secret: str
    backup_codes: List[str]
    created_at: datetime
