from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    VISITOR = "visitor"
    AUTHOR = "author"
    ADMIN = "admin"
    PACKAGE_PROVIDER = "package_provider"


class TwoFactorMethod(str, Enum):
    EMAIL = "email"
    APP = "app"


class OTPPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    TWO_FACTOR_LOGIN = "2fa_login"
    PASSWORD_RESET = "password_reset"
    ACCOUNT_RECOVERY = "account_recovery"


class LoginOutcome(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    SUCCESS = "success"
    TWO_FACTOR_REQUIRED = "2fa_required"


class OTPCheck(str, Enum):
    """Result of an atomic verification against the active challenge."""

    VERIFIED = "verified"
    INVALID = "invalid_or_expired"
    EXHAUSTED = "too_many_attempts"


@dataclass
class TrustedDevice:
    device_id: str
    device_name: str
    last_used_at: datetime = field(default_factory=utcnow)


@dataclass
class SecurityState:
    failed_login_attempts: int = 0
    account_locked: bool = False
    lock_until: Optional[datetime] = None
    trusted_devices: List[TrustedDevice] = field(default_factory=list)
    two_factor_enabled: bool = False
    two_factor_method: Optional[TwoFactorMethod] = None
    backup_codes: List[str] = field(default_factory=list)
    # Fernet ciphertext, never the raw base32 secret
    totp_secret: Optional[str] = None
    password_changed_at: Optional[datetime] = None

    def lock_active(self, now: datetime) -> bool:
        return bool(self.account_locked and self.lock_until and self.lock_until > now)

    def lock_expired(self, now: datetime) -> bool:
        return bool(self.account_locked and (self.lock_until is None or self.lock_until <= now))

    def trusts(self, device_id: str) -> bool:
        return any(device.device_id == device_id for device in self.trusted_devices)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    role: Role = Role.VISITOR
    is_verified: bool = False
    is_active: bool = True
    last_login: Optional[datetime] = None
    phone: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    security: SecurityState = field(default_factory=SecurityState)

    def public_profile(self) -> Dict[str, Any]:
        """Profile fields safe to hand back to the account owner."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": Role(self.role).value,
            "is_verified": self.is_verified,
            "is_active": self.is_active,
            "last_login": self.last_login,
            "phone": self.phone,
            "country": self.country,
            "city": self.city,
            "created_at": self.created_at,
            "two_factor_enabled": self.security.two_factor_enabled,
            "two_factor_method": (
                self.security.two_factor_method.value
                if self.security.two_factor_method
                else None
            ),
        }


@dataclass
class FailedLoginResult:
    attempts: int
    locked: bool
    newly_locked: bool
    lock_until: Optional[datetime] = None


@dataclass
class OTPChallenge:
    id: str
    user_id: str
    email: str
    code: str
    purpose: OTPPurpose
    expires_at: datetime
    attempts: int = 0
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        email: str,
        code: str,
        purpose: OTPPurpose,
        ttl_minutes: int = 15,
    ) -> "OTPChallenge":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            email=email,
            code=code,
            purpose=purpose,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_open(self, now: datetime) -> bool:
        return not self.verified and now < self.expires_at


@dataclass
class LoginAttempt:
    email: str
    ip: Optional[str]
    outcome: LoginOutcome
    browser: Optional[str] = None
    os: Optional[str] = None
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    user_id: Optional[str] = None
    suspicious: bool = False
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class RefreshSession:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip: Optional[str] = None
    location: Optional[str] = None
    is_active: bool = True
    access_jti: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl_days: int = 7,
        **device: Any,
    ) -> "RefreshSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
            last_used_at=now,
            **device,
        )

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at

    def metadata(self) -> Dict[str, Any]:
        """Session description without the token hash."""
        return {
            "id": self.id,
            "device_name": self.device_name,
            "browser": self.browser,
            "os": self.os,
            "ip": self.ip,
            "location": self.location,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            "expires_at": self.expires_at,
        }
