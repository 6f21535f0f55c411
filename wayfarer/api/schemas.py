from __future__ import annotations

import re
import unicodedata
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from wayfarer.logging import get_correlation_id

MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 2048


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is the stable machine-readable reason."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_OTP_CODE = re.compile(r"^[A-Za-z0-9]{6,8}$")
_PHONE = re.compile(r"^\+?[0-9 ()-]{6,20}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_code(value: str) -> str:
    # Six-digit OTP or TOTP, or an eight-character backup code
    cleaned = (value or "").strip()
    if not _OTP_CODE.match(cleaned):
        raise ValueError("invalid verification code format")
    return cleaned


def _clean_optional_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    return cleaned or None


class _EmailBody(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_body_email(cls, value: str) -> str:
        return _validate_email(value)


class _ProfileFields(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    country: Optional[str] = Field(default=None, max_length=64)
    city: Optional[str] = Field(default=None, max_length=64)

    @field_validator("name", "country", "city")
    @classmethod
    def _clean_text(cls, value: Optional[str]) -> Optional[str]:
        return _clean_optional_text(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        cleaned = _clean_optional_text(value)
        if cleaned is not None and not _PHONE.match(cleaned):
            raise ValueError("invalid phone number format")
        return cleaned


class RegisterRequest(_ProfileFields, _EmailBody):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class LoginRequest(_EmailBody):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    trust_device: bool = False


class VerifyEmailRequest(_EmailBody):
    code: str

    @field_validator("code")
    @classmethod
    def _validate_verify_code(cls, value: str) -> str:
        return _validate_code(value)


class VerifyTwoFactorRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    code: str
    trust_device: bool = False

    @field_validator("code")
    @classmethod
    def _validate_2fa_code(cls, value: str) -> str:
        return _validate_code(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class PasswordResetRequest(_EmailBody):
    pass


class PasswordResetConfirm(_EmailBody):
    code: str
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("code")
    @classmethod
    def _validate_reset_code(cls, value: str) -> str:
        return _validate_code(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class AccountRecoveryRequest(_EmailBody):
    pass


class AccountRecoveryConfirm(_EmailBody):
    code: str

    @field_validator("code")
    @classmethod
    def _validate_recovery_code(cls, value: str) -> str:
        return _validate_code(value)


class TwoFactorEnableRequest(BaseModel):
    method: Literal["email", "app"] = "email"


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class ProfileUpdateRequest(_ProfileFields):
    pass
