from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lawmakers_auth.service.passwords import PasswordHasher

MAX_EMAIL_LENGTH = 255


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    Zero-width and bidi override characters are dropped first so two
    visually identical addresses cannot map to different accounts.
    """
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "INVALID_EMAIL",
    "INVALID_PASSWORD",
    "RATE_LIMITED",
    "USER_EXISTS",
    "MISSING_CREDENTIALS",
    "INVALID_CREDENTIALS",
    "NOT_VERIFIED",
    "MISSING_REFRESH_TOKEN",
    "UNAUTHORIZED",
    "INVALID_TOKEN",
    "INVALID_REFRESH_TOKEN",
    "USER_NOT_FOUND",
    "ALREADY_VERIFIED",
    "MISSING_TOKEN",
    "VALIDATION_ERROR",
    "NOT_FOUND",
    "METHOD_NOT_ALLOWED",
    "SERVER_ERROR",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email(value: Any) -> str:
    """Return the trimmed, NFKC-normalized address or raise ValueError."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip())
    if not normalized:
        raise ValueError("email is required")
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    local, sep, domain = normalized.lower().rpartition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    problem = PasswordHasher.validate_strength(value)
    if problem:
        raise ValueError(problem)
    return value


class SignupRequest(BaseModel):
    email: str
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def _validate_signup_email(cls, value: Any) -> str:
        return validate_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: Any) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    # both optional so an incomplete body maps to MISSING_CREDENTIALS in the route
    email: Optional[str] = None
    password: Optional[str] = None


class ResendRequest(BaseModel):
    email: str

    @field_validator("email", mode="before")
    @classmethod
    def _validate_resend_email(cls, value: Any) -> str:
        return validate_email(value)


class UserSummary(BaseModel):
    id: str
    email: str
    verified: bool


class SignupResponse(BaseModel):
    message: str
    resend: bool = False
    email_sent: Optional[bool] = None
    user: Optional[UserSummary] = None


class LoginResponse(BaseModel):
    message: str
    user: UserSummary


class MessageResponse(BaseModel):
    message: str


class MeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    email: str
    verified: bool
    created_at: datetime = Field(..., serialization_alias="createdAt")


class SessionUser(BaseModel):
    id: str
    email: str


class SessionStatus(BaseModel):
    authenticated: bool
    user: Optional[SessionUser] = None
