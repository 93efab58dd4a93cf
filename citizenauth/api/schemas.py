from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from citizenauth.storage.models import AccountStatus

MAX_TOKEN_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "token_expired",
    "forbidden",
    "account_not_active",
    "password_change_required",
    "not_found",
    "conflict",
    "account_locked",
    "validation_error",
    "password_policy",
    "server_error",
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


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


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 50:
        raise ValueError("username must be at most 50 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, digits, '.', '_' and '-'")
    return value.lower()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(CamelModel):
    username: str
    email: str
    password: str = Field(..., max_length=1024)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(CamelModel):
    credential: str = Field(
        ...,
        min_length=1,
        max_length=254,
        validation_alias=AliasChoices("credential", "username", "email"),
    )
    password: str = Field(..., max_length=1024)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class PasswordChangeRequest(CamelModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)


class PasswordResetRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(CamelModel):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(..., max_length=1024)


class AdminPasswordResetRequest(CamelModel):
    new_password: str = Field(..., max_length=1024)


class AccountStatusRequest(CamelModel):
    status: AccountStatus


class TokenResponse(CamelModel):
    account_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    access_expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    password_change_required: bool = False
    password_change_token: Optional[str] = None
    password_change_expires_at: Optional[datetime] = None


class AccountResponse(CamelModel):
    id: str
    username: str
    email: str
    status: AccountStatus
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    require_password_change: bool = False
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime


class PrincipalResponse(CamelModel):
    account_id: str
    username: str
    email: str
    roles: List[str]
    permissions: List[str]
    token_expires_at: datetime


class PermissionsResponse(CamelModel):
    account_id: str
    permissions: List[str]


class PasswordResultResponse(CamelModel):
    account_id: str
    password_changed_at: Optional[datetime] = None
    require_password_change: bool = False
    sessions_revoked: int = 0


class LoginAttemptResponse(CamelModel):
    id: str
    succeeded: bool
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class LoginAttemptListResponse(CamelModel):
    items: List[LoginAttemptResponse]
