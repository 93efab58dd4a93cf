from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_identifier(value: str) -> str:
    """Usernames and emails are matched trimmed and lowercased."""
    return (value or "").strip().lower()


_SLUG_SPACES = re.compile(r"\s+")


def normalize_slug(value: str) -> str:
    return _SLUG_SPACES.sub("_", (value or "").strip().lower())


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    BLOCKED = "BLOCKED"
    PENDING = "PENDING"


@dataclass
class Account:
    id: str
    username: str
    email: str
    password_hash: str
    status: AccountStatus = AccountStatus.PENDING
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    require_password_change: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def lock_remaining(self, now: datetime) -> Optional[timedelta]:
        if self.locked_until is None or self.locked_until <= now:
            return None
        return self.locked_until - now


@dataclass
class Role:
    id: str
    slug: str
    name: str
    hierarchy_level: int = 0
    is_system: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Permission:
    id: str
    slug: str
    module: str
    resource: str
    action: str
    is_active: bool = True


@dataclass
class RoleAssignment:
    id: str
    account_id: str
    role_id: str
    is_active: bool = True
    assigned_by: Optional[str] = None
    assigned_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def is_effective(self, now: datetime) -> bool:
        if not self.is_active or self.deleted_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass
class LoginAttempt:
    id: str
    credential: str
    succeeded: bool
    account_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionRecord:
    """One issued refresh token, identified by its ``jti``."""

    id: str
    account_id: str
    token_id: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    revoked_by: Optional[str] = None
    replaced_by: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class PasswordHistoryEntry:
    id: str
    account_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now
