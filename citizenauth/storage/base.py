from __future__ import annotations

from datetime import datetime
from typing import ContextManager, Iterable, List, Optional, Protocol

from citizenauth.storage.models import (
    Account,
    AccountStatus,
    LoginAttempt,
    PasswordHistoryEntry,
    PasswordResetToken,
    Permission,
    Role,
    RoleAssignment,
    SessionRecord,
)


class AuthStore(Protocol):
    """Persistence contract shared by the memory and Postgres backends.

    Every read accepting ``for_update`` takes a row lock that is held until the
    enclosing :meth:`transaction` ends. Calls made outside a transaction run in
    their own implicit one.
    """

    def transaction(self, timeout: Optional[float] = None) -> ContextManager[None]: ...

    # accounts
    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        status: AccountStatus = AccountStatus.PENDING,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Account: ...

    def get_account(self, account_id: str, *, for_update: bool = False) -> Optional[Account]: ...

    def find_account(self, identifier: str, *, for_update: bool = False) -> Optional[Account]: ...

    def get_account_by_email(self, email: str, *, for_update: bool = False) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...

    def soft_delete_account(self, account_id: str, *, deleted_by: Optional[str]) -> bool: ...

    # roles & permissions
    def create_role(
        self,
        slug: str,
        name: str,
        *,
        hierarchy_level: int = 0,
        is_system: bool = False,
    ) -> Role: ...

    def get_role_by_slug(self, slug: str) -> Optional[Role]: ...

    def set_role_active(self, role_id: str, is_active: bool) -> None: ...

    def create_permission(
        self, module: str, resource: str, action: str, *, slug: Optional[str] = None
    ) -> Permission: ...

    def get_permission_by_slug(self, slug: str) -> Optional[Permission]: ...

    def grant_permission(self, role_id: str, permission_id: str) -> None: ...

    def assign_role(
        self,
        account_id: str,
        role_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> RoleAssignment: ...

    def set_assignment_active(self, assignment_id: str, is_active: bool) -> None: ...

    def list_effective_roles(self, account_id: str, now: datetime) -> List[Role]: ...

    def list_role_permissions(self, role_ids: Iterable[str]) -> List[Permission]: ...

    # login audit
    def record_login_attempt(self, attempt: LoginAttempt) -> None: ...

    def list_login_attempts(
        self, *, account_id: Optional[str] = None, limit: int = 50
    ) -> List[LoginAttempt]: ...

    # refresh sessions
    def insert_session(self, record: SessionRecord) -> SessionRecord: ...

    def get_session(self, token_id: str, *, for_update: bool = False) -> Optional[SessionRecord]: ...

    def revoke_session(
        self,
        token_id: str,
        *,
        now: datetime,
        reason: str,
        revoked_by: Optional[str] = None,
        replaced_by: Optional[str] = None,
    ) -> bool: ...

    def revoke_account_sessions(
        self, account_id: str, *, now: datetime, reason: str, revoked_by: Optional[str] = None
    ) -> int: ...

    def revoke_session_family(self, family_id: str, *, now: datetime, reason: str) -> int: ...

    def list_active_sessions(self, account_id: str, now: datetime) -> List[SessionRecord]: ...

    # password history & reset tokens
    def add_password_history(self, account_id: str, password_hash: str, *, keep: int) -> None: ...

    def list_password_history(self, account_id: str, limit: int) -> List[PasswordHistoryEntry]: ...

    def create_password_reset(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def get_password_reset(
        self, token_hash: str, *, for_update: bool = False
    ) -> Optional[PasswordResetToken]: ...

    def mark_password_reset_used(self, reset_id: str, now: datetime) -> None: ...

    def invalidate_password_resets(self, account_id: str, now: datetime) -> int: ...
