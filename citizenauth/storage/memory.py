from __future__ import annotations

import contextlib
import copy
import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from citizenauth.logging import get_logger
from citizenauth.storage.errors import ConstraintViolation, TransactionTimeout
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
    new_id,
    normalize_identifier,
    normalize_slug,
    utcnow,
)

# Tables copied on transaction entry and restored on rollback
_TABLES = (
    "accounts",
    "roles",
    "permissions",
    "role_permissions",
    "assignments",
    "login_attempts",
    "sessions",
    "password_history",
    "password_resets",
)


class MemoryStore:
    """In-process store for development and tests.

    Transactions are serialized by a single re-entrant lock, which gives the
    same guarantees as row locks at the cost of cross-account parallelism.
    Objects handed out are copies; changes must go through ``save_*``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Set[Tuple[str, str]] = set()
        self.assignments: Dict[str, RoleAssignment] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.sessions: Dict[str, SessionRecord] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.password_resets: Dict[str, PasswordResetToken] = {}
        # RLock so store calls made inside transaction() re-enter freely
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self._deadline: Optional[float] = None
        self._timeout: Optional[float] = None

    @contextlib.contextmanager
    def transaction(self, timeout: Optional[float] = None):
        with self._data_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
            self._tx_depth = 1
            self._timeout = timeout
            self._deadline = time.monotonic() + timeout if timeout else None
            try:
                yield
                self._check_deadline()
            except BaseException:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                self.logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0
                self._deadline = None
                self._timeout = None

    def _check_deadline(self) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise TransactionTimeout(self._timeout or 0.0)

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
    ) -> Account:
        username = normalize_identifier(username)
        email = normalize_identifier(email)
        with self._data_lock:
            self._check_deadline()
            for existing in self.accounts.values():
                if existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            account = Account(
                id=new_id(),
                username=username,
                email=email,
                password_hash=password_hash,
                status=status,
                first_name=first_name,
                last_name=last_name,
                password_changed_at=now,
                created_at=now,
                created_by=created_by,
            )
            self.accounts[account.id] = account
            return replace(account)

    def get_account(self, account_id: str, *, for_update: bool = False) -> Optional[Account]:
        with self._data_lock:
            self._check_deadline()
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def find_account(self, identifier: str, *, for_update: bool = False) -> Optional[Account]:
        needle = normalize_identifier(identifier)
        with self._data_lock:
            self._check_deadline()
            for account in self.accounts.values():
                if account.deleted_at is None and needle in (account.username, account.email):
                    return replace(account)
        return None

    def get_account_by_email(self, email: str, *, for_update: bool = False) -> Optional[Account]:
        needle = normalize_identifier(email)
        with self._data_lock:
            self._check_deadline()
            for account in self.accounts.values():
                if account.deleted_at is None and account.email == needle:
                    return replace(account)
        return None

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            self._check_deadline()
            if account.id not in self.accounts:
                raise ConstraintViolation("account missing", {"account_id": account.id})
            stored = replace(account, updated_at=utcnow())
            self.accounts[account.id] = stored
            return replace(stored)

    def soft_delete_account(self, account_id: str, *, deleted_by: Optional[str]) -> bool:
        with self._data_lock:
            self._check_deadline()
            account = self.accounts.get(account_id)
            if not account or account.deleted_at is not None:
                return False
            self.accounts[account_id] = replace(
                account, deleted_at=utcnow(), deleted_by=deleted_by
            )
            return True

    # roles & permissions
    def create_role(
        self,
        slug: str,
        name: str,
        *,
        hierarchy_level: int = 0,
        is_system: bool = False,
    ) -> Role:
        slug = normalize_slug(slug)
        with self._data_lock:
            self._check_deadline()
            if any(role.slug == slug for role in self.roles.values()):
                raise ConstraintViolation("role already exists", {"slug": slug})
            role = Role(
                id=new_id(),
                slug=slug,
                name=name,
                hierarchy_level=hierarchy_level,
                is_system=is_system,
            )
            self.roles[role.id] = role
            return replace(role)

    def get_role_by_slug(self, slug: str) -> Optional[Role]:
        slug = normalize_slug(slug)
        with self._data_lock:
            for role in self.roles.values():
                if role.slug == slug and role.deleted_at is None:
                    return replace(role)
        return None

    def set_role_active(self, role_id: str, is_active: bool) -> None:
        with self._data_lock:
            self._check_deadline()
            role = self.roles.get(role_id)
            if role:
                self.roles[role_id] = replace(role, is_active=is_active)

    def create_permission(
        self, module: str, resource: str, action: str, *, slug: Optional[str] = None
    ) -> Permission:
        slug = normalize_slug(slug or f"{module}.{resource}.{action}")
        with self._data_lock:
            self._check_deadline()
            if any(perm.slug == slug for perm in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"slug": slug})
            permission = Permission(
                id=new_id(), slug=slug, module=module, resource=resource, action=action
            )
            self.permissions[permission.id] = permission
            return replace(permission)

    def get_permission_by_slug(self, slug: str) -> Optional[Permission]:
        slug = normalize_slug(slug)
        with self._data_lock:
            for permission in self.permissions.values():
                if permission.slug == slug:
                    return replace(permission)
        return None

    def grant_permission(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            self._check_deadline()
            if role_id not in self.roles or permission_id not in self.permissions:
                raise ConstraintViolation(
                    "role or permission missing",
                    {"role_id": role_id, "permission_id": permission_id},
                )
            self.role_permissions.add((role_id, permission_id))

    def assign_role(
        self,
        account_id: str,
        role_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> RoleAssignment:
        with self._data_lock:
            self._check_deadline()
            if account_id not in self.accounts or role_id not in self.roles:
                raise ConstraintViolation(
                    "account or role missing", {"account_id": account_id, "role_id": role_id}
                )
            for existing in self.assignments.values():
                if (
                    existing.account_id == account_id
                    and existing.role_id == role_id
                    and existing.deleted_at is None
                ):
                    raise ConstraintViolation(
                        "role already assigned", {"account_id": account_id, "role_id": role_id}
                    )
            assignment = RoleAssignment(
                id=new_id(),
                account_id=account_id,
                role_id=role_id,
                assigned_by=assigned_by,
                expires_at=expires_at,
            )
            self.assignments[assignment.id] = assignment
            return replace(assignment)

    def set_assignment_active(self, assignment_id: str, is_active: bool) -> None:
        with self._data_lock:
            self._check_deadline()
            assignment = self.assignments.get(assignment_id)
            if assignment:
                self.assignments[assignment_id] = replace(assignment, is_active=is_active)

    def list_effective_roles(self, account_id: str, now: datetime) -> List[Role]:
        with self._data_lock:
            self._check_deadline()
            roles: Dict[str, Role] = {}
            for assignment in self.assignments.values():
                if assignment.account_id != account_id or not assignment.is_effective(now):
                    continue
                role = self.roles.get(assignment.role_id)
                if role and role.is_active and role.deleted_at is None:
                    roles[role.id] = replace(role)
            return sorted(roles.values(), key=lambda r: (-r.hierarchy_level, r.slug))

    def list_role_permissions(self, role_ids: Iterable[str]) -> List[Permission]:
        wanted = set(role_ids)
        with self._data_lock:
            self._check_deadline()
            found = [
                self.permissions[perm_id]
                for role_id, perm_id in self.role_permissions
                if role_id in wanted and perm_id in self.permissions
            ]
            return [replace(perm) for perm in found if perm.is_active]

    # login audit
    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self._check_deadline()
            self.login_attempts.append(replace(attempt))

    def list_login_attempts(
        self, *, account_id: Optional[str] = None, limit: int = 50
    ) -> List[LoginAttempt]:
        with self._data_lock:
            # Newest insert first among equal timestamps
            rows = [
                a for a in reversed(self.login_attempts)
                if account_id is None or a.account_id == account_id
            ]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        return [replace(a) for a in rows[:limit]]

    # refresh sessions
    def insert_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            self._check_deadline()
            if record.token_id in self.sessions:
                raise ConstraintViolation("token id already recorded", {"token_id": record.token_id})
            if record.account_id not in self.accounts:
                raise ConstraintViolation("session account missing", {"account_id": record.account_id})
            self.sessions[record.token_id] = replace(record)
            return replace(record)

    def get_session(self, token_id: str, *, for_update: bool = False) -> Optional[SessionRecord]:
        with self._data_lock:
            self._check_deadline()
            record = self.sessions.get(token_id)
            return replace(record) if record else None

    def revoke_session(
        self,
        token_id: str,
        *,
        now: datetime,
        reason: str,
        revoked_by: Optional[str] = None,
        replaced_by: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            self._check_deadline()
            record = self.sessions.get(token_id)
            if not record or record.revoked_at is not None:
                return False
            self.sessions[token_id] = replace(
                record,
                revoked_at=now,
                revoked_reason=reason,
                revoked_by=revoked_by,
                replaced_by=replaced_by,
            )
            return True

    def revoke_account_sessions(
        self, account_id: str, *, now: datetime, reason: str, revoked_by: Optional[str] = None
    ) -> int:
        with self._data_lock:
            self._check_deadline()
            count = 0
            for token_id, record in list(self.sessions.items()):
                if record.account_id == account_id and record.revoked_at is None:
                    self.sessions[token_id] = replace(
                        record, revoked_at=now, revoked_reason=reason, revoked_by=revoked_by
                    )
                    count += 1
            return count

    def revoke_session_family(self, family_id: str, *, now: datetime, reason: str) -> int:
        with self._data_lock:
            self._check_deadline()
            count = 0
            for token_id, record in list(self.sessions.items()):
                if record.family_id == family_id and record.revoked_at is None:
                    self.sessions[token_id] = replace(record, revoked_at=now, revoked_reason=reason)
                    count += 1
            return count

    def list_active_sessions(self, account_id: str, now: datetime) -> List[SessionRecord]:
        with self._data_lock:
            rows = [
                replace(r)
                for r in self.sessions.values()
                if r.account_id == account_id and r.revoked_at is None and r.expires_at > now
            ]
        return sorted(rows, key=lambda r: r.issued_at, reverse=True)

    # password history & reset tokens
    def add_password_history(self, account_id: str, password_hash: str, *, keep: int) -> None:
        with self._data_lock:
            self._check_deadline()
            entries = self.password_history.setdefault(account_id, [])
            entries.append(
                PasswordHistoryEntry(id=new_id(), account_id=account_id, password_hash=password_hash)
            )
            # Oldest first; evict beyond retention
            if keep <= 0:
                entries.clear()
            elif len(entries) > keep:
                del entries[: len(entries) - keep]

    def list_password_history(self, account_id: str, limit: int) -> List[PasswordHistoryEntry]:
        if limit <= 0:
            return []
        with self._data_lock:
            self._check_deadline()
            entries = list(self.password_history.get(account_id, []))
        return [replace(e) for e in reversed(entries)][:limit]

    def create_password_reset(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            self._check_deadline()
            if token.token_hash in self.password_resets:
                raise ConstraintViolation("reset token collision", {})
            self.password_resets[token.token_hash] = replace(token)
            return replace(token)

    def get_password_reset(
        self, token_hash: str, *, for_update: bool = False
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            self._check_deadline()
            token = self.password_resets.get(token_hash)
            return replace(token) if token else None

    def mark_password_reset_used(self, reset_id: str, now: datetime) -> None:
        with self._data_lock:
            self._check_deadline()
            for token_hash, token in self.password_resets.items():
                if token.id == reset_id and token.used_at is None:
                    self.password_resets[token_hash] = replace(token, used_at=now)
                    return

    def invalidate_password_resets(self, account_id: str, now: datetime) -> int:
        with self._data_lock:
            self._check_deadline()
            count = 0
            for token_hash, token in list(self.password_resets.items()):
                if token.account_id == account_id and token.used_at is None:
                    self.password_resets[token_hash] = replace(token, used_at=now)
                    count += 1
            return count
