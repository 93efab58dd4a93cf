from __future__ import annotations

import contextlib
import time
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from citizenauth.logging import get_logger, sanitize_error_message
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

_ACCOUNT_COLUMNS = (
    "username, email, password_hash, status, failed_login_attempts, locked_until, "
    "password_changed_at, require_password_change, last_login_at, last_login_ip, "
    "first_name, last_name, updated_by, deleted_at, deleted_by"
)


def _account_from_row(row: Dict[str, Any]) -> Account:
    return Account(
        id=str(row["id"]),
        username=row["username"],
        email=row["email"],
        password_hash=row["password_hash"],
        status=AccountStatus(row["status"]),
        failed_login_attempts=row.get("failed_login_attempts") or 0,
        locked_until=row.get("locked_until"),
        password_changed_at=row.get("password_changed_at"),
        require_password_change=bool(row.get("require_password_change", False)),
        last_login_at=row.get("last_login_at"),
        last_login_ip=row.get("last_login_ip"),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at"),
        created_by=row.get("created_by"),
        updated_by=row.get("updated_by"),
        deleted_at=row.get("deleted_at"),
        deleted_by=row.get("deleted_by"),
    )


def _role_from_row(row: Dict[str, Any]) -> Role:
    return Role(
        id=str(row["id"]),
        slug=row["slug"],
        name=row["name"],
        hierarchy_level=row.get("hierarchy_level") or 0,
        is_system=bool(row.get("is_system", False)),
        is_active=bool(row.get("is_active", True)),
        created_at=row.get("created_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _permission_from_row(row: Dict[str, Any]) -> Permission:
    return Permission(
        id=str(row["id"]),
        slug=row["slug"],
        module=row["module"],
        resource=row["resource"],
        action=row["action"],
        is_active=bool(row.get("is_active", True)),
    )


def _session_from_row(row: Dict[str, Any]) -> SessionRecord:
    return SessionRecord(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        token_id=row["token_id"],
        family_id=row["family_id"],
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        revoked_at=row.get("revoked_at"),
        revoked_reason=row.get("revoked_reason"),
        revoked_by=row.get("revoked_by"),
        replaced_by=row.get("replaced_by"),
    )


def _reset_from_row(row: Dict[str, Any]) -> PasswordResetToken:
    return PasswordResetToken(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        used_at=row.get("used_at"),
        ip_address=row.get("ip_address"),
        created_at=row.get("created_at") or utcnow(),
    )


def _lock_clause(for_update: bool) -> str:
    return " FOR UPDATE" if for_update else ""


class PostgresStore:
    """Postgres-backed store of record for accounts, roles and sessions."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar[Optional[Connection]] = ContextVar(
            f"citizenauth_tx_{id(self)}", default=None
        )
        self._verify_required_schema()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Connection]:
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    @contextlib.contextmanager
    def transaction(self, timeout: Optional[float] = None):
        """Bind one pooled connection to the current context until commit.

        Nested calls open a savepoint on the bound connection. ``timeout``
        caps every statement server-side and the whole unit client-side; in
        both cases the transaction is rolled back.
        """

        conn = self._tx_conn.get()
        if conn is not None:
            with conn.transaction():
                yield
            return
        deadline = time.monotonic() + timeout if timeout else None
        try:
            with self.pool.connection() as conn:
                with conn.transaction():
                    if timeout:
                        conn.execute(
                            "SELECT set_config('statement_timeout', %s, true)",
                            (str(int(timeout * 1000)),),
                        )
                    token = self._tx_conn.set(conn)
                    try:
                        yield
                        if deadline is not None and time.monotonic() > deadline:
                            raise TransactionTimeout(timeout or 0.0)
                    finally:
                        self._tx_conn.reset(token)
        except errors.QueryCanceled as exc:
            self.logger.warning(
                "transaction_statement_timeout",
                error=sanitize_error_message(str(exc)),
            )
            raise TransactionTimeout(timeout or 0.0) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "accounts",
            "roles",
            "permissions",
            "role_assignments",
            "role_permissions",
            "login_attempts",
            "sessions",
            "password_history",
            "password_reset_tokens",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

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
        account_id = new_id()
        now = utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO accounts (id, username, email, password_hash, status,
                        first_name, last_name, password_changed_at, created_at, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalize_identifier(username),
                        normalize_identifier(email),
                        password_hash,
                        status.value,
                        first_name,
                        last_name,
                        now,
                        now,
                        created_by,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return _account_from_row(row)

    def get_account(self, account_id: str, *, for_update: bool = False) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = %s" + _lock_clause(for_update),
                (account_id,),
            ).fetchone()
        return _account_from_row(row) if row else None

    def find_account(self, identifier: str, *, for_update: bool = False) -> Optional[Account]:
        needle = normalize_identifier(identifier)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE (username = %s OR email = %s) "
                "AND deleted_at IS NULL LIMIT 1" + _lock_clause(for_update),
                (needle, needle),
            ).fetchone()
        return _account_from_row(row) if row else None

    def get_account_by_email(self, email: str, *, for_update: bool = False) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE email = %s AND deleted_at IS NULL"
                + _lock_clause(for_update),
                (normalize_identifier(email),),
            ).fetchone()
        return _account_from_row(row) if row else None

    def save_account(self, account: Account) -> Account:
        assignments = ", ".join(f"{col.strip()} = %s" for col in _ACCOUNT_COLUMNS.split(","))
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE accounts SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (
                    account.username,
                    account.email,
                    account.password_hash,
                    account.status.value,
                    account.failed_login_attempts,
                    account.locked_until,
                    account.password_changed_at,
                    account.require_password_change,
                    account.last_login_at,
                    account.last_login_ip,
                    account.first_name,
                    account.last_name,
                    account.updated_by,
                    account.deleted_at,
                    account.deleted_by,
                    account.id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("account missing", {"account_id": account.id})
        return _account_from_row(row)

    def soft_delete_account(self, account_id: str, *, deleted_by: Optional[str]) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE accounts SET deleted_at = now(), deleted_by = %s "
                "WHERE id = %s AND deleted_at IS NULL",
                (deleted_by, account_id),
            )
            return result.rowcount > 0

    # roles & permissions
    def create_role(
        self,
        slug: str,
        name: str,
        *,
        hierarchy_level: int = 0,
        is_system: bool = False,
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO roles (id, slug, name, hierarchy_level, is_system)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), normalize_slug(slug), name, hierarchy_level, is_system),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"slug": slug})
        return _role_from_row(row)

    def get_role_by_slug(self, slug: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM roles WHERE slug = %s AND deleted_at IS NULL",
                (normalize_slug(slug),),
            ).fetchone()
        return _role_from_row(row) if row else None

    def set_role_active(self, role_id: str, is_active: bool) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE roles SET is_active = %s WHERE id = %s", (is_active, role_id))

    def create_permission(
        self, module: str, resource: str, action: str, *, slug: Optional[str] = None
    ) -> Permission:
        slug = normalize_slug(slug or f"{module}.{resource}.{action}")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permissions (id, slug, module, resource, action)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), slug, module, resource, action),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"slug": slug})
        return _permission_from_row(row)

    def get_permission_by_slug(self, slug: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permissions WHERE slug = %s", (normalize_slug(slug),)
            ).fetchone()
        return _permission_from_row(row) if row else None

    def grant_permission(self, role_id: str, permission_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role_permissions (role_id, permission_id)
                    VALUES (%s, %s)
                    ON CONFLICT (role_id, permission_id) DO NOTHING
                    """,
                    (role_id, permission_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or permission missing",
                {"role_id": role_id, "permission_id": permission_id},
            )

    def assign_role(
        self,
        account_id: str,
        role_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> RoleAssignment:
        assignment = RoleAssignment(
            id=new_id(),
            account_id=account_id,
            role_id=role_id,
            assigned_by=assigned_by,
            expires_at=expires_at,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role_assignments (id, account_id, role_id, is_active,
                        assigned_by, assigned_at, expires_at)
                    VALUES (%s, %s, %s, TRUE, %s, %s, %s)
                    """,
                    (
                        assignment.id,
                        account_id,
                        role_id,
                        assigned_by,
                        assignment.assigned_at,
                        expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "role already assigned", {"account_id": account_id, "role_id": role_id}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account or role missing", {"account_id": account_id, "role_id": role_id}
            )
        return assignment

    def set_assignment_active(self, assignment_id: str, is_active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE role_assignments SET is_active = %s WHERE id = %s",
                (is_active, assignment_id),
            )

    def list_effective_roles(self, account_id: str, now: datetime) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT r.*
                FROM role_assignments ra
                JOIN roles r ON r.id = ra.role_id
                WHERE ra.account_id = %s
                  AND ra.is_active
                  AND ra.deleted_at IS NULL
                  AND (ra.expires_at IS NULL OR ra.expires_at > %s)
                  AND r.is_active
                  AND r.deleted_at IS NULL
                ORDER BY r.hierarchy_level DESC, r.slug
                """,
                (account_id, now),
            ).fetchall()
        return [_role_from_row(row) for row in rows]

    def list_role_permissions(self, role_ids: Iterable[str]) -> List[Permission]:
        ids = list(role_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.*
                FROM role_permissions rp
                JOIN permissions p ON p.id = rp.permission_id
                WHERE rp.role_id = ANY(%s) AND p.is_active
                """,
                (ids,),
            ).fetchall()
        return [_permission_from_row(row) for row in rows]

    # login audit
    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempts (id, credential, account_id, ip_address,
                    user_agent, succeeded, failure_reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.credential,
                    attempt.account_id,
                    attempt.ip_address,
                    attempt.user_agent,
                    attempt.succeeded,
                    attempt.failure_reason,
                    attempt.created_at,
                ),
            )

    def list_login_attempts(
        self, *, account_id: Optional[str] = None, limit: int = 50
    ) -> List[LoginAttempt]:
        query = "SELECT * FROM login_attempts"
        params: list[Any] = []
        if account_id is not None:
            query += " WHERE account_id = %s"
            params.append(account_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            LoginAttempt(
                id=str(row["id"]),
                credential=row["credential"],
                succeeded=bool(row["succeeded"]),
                account_id=str(row["account_id"]) if row.get("account_id") else None,
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                failure_reason=row.get("failure_reason"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # refresh sessions
    def insert_session(self, record: SessionRecord) -> SessionRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, account_id, token_id, family_id, issued_at,
                        expires_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.account_id,
                        record.token_id,
                        record.family_id,
                        record.issued_at,
                        record.expires_at,
                        record.ip_address,
                        record.user_agent,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token id already recorded", {"token_id": record.token_id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session account missing", {"account_id": record.account_id})
        return record

    def get_session(self, token_id: str, *, for_update: bool = False) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE token_id = %s" + _lock_clause(for_update),
                (token_id,),
            ).fetchone()
        return _session_from_row(row) if row else None

    def revoke_session(
        self,
        token_id: str,
        *,
        now: datetime,
        reason: str,
        revoked_by: Optional[str] = None,
        replaced_by: Optional[str] = None,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE sessions
                SET revoked_at = %s, revoked_reason = %s, revoked_by = %s, replaced_by = %s
                WHERE token_id = %s AND revoked_at IS NULL
                """,
                (now, reason, revoked_by, replaced_by, token_id),
            )
            return result.rowcount > 0

    def revoke_account_sessions(
        self, account_id: str, *, now: datetime, reason: str, revoked_by: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE sessions
                SET revoked_at = %s, revoked_reason = %s, revoked_by = %s
                WHERE account_id = %s AND revoked_at IS NULL
                """,
                (now, reason, revoked_by, account_id),
            )
            return result.rowcount

    def revoke_session_family(self, family_id: str, *, now: datetime, reason: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE sessions SET revoked_at = %s, revoked_reason = %s
                WHERE family_id = %s AND revoked_at IS NULL
                """,
                (now, reason, family_id),
            )
            return result.rowcount

    def list_active_sessions(self, account_id: str, now: datetime) -> List[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE account_id = %s AND revoked_at IS NULL AND expires_at > %s
                ORDER BY issued_at DESC
                """,
                (account_id, now),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    # password history & reset tokens
    def add_password_history(self, account_id: str, password_hash: str, *, keep: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_history (id, account_id, password_hash, created_at)
                VALUES (%s, %s, %s, clock_timestamp())
                """,
                (new_id(), account_id, password_hash),
            )
            conn.execute(
                """
                DELETE FROM password_history
                WHERE account_id = %s AND id NOT IN (
                    SELECT id FROM password_history
                    WHERE account_id = %s
                    ORDER BY created_at DESC
                    LIMIT %s
                )
                """,
                (account_id, account_id, max(keep, 0)),
            )

    def list_password_history(self, account_id: str, limit: int) -> List[PasswordHistoryEntry]:
        if limit <= 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM password_history
                WHERE account_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (account_id, limit),
            ).fetchall()
        return [
            PasswordHistoryEntry(
                id=str(row["id"]),
                account_id=str(row["account_id"]),
                password_hash=row["password_hash"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def create_password_reset(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_tokens (id, account_id, token_hash, expires_at,
                    ip_address, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.account_id,
                    token.token_hash,
                    token.expires_at,
                    token.ip_address,
                    token.created_at,
                ),
            )
        return token

    def get_password_reset(
        self, token_hash: str, *, for_update: bool = False
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_tokens WHERE token_hash = %s"
                + _lock_clause(for_update),
                (token_hash,),
            ).fetchone()
        return _reset_from_row(row) if row else None

    def mark_password_reset_used(self, reset_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE password_reset_tokens SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (now, reset_id),
            )

    def invalidate_password_resets(self, account_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE password_reset_tokens SET used_at = %s
                WHERE account_id = %s AND used_at IS NULL
                """,
                (now, account_id),
            )
            return result.rowcount
