from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, FrozenSet, Iterable, List, Optional

from citizenauth.config import Settings
from citizenauth.logging import get_logger, hash_identifier
from citizenauth.service.context import ANONYMOUS, OperationContext
from citizenauth.service.errors import (
    ConflictError,
    NotFoundError,
    RefreshInvalid,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from citizenauth.service.lockout import LockoutManager
from citizenauth.service.passwords import (
    CredentialHasher,
    PasswordManager,
    PasswordPolicy,
    PasswordResult,
    ResetDelivery,
)
from citizenauth.service.permissions import Grants, PermissionResolver
from citizenauth.service.sessions import RevocationReason, SessionLedger
from citizenauth.service.tokens import AccessClaims, TokenPair, TokenService
from citizenauth.storage.base import AuthStore
from citizenauth.storage.errors import ConstraintViolation
from citizenauth.storage.models import Account, AccountStatus, LoginAttempt, utcnow

Principal = AccessClaims


@dataclass(frozen=True)
class LoginResult:
    account: Account
    roles: tuple
    permissions: FrozenSet[str]
    tokens: Optional[TokenPair] = None
    password_change_required: bool = False
    password_change_token: Optional[str] = None
    password_change_expires_at: Optional[datetime] = None


class AuthService:
    """Entry point for authentication, session and password operations.

    Every public coroutine runs one synchronous unit of work on a worker
    thread; that unit opens exactly one store transaction, so argon2 and row
    locks never block the event loop.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        delivery: Optional[ResetDelivery] = None,
        hasher: Optional[CredentialHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logger = get_logger(__name__)
        self._clock = clock
        self.hasher = hasher or CredentialHasher()
        self.policy = PasswordPolicy.from_settings(settings)
        self.ledger = SessionLedger(store, settings, clock=clock)
        self.resolver = PermissionResolver(store, clock=clock)
        self.tokens = TokenService(store, self.ledger, self.resolver, settings, clock=clock)
        self.lockout = LockoutManager(store, self.hasher, settings, clock=clock)
        self.passwords = PasswordManager(
            store, self.hasher, self.ledger, settings, delivery=delivery, clock=clock
        )

    def _transaction(self):
        return self.store.transaction(timeout=self.settings.operation_timeout_seconds)

    # login & tokens
    async def authenticate(
        self, credential: str, password: str, context: OperationContext = ANONYMOUS
    ) -> LoginResult:
        return await asyncio.to_thread(self._authenticate, credential, password, context)

    def _authenticate(
        self, credential: str, password: str, context: OperationContext
    ) -> LoginResult:
        with self._transaction():
            outcome = self.lockout.attempt(credential, password, context)
            if outcome.ok:
                result = self._login_result(outcome.account, context)
        # Failed attempts are committed above; raising here keeps the counter
        account = outcome.raise_for_status()
        if result.password_change_required:
            self.logger.info("login_password_change_required", account_id=account.id)
        return result

    def _login_result(self, account: Account, context: OperationContext) -> LoginResult:
        grants = self.resolver.resolve_grants(account.id)
        if account.require_password_change:
            token, expires_at = self.tokens.issue_password_change_token(account)
            return LoginResult(
                account=account,
                roles=grants.roles,
                permissions=grants.permissions,
                password_change_required=True,
                password_change_token=token,
                password_change_expires_at=expires_at,
            )
        pair = self.tokens.issue(account, grants, context)
        return LoginResult(
            account=account,
            roles=grants.roles,
            permissions=grants.permissions,
            tokens=pair,
        )

    async def refresh(
        self, refresh_token: str, context: OperationContext = ANONYMOUS
    ) -> LoginResult:
        rotation = await asyncio.to_thread(self.tokens.rotate, refresh_token, context)
        return LoginResult(
            account=rotation.account,
            roles=rotation.grants.roles,
            permissions=rotation.grants.permissions,
            tokens=rotation.tokens,
        )

    async def logout(self, refresh_token: str, context: OperationContext = ANONYMOUS) -> bool:
        """Revoke the session behind ``refresh_token``; invalid tokens are a no-op."""

        return await asyncio.to_thread(self._logout, refresh_token, context)

    def _logout(self, refresh_token: str, context: OperationContext) -> bool:
        try:
            payload = self.tokens.decode_refresh(refresh_token)
        except RefreshInvalid:
            self.logger.info("logout_ignored_invalid_token")
            return False
        account_id = str(payload["account_id"])
        return self.ledger.revoke(
            str(payload["jti"]),
            reason=RevocationReason.LOGOUT,
            context=context.acting_as(context.actor_id or account_id),
        )

    async def logout_all(self, account_id: str, context: OperationContext = ANONYMOUS) -> int:
        return await asyncio.to_thread(
            self.ledger.revoke_all,
            account_id,
            reason=RevocationReason.LOGOUT_ALL,
            context=context,
        )

    def verify_access(self, token: str) -> Principal:
        return self.tokens.verify_access(token)

    def verify_password_change_subject(self, token: str) -> str:
        """Account id for either an access token or a password-change token."""

        try:
            return self.tokens.verify_password_change_token(token)
        except TokenExpired:
            raise
        except TokenInvalid:
            return self.tokens.verify_access(token).account_id

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def resolve_permissions(self, account_id: str) -> FrozenSet[str]:
        return await asyncio.to_thread(self.resolver.resolve, account_id)

    async def resolve_grants(self, account_id: str) -> Grants:
        return await asyncio.to_thread(self.resolver.resolve_grants, account_id)

    # passwords
    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        context: OperationContext = ANONYMOUS,
    ) -> PasswordResult:
        return await asyncio.to_thread(
            self.passwords.change_password,
            account_id,
            current_password,
            new_password,
            context.acting_as(context.actor_id or account_id),
        )

    async def admin_reset_password(
        self, account_id: str, new_password: str, context: OperationContext
    ) -> PasswordResult:
        return await asyncio.to_thread(
            self.passwords.reset_password, account_id, new_password, context
        )

    async def reset_password_request(
        self, email: str, context: OperationContext = ANONYMOUS
    ) -> None:
        """Always completes the same way so callers cannot probe for accounts."""

        await asyncio.to_thread(self.passwords.request_reset, email, context)

    async def reset_password_confirm(
        self, token: str, new_password: str, context: OperationContext = ANONYMOUS
    ) -> PasswordResult:
        return await asyncio.to_thread(
            self.passwords.confirm_reset, token, new_password, context
        )

    # accounts
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        context: OperationContext = ANONYMOUS,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Account:
        return await asyncio.to_thread(
            self._create_account,
            username,
            email,
            password,
            context,
            status=AccountStatus.PENDING,
            role_slugs=[self.settings.default_role_slug],
            require_password_change=False,
            first_name=first_name,
            last_name=last_name,
        )

    async def admin_create_account(
        self,
        username: str,
        email: str,
        password: str,
        context: OperationContext,
        *,
        status: AccountStatus = AccountStatus.ACTIVE,
        role_slugs: Optional[Iterable[str]] = None,
        require_password_change: bool = True,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Account:
        return await asyncio.to_thread(
            self._create_account,
            username,
            email,
            password,
            context,
            status=status,
            role_slugs=list(role_slugs) if role_slugs is not None else [self.settings.default_role_slug],
            require_password_change=require_password_change,
            first_name=first_name,
            last_name=last_name,
        )

    def _create_account(
        self,
        username: str,
        email: str,
        password: str,
        context: OperationContext,
        *,
        status: AccountStatus,
        role_slugs: List[str],
        require_password_change: bool,
        first_name: Optional[str],
        last_name: Optional[str],
    ) -> Account:
        if not username or not username.strip():
            raise ValidationError("username is required", detail={"field": "username"})
        self.policy.validate(password)
        password_hash = self.hasher.hash(password)
        with self._transaction():
            try:
                account = self.store.create_account(
                    username,
                    email,
                    password_hash,
                    status=status,
                    first_name=first_name,
                    last_name=last_name,
                    created_by=context.actor_id,
                )
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            for slug in role_slugs:
                role = self.store.get_role_by_slug(slug)
                if role is None:
                    self.logger.warning("role_missing_on_account_create", role=slug)
                    continue
                self.store.assign_role(account.id, role.id, assigned_by=context.actor_id)
            if require_password_change:
                account.require_password_change = True
                account = self.store.save_account(account)
        self.logger.info(
            "account_created",
            account_id=account.id,
            status=account.status.value,
            email_hash=hash_identifier(account.email),
            actor_id=context.actor_id,
        )
        return account

    async def get_account(self, account_id: str) -> Account:
        account = await asyncio.to_thread(self.store.get_account, account_id)
        if account is None or account.is_deleted:
            raise NotFoundError("account not found")
        return account

    async def set_account_status(
        self, account_id: str, status: AccountStatus, context: OperationContext
    ) -> Account:
        return await asyncio.to_thread(self._set_account_status, account_id, status, context)

    def _set_account_status(
        self, account_id: str, status: AccountStatus, context: OperationContext
    ) -> Account:
        status = AccountStatus(status)
        revoked = 0
        with self._transaction():
            account = self.store.get_account(account_id, for_update=True)
            if account is None or account.is_deleted:
                raise NotFoundError("account not found")
            previous = account.status
            account.status = status
            account.updated_by = context.actor_id
            if status is AccountStatus.ACTIVE:
                account.failed_login_attempts = 0
                account.locked_until = None
            account = self.store.save_account(account)
            if status in (AccountStatus.BLOCKED, AccountStatus.INACTIVE):
                revoked = self.ledger.revoke_all(
                    account.id, reason=RevocationReason.ACCOUNT_STATUS, context=context
                )
        self.logger.info(
            "account_status_changed",
            account_id=account.id,
            previous_status=AccountStatus(previous).value,
            status=status.value,
            sessions_revoked=revoked,
            actor_id=context.actor_id,
        )
        return account

    async def soft_delete_account(self, account_id: str, context: OperationContext) -> bool:
        return await asyncio.to_thread(self._soft_delete_account, account_id, context)

    def _soft_delete_account(self, account_id: str, context: OperationContext) -> bool:
        with self._transaction():
            account = self.store.get_account(account_id, for_update=True)
            if account is None or account.is_deleted:
                return False
            self.store.soft_delete_account(account_id, deleted_by=context.actor_id)
            self.ledger.revoke_all(
                account_id, reason=RevocationReason.ACCOUNT_DELETED, context=context
            )
        self.logger.info("account_deleted", account_id=account_id, actor_id=context.actor_id)
        return True

    async def login_history(self, account_id: str, limit: int = 50) -> List[LoginAttempt]:
        limit = max(1, min(limit, 500))
        return await asyncio.to_thread(
            self.store.list_login_attempts, account_id=account_id, limit=limit
        )
