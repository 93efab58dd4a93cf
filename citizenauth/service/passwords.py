from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from citizenauth.config import Settings
from citizenauth.logging import get_logger, hash_identifier
from citizenauth.service.context import ANONYMOUS, OperationContext
from citizenauth.service.errors import (
    InvalidCredentials,
    NotFoundError,
    PasswordPolicyViolation,
    PasswordResetInvalid,
)
from citizenauth.service.sessions import RevocationReason, SessionLedger
from citizenauth.storage.base import AuthStore
from citizenauth.storage.models import Account, PasswordResetToken, new_id, utcnow

logger = get_logger(__name__)

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{}|;:,.<>?"


class CredentialHasher:
    """argon2id hashing with constant-time verification."""

    algorithm = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the account does not exist so timing matches
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def dummy_verify(self, password: str) -> None:
        self.verify(self._dummy_hash, password)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class PasswordPolicy:
    def __init__(
        self,
        *,
        min_length: int = 8,
        max_length: int = 128,
        require_complexity: bool = True,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self.require_complexity = require_complexity

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.min_password_length,
            max_length=settings.max_password_length,
            require_complexity=settings.password_require_complexity,
        )

    def validate(self, password: str) -> None:
        if len(password) < self.min_length:
            raise PasswordPolicyViolation(
                "too_short", f"password must be at least {self.min_length} characters"
            )
        if len(password) > self.max_length:
            raise PasswordPolicyViolation(
                "too_long", f"password must be at most {self.max_length} characters"
            )
        if not self.require_complexity:
            return
        missing = []
        if not any(c.isupper() for c in password):
            missing.append("uppercase")
        if not any(c.islower() for c in password):
            missing.append("lowercase")
        if not any(c.isdigit() for c in password):
            missing.append("digit")
        if not any(c in SPECIAL_CHARACTERS for c in password):
            missing.append("special")
        if missing:
            raise PasswordPolicyViolation(
                "complexity",
                "password must contain: {}".format(", ".join(missing)),
            )


class ResetDelivery(Protocol):
    def send_password_reset(self, email: str, token: str) -> None: ...


class LoggingResetDelivery:
    """Placeholder delivery used until a mail gateway is wired in."""

    def send_password_reset(self, email: str, token: str) -> None:
        logger.info("password_reset_delivery_skipped", email_hash=hash_identifier(email))


@dataclass(frozen=True)
class PasswordResult:
    account_id: str
    password_changed_at: datetime
    require_password_change: bool
    sessions_revoked: int


class PasswordManager:
    """Change, administrative reset and self-service reset of passwords.

    Every operation locks the account row, enforces the policy and the reuse
    history, then revokes all refresh sessions of the account in the same
    transaction.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        ledger: SessionLedger,
        settings: Settings,
        *,
        delivery: Optional[ResetDelivery] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.ledger = ledger
        self.settings = settings
        self.policy = PasswordPolicy.from_settings(settings)
        self.delivery: ResetDelivery = delivery or LoggingResetDelivery()
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _transaction(self):
        return self.store.transaction(timeout=self.settings.operation_timeout_seconds)

    def _load_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id, for_update=True)
        if account is None or account.is_deleted:
            raise NotFoundError("account not found")
        return account

    def _ensure_not_reused(self, account: Account, new_password: str) -> None:
        if self.hasher.verify(account.password_hash, new_password):
            raise PasswordPolicyViolation(
                "reused", "password matches one of the recently used passwords"
            )
        history = self.store.list_password_history(
            account.id, self.settings.password_history_size
        )
        for entry in history:
            if self.hasher.verify(entry.password_hash, new_password):
                raise PasswordPolicyViolation(
                    "reused", "password matches one of the recently used passwords"
                )

    def _store_new_password(
        self,
        account: Account,
        new_password: str,
        *,
        require_change: bool,
        actor_id: Optional[str],
    ) -> Account:
        now = self._now()
        self.store.add_password_history(
            account.id, account.password_hash, keep=self.settings.password_history_size
        )
        account.password_hash = self.hasher.hash(new_password)
        account.password_changed_at = now
        account.require_password_change = require_change
        account.updated_by = actor_id
        return account

    def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        context: OperationContext = ANONYMOUS,
    ) -> PasswordResult:
        with self._transaction():
            account = self._load_account(account_id)
            if not self.hasher.verify(account.password_hash, current_password):
                logger.info("password_change_rejected", account_id=account_id, reason="bad_current")
                raise InvalidCredentials()
            if new_password == current_password:
                raise PasswordPolicyViolation(
                    "same_as_current", "new password must differ from the current password"
                )
            self.policy.validate(new_password)
            self._ensure_not_reused(account, new_password)
            account = self._store_new_password(
                account,
                new_password,
                require_change=False,
                actor_id=context.actor_id or account.id,
            )
            self.store.save_account(account)
            revoked = self.ledger.revoke_all(
                account.id,
                reason=RevocationReason.PASSWORD_CHANGE,
                context=context,
            )
        logger.info("password_changed", account_id=account.id, sessions_revoked=revoked)
        return PasswordResult(
            account_id=account.id,
            password_changed_at=account.password_changed_at,
            require_password_change=False,
            sessions_revoked=revoked,
        )

    def reset_password(
        self,
        account_id: str,
        new_password: str,
        context: OperationContext = ANONYMOUS,
    ) -> PasswordResult:
        """Administrative reset: no current password, forces a change at next login."""

        with self._transaction():
            account = self._load_account(account_id)
            self.policy.validate(new_password)
            self._ensure_not_reused(account, new_password)
            account = self._store_new_password(
                account, new_password, require_change=True, actor_id=context.actor_id
            )
            account.failed_login_attempts = 0
            account.locked_until = None
            self.store.save_account(account)
            self.store.invalidate_password_resets(account.id, self._now())
            revoked = self.ledger.revoke_all(
                account.id,
                reason=RevocationReason.ADMIN_PASSWORD_RESET,
                context=context,
            )
        logger.info(
            "password_reset_by_admin",
            account_id=account.id,
            actor_id=context.actor_id,
            sessions_revoked=revoked,
        )
        return PasswordResult(
            account_id=account.id,
            password_changed_at=account.password_changed_at,
            require_password_change=True,
            sessions_revoked=revoked,
        )

    def request_reset(self, email: str, context: OperationContext = ANONYMOUS) -> str:
        """Issue a single-use reset token for ``email``.

        The return value is token-shaped whether or not the email belongs to an
        account; only real tokens are stored (hashed) and delivered.
        """

        token = secrets.token_urlsafe(32)
        email_hash = hash_identifier(email)
        with self._transaction():
            account = self.store.get_account_by_email(email, for_update=True)
            if account is not None:
                now = self._now()
                self.store.invalidate_password_resets(account.id, now)
                self.store.create_password_reset(
                    PasswordResetToken(
                        id=new_id(),
                        account_id=account.id,
                        token_hash=hash_reset_token(token),
                        expires_at=now + self.settings.password_reset_timedelta,
                        ip_address=context.ip_address,
                        created_at=now,
                    )
                )
        if account is None:
            logger.info("password_reset_requested", email_hash=email_hash, known=False)
            return token
        logger.info("password_reset_requested", email_hash=email_hash, known=True)
        self.delivery.send_password_reset(account.email, token)
        return token

    def confirm_reset(
        self,
        token: str,
        new_password: str,
        context: OperationContext = ANONYMOUS,
    ) -> PasswordResult:
        with self._transaction():
            now = self._now()
            reset = self.store.get_password_reset(hash_reset_token(token), for_update=True)
            if reset is None or not reset.is_usable(now):
                logger.warning("password_reset_invalid_token")
                raise PasswordResetInvalid()
            account = self.store.get_account(reset.account_id, for_update=True)
            if account is None or account.is_deleted:
                raise PasswordResetInvalid()
            self.policy.validate(new_password)
            self._ensure_not_reused(account, new_password)
            account = self._store_new_password(
                account,
                new_password,
                require_change=False,
                actor_id=context.actor_id or account.id,
            )
            account.failed_login_attempts = 0
            account.locked_until = None
            self.store.save_account(account)
            self.store.mark_password_reset_used(reset.id, now)
            self.store.invalidate_password_resets(account.id, now)
            revoked = self.ledger.revoke_all(
                account.id,
                reason=RevocationReason.PASSWORD_RESET,
                context=context.acting_as(context.actor_id or account.id),
            )
        logger.info("password_reset_completed", account_id=account.id, sessions_revoked=revoked)
        return PasswordResult(
            account_id=account.id,
            password_changed_at=account.password_changed_at,
            require_password_change=False,
            sessions_revoked=revoked,
        )
