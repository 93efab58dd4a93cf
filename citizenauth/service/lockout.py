from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from citizenauth.config import Settings
from citizenauth.logging import get_logger, hash_identifier
from citizenauth.service.context import ANONYMOUS, OperationContext
from citizenauth.service.errors import AccountLocked, AccountNotActive, InvalidCredentials
from citizenauth.service.passwords import CredentialHasher
from citizenauth.storage.base import AuthStore
from citizenauth.storage.models import (
    Account,
    AccountStatus,
    LoginAttempt,
    new_id,
    normalize_identifier,
    utcnow,
)

logger = get_logger(__name__)


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_NOT_ACTIVE = "account_not_active"


@dataclass(frozen=True)
class LoginOutcome:
    status: OutcomeStatus
    account: Optional[Account] = None
    attempts_remaining: Optional[int] = None
    lock_remaining: Optional[timedelta] = None
    account_status: Optional[AccountStatus] = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @property
    def retry_after_seconds(self) -> int:
        if self.lock_remaining is None:
            return 0
        return max(1, math.ceil(self.lock_remaining.total_seconds()))

    def raise_for_status(self) -> Account:
        """Return the authenticated account or raise the matching error."""

        if self.status is OutcomeStatus.SUCCESS and self.account is not None:
            return self.account
        if self.status is OutcomeStatus.ACCOUNT_LOCKED:
            raise AccountLocked(self.retry_after_seconds)
        if self.status is OutcomeStatus.ACCOUNT_NOT_ACTIVE:
            status = self.account_status.value if self.account_status else "UNKNOWN"
            raise AccountNotActive(status)
        raise InvalidCredentials(self.attempts_remaining)


class LockoutManager:
    """Counts failed logins per account and bars the account once the limit is hit.

    The read, the counter update and the audit row share one transaction with
    the account row locked, so concurrent attempts cannot push the counter past
    ``max_login_attempts``.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self.settings.max_login_attempts

    @property
    def lock_duration(self) -> timedelta:
        return self.settings.lock_timedelta

    def _now(self) -> datetime:
        return self._clock()

    def _audit(
        self,
        credential: str,
        context: OperationContext,
        *,
        succeeded: bool,
        account_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        self.store.record_login_attempt(
            LoginAttempt(
                id=new_id(),
                credential=credential,
                succeeded=succeeded,
                account_id=account_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                failure_reason=reason,
                created_at=self._now(),
            )
        )

    def attempt(
        self, credential: str, password: str, context: OperationContext = ANONYMOUS
    ) -> LoginOutcome:
        credential = normalize_identifier(credential)
        with self.store.transaction(timeout=self.settings.operation_timeout_seconds):
            outcome = self._evaluate(credential, password, context)
        log_kwargs = {
            "credential_hash": hash_identifier(credential),
            "outcome": outcome.status.value,
            "ip_address": context.ip_address,
        }
        if outcome.account is not None:
            log_kwargs["account_id"] = outcome.account.id
        if outcome.ok:
            logger.info("login_succeeded", **log_kwargs)
        elif outcome.status is OutcomeStatus.INVALID_CREDENTIALS:
            logger.info("login_failed", attempts_remaining=outcome.attempts_remaining, **log_kwargs)
        else:
            logger.warning("login_rejected", **log_kwargs)
        return outcome

    def _evaluate(
        self, credential: str, password: str, context: OperationContext
    ) -> LoginOutcome:
        now = self._now()
        account = self.store.find_account(credential, for_update=True)
        if account is None:
            self.hasher.dummy_verify(password)
            self._audit(credential, context, succeeded=False, reason="unknown_account")
            return LoginOutcome(OutcomeStatus.INVALID_CREDENTIALS)

        if account.locked_until is not None and account.locked_until <= now:
            # Lock window elapsed: start a fresh counting window
            account.locked_until = None
            account.failed_login_attempts = 0
            account = self.store.save_account(account)

        remaining = account.lock_remaining(now)
        if remaining is not None:
            self._audit(
                credential, context, succeeded=False, account_id=account.id, reason="account_locked"
            )
            return LoginOutcome(
                OutcomeStatus.ACCOUNT_LOCKED,
                account=account,
                attempts_remaining=0,
                lock_remaining=remaining,
            )

        if account.status != AccountStatus.ACTIVE:
            self._audit(
                credential,
                context,
                succeeded=False,
                account_id=account.id,
                reason="account_not_active",
            )
            return LoginOutcome(
                OutcomeStatus.ACCOUNT_NOT_ACTIVE,
                account=account,
                account_status=AccountStatus(account.status),
            )

        if not self.hasher.verify(account.password_hash, password):
            return self._register_failure(account, credential, context, now)

        account.failed_login_attempts = 0
        account.locked_until = None
        account.last_login_at = now
        account.last_login_ip = context.ip_address
        if self.hasher.needs_rehash(account.password_hash):
            account.password_hash = self.hasher.hash(password)
            logger.info("password_rehashed", account_id=account.id)
        account = self.store.save_account(account)
        self._audit(credential, context, succeeded=True, account_id=account.id)
        return LoginOutcome(OutcomeStatus.SUCCESS, account=account)

    def _register_failure(
        self, account: Account, credential: str, context: OperationContext, now: datetime
    ) -> LoginOutcome:
        account.failed_login_attempts = min(account.failed_login_attempts + 1, self.max_attempts)
        locked = account.failed_login_attempts >= self.max_attempts
        if locked:
            account.locked_until = now + self.lock_duration
        account = self.store.save_account(account)
        self._audit(
            credential, context, succeeded=False, account_id=account.id, reason="invalid_password"
        )
        if locked:
            logger.warning(
                "account_locked",
                account_id=account.id,
                locked_until=account.locked_until.isoformat(),
                failed_attempts=account.failed_login_attempts,
            )
            return LoginOutcome(
                OutcomeStatus.ACCOUNT_LOCKED,
                account=account,
                attempts_remaining=0,
                lock_remaining=self.lock_duration,
            )
        return LoginOutcome(
            OutcomeStatus.INVALID_CREDENTIALS,
            account=account,
            attempts_remaining=self.max_attempts - account.failed_login_attempts,
        )
