from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from citizenauth.config import Settings
from citizenauth.logging import get_logger
from citizenauth.service.context import ANONYMOUS, OperationContext
from citizenauth.storage.base import AuthStore
from citizenauth.storage.models import SessionRecord, new_id, utcnow

logger = get_logger(__name__)


class RevocationReason(str, Enum):
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    ROTATED = "rotated"
    REUSE_DETECTED = "reuse_detected"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    ADMIN_PASSWORD_RESET = "admin_password_reset"
    ACCOUNT_STATUS = "account_status"
    ACCOUNT_DELETED = "account_deleted"


class SessionLedger:
    """Bookkeeping of issued refresh tokens and their revocation.

    One :class:`SessionRecord` exists per refresh token ever handed out. Rows
    are only ever revoked, never reactivated, so every revoke call is
    idempotent.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _transaction(self):
        return self.store.transaction(timeout=self.settings.operation_timeout_seconds)

    def record(
        self,
        account_id: str,
        token_id: str,
        *,
        expires_at: datetime,
        family_id: Optional[str] = None,
        context: OperationContext = ANONYMOUS,
    ) -> SessionRecord:
        now = self._now()
        record = SessionRecord(
            id=new_id(),
            account_id=account_id,
            token_id=token_id,
            family_id=family_id or new_id(),
            issued_at=now,
            expires_at=expires_at,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        with self._transaction():
            self.store.insert_session(record)
        return record

    def revoke(
        self,
        token_id: str,
        *,
        reason: RevocationReason = RevocationReason.LOGOUT,
        context: OperationContext = ANONYMOUS,
        replaced_by: Optional[str] = None,
    ) -> bool:
        """Revoke one refresh token; returns False when it was already revoked or unknown."""

        with self._transaction():
            changed = self.store.revoke_session(
                token_id,
                now=self._now(),
                reason=reason.value,
                revoked_by=context.actor_id,
                replaced_by=replaced_by,
            )
        if changed and reason is not RevocationReason.ROTATED:
            logger.info("session_revoked", token_id=token_id, reason=reason.value)
        return changed

    def revoke_all(
        self,
        account_id: str,
        *,
        reason: RevocationReason = RevocationReason.LOGOUT_ALL,
        context: OperationContext = ANONYMOUS,
    ) -> int:
        with self._transaction():
            count = self.store.revoke_account_sessions(
                account_id,
                now=self._now(),
                reason=reason.value,
                revoked_by=context.actor_id,
            )
        logger.info(
            "sessions_revoked_for_account",
            account_id=account_id,
            reason=reason.value,
            revoked_count=count,
            actor_id=context.actor_id,
        )
        return count

    def revoke_family(
        self, family_id: str, *, reason: RevocationReason = RevocationReason.REUSE_DETECTED
    ) -> int:
        with self._transaction():
            return self.store.revoke_session_family(
                family_id, now=self._now(), reason=reason.value
            )

    def is_revoked(self, token_id: str) -> bool:
        """Unknown token ids count as revoked."""

        record = self.store.get_session(token_id)
        return record is None or record.is_revoked

    def list_active(self, account_id: str) -> List[SessionRecord]:
        return self.store.list_active_sessions(account_id, self._now())
