from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class OperationContext:
    """Who triggered an operation and from where.

    ``actor_id`` is the account acting (the account itself for self-service
    calls, an administrator otherwise) and ``None`` for anonymous calls such
    as login or a reset request.
    """

    actor_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def acting_as(self, actor_id: Optional[str]) -> "OperationContext":
        return OperationContext(
            actor_id=actor_id, ip_address=self.ip_address, user_agent=self.user_agent
        )


ANONYMOUS = OperationContext()
