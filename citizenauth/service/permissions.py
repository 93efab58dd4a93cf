from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, FrozenSet, Iterable, Protocol, Tuple

from citizenauth.logging import get_logger
from citizenauth.service.errors import ForbiddenError
from citizenauth.storage.base import AuthStore
from citizenauth.storage.models import utcnow

logger = get_logger(__name__)

SUPER_ADMIN_ROLE = "super_admin"


@dataclass(frozen=True)
class Grants:
    roles: Tuple[str, ...]
    permissions: FrozenSet[str]


class PermissionResolver:
    """Computes an account's effective permissions from its active roles.

    Nothing is cached: every call reads the current assignments so role
    changes apply to the very next login or refresh.
    """

    def __init__(self, store: AuthStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def resolve(self, account_id: str) -> FrozenSet[str]:
        return self.resolve_grants(account_id).permissions

    def resolve_grants(self, account_id: str) -> Grants:
        roles = self.store.list_effective_roles(account_id, self._clock())
        permissions = self.store.list_role_permissions(role.id for role in roles)
        return Grants(
            roles=tuple(role.slug for role in roles),
            permissions=frozenset(perm.slug for perm in permissions),
        )


class GrantHolder(Protocol):
    roles: Tuple[str, ...]
    permissions: FrozenSet[str]


def is_super_admin(subject: GrantHolder) -> bool:
    return SUPER_ADMIN_ROLE in subject.roles


def has_role(subject: GrantHolder, *slugs: str) -> bool:
    """True when the subject holds any of the role ``slugs``."""
    if is_super_admin(subject):
        return True
    return any(slug in subject.roles for slug in slugs)



def has_permission(subject: GrantHolder, slug: str) -> bool:
    return is_super_admin(subject) or slug in subject.permissions


def has_any_permission(subject: GrantHolder, slugs: Iterable[str]) -> bool:
    if is_super_admin(subject):
        return True
    return any(slug in subject.permissions for slug in slugs)


def has_all_permissions(subject: GrantHolder, slugs: Iterable[str]) -> bool:
    if is_super_admin(subject):
        return True
    return all(slug in subject.permissions for slug in slugs)


def has_module_access(subject: GrantHolder, module: str) -> bool:
    """True when any permission belongs to ``module`` (slug prefix ``module.``)."""
    if is_super_admin(subject):
        return True
    prefix = f"{module}."
    return any(slug.startswith(prefix) for slug in subject.permissions)


def require_permissions(
    subject: GrantHolder, slugs: Iterable[str], *, require_all: bool = False
) -> None:
    wanted = list(slugs)
    allowed = (
        has_all_permissions(subject, wanted)
        if require_all
        else has_any_permission(subject, wanted)
    )
    if not allowed:
        logger.warning(
            "permission_denied",
            required=wanted,
            require_all=require_all,
            roles=list(subject.roles),
        )
        raise ForbiddenError(
            "insufficient permissions", detail={"required": wanted, "require_all": require_all}
        )


def require_roles(subject: GrantHolder, *slugs: str) -> None:
    if not has_role(subject, *slugs):
        logger.warning("role_denied", required=list(slugs), roles=list(subject.roles))
        raise ForbiddenError("insufficient role", detail={"required_roles": list(slugs)})
