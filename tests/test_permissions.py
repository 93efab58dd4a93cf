"""Permission resolution from role assignments and the authorization checks."""

from datetime import timedelta

import pytest

from citizenauth.service.errors import ForbiddenError
from citizenauth.service.permissions import (
    Grants,
    PermissionResolver,
    has_all_permissions,
    has_any_permission,
    has_module_access,
    has_permission,
    has_role,
    require_permissions,
    require_roles,
)


@pytest.fixture
def resolver(store, clock):
    return PermissionResolver(store, clock=clock)


@pytest.fixture
def catalog(store):
    """Two roles with overlapping permissions."""
    operador = store.create_role("operador", "Operador", hierarchy_level=10)
    supervisor = store.create_role("supervisor", "Supervisor", hierarchy_level=20)
    ver = store.create_permission("incidentes", "reportes", "ver")
    crear = store.create_permission("incidentes", "reportes", "crear")
    cerrar = store.create_permission("incidentes", "reportes", "cerrar")
    store.grant_permission(operador.id, ver.id)
    store.grant_permission(operador.id, crear.id)
    store.grant_permission(supervisor.id, ver.id)
    store.grant_permission(supervisor.id, cerrar.id)
    return {"operador": operador, "supervisor": supervisor, "cerrar": cerrar}


class TestResolve:
    def test_union_of_active_roles(self, resolver, store, catalog, make_account):
        account = make_account()
        store.assign_role(account.id, catalog["operador"].id)
        store.assign_role(account.id, catalog["supervisor"].id)

        assert resolver.resolve(account.id) == frozenset(
            {"incidentes.reportes.ver", "incidentes.reportes.crear", "incidentes.reportes.cerrar"}
        )

    def test_assignment_order_does_not_matter(self, resolver, store, catalog, make_account):
        first = make_account()
        second = make_account()
        store.assign_role(first.id, catalog["operador"].id)
        store.assign_role(first.id, catalog["supervisor"].id)
        store.assign_role(second.id, catalog["supervisor"].id)
        store.assign_role(second.id, catalog["operador"].id)

        assert resolver.resolve(first.id) == resolver.resolve(second.id)

    def test_no_roles_means_no_permissions(self, resolver, make_account):
        assert resolver.resolve(make_account().id) == frozenset()

    def test_expired_assignment_is_ignored(self, resolver, store, catalog, make_account, clock):
        account = make_account()
        store.assign_role(
            account.id, catalog["supervisor"].id, expires_at=clock.now + timedelta(hours=1)
        )
        assert "incidentes.reportes.cerrar" in resolver.resolve(account.id)

        clock.advance(hours=2)
        assert resolver.resolve(account.id) == frozenset()

    def test_inactive_assignment_is_ignored(self, resolver, store, catalog, make_account):
        account = make_account()
        assignment = store.assign_role(account.id, catalog["operador"].id)
        store.set_assignment_active(assignment.id, False)
        assert resolver.resolve(account.id) == frozenset()

    def test_inactive_role_is_ignored(self, resolver, store, catalog, make_account):
        account = make_account()
        store.assign_role(account.id, catalog["operador"].id)
        store.set_role_active(catalog["operador"].id, False)
        assert resolver.resolve(account.id) == frozenset()

    def test_role_change_applies_immediately(self, resolver, store, catalog, make_account):
        account = make_account()
        store.assign_role(account.id, catalog["operador"].id)
        before = resolver.resolve(account.id)
        store.assign_role(account.id, catalog["supervisor"].id)
        assert resolver.resolve(account.id) - before == {"incidentes.reportes.cerrar"}

    def test_grants_list_roles_by_hierarchy(self, resolver, store, catalog, make_account):
        account = make_account()
        store.assign_role(account.id, catalog["operador"].id)
        store.assign_role(account.id, catalog["supervisor"].id)
        assert resolver.resolve_grants(account.id).roles == ("supervisor", "operador")


class TestChecks:
    def test_has_permission(self):
        subject = Grants(roles=("operador",), permissions=frozenset({"incidentes.reportes.ver"}))
        assert has_permission(subject, "incidentes.reportes.ver")
        assert not has_permission(subject, "incidentes.reportes.cerrar")

    def test_any_and_all(self):
        subject = Grants(
            roles=("operador",),
            permissions=frozenset({"incidentes.reportes.ver", "incidentes.reportes.crear"}),
        )
        assert has_any_permission(subject, ["usuarios.usuarios.ver", "incidentes.reportes.ver"])
        assert not has_all_permissions(
            subject, ["incidentes.reportes.ver", "incidentes.reportes.cerrar"]
        )

    def test_module_access(self):
        subject = Grants(roles=(), permissions=frozenset({"incidentes.reportes.ver"}))
        assert has_module_access(subject, "incidentes")
        assert not has_module_access(subject, "usuarios")
        assert not has_module_access(subject, "incid")

    def test_super_admin_bypasses_checks(self):
        subject = Grants(roles=("super_admin",), permissions=frozenset())
        assert has_permission(subject, "anything.at.all")
        assert has_all_permissions(subject, ["a.b.c", "d.e.f"])
        assert has_module_access(subject, "usuarios")

    def test_require_permissions_raises_forbidden(self):
        subject = Grants(roles=("operador",), permissions=frozenset({"incidentes.reportes.ver"}))
        require_permissions(subject, ["incidentes.reportes.ver"])
        with pytest.raises(ForbiddenError) as exc_info:
            require_permissions(
                subject, ["incidentes.reportes.ver", "incidentes.reportes.cerrar"], require_all=True
            )
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail["require_all"] is True

    def test_has_role(self):
        subject = Grants(roles=("operador", "supervisor"), permissions=frozenset())
        assert has_role(subject, "supervisor")
        assert has_role(subject, "auditor", "operador")
        assert not has_role(subject, "auditor")
        assert not has_role(subject)
        assert has_role(Grants(roles=("super_admin",), permissions=frozenset()), "auditor")

    def test_require_roles_raises_forbidden(self):
        subject = Grants(roles=("operador",), permissions=frozenset())
        require_roles(subject, "operador", "supervisor")
        with pytest.raises(ForbiddenError) as exc_info:
            require_roles(subject, "supervisor")
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == {"required_roles": ["supervisor"]}
