"""Token minting, verification and refresh rotation with reuse detection."""

import base64
import json

import pytest

from citizenauth.config import ConfigurationError
from citizenauth.service.context import OperationContext
from citizenauth.service.errors import (
    PasswordChangeRequired,
    RefreshInvalid,
    ReuseDetected,
    TokenExpired,
    TokenInvalid,
)
from citizenauth.service.permissions import PermissionResolver
from citizenauth.service.sessions import RevocationReason, SessionLedger
from citizenauth.service.tokens import TokenService
from citizenauth.storage.models import AccountStatus

CTX = OperationContext(ip_address="192.0.2.10", user_agent="pytest")


@pytest.fixture
def ledger(store, settings, clock):
    return SessionLedger(store, settings, clock=clock)


@pytest.fixture
def resolver(store, clock):
    return PermissionResolver(store, clock=clock)


@pytest.fixture
def tokens(store, ledger, resolver, settings, clock):
    return TokenService(store, ledger, resolver, settings, clock=clock)


@pytest.fixture
def account(store, make_account):
    account = make_account("ana")
    role = store.create_role("operador", "Operador")
    perm = store.create_permission("incidentes", "reportes", "ver")
    store.grant_permission(role.id, perm.id)
    store.assign_role(account.id, role.id)
    return account


def _payload(token):
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssueAndVerify:
    def test_round_trip_claims(self, tokens, resolver, account, clock):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)

        claims = tokens.verify_access(pair.access_token)

        assert claims.account_id == account.id
        assert claims.username == "ana"
        assert claims.email == "ana@example.com"
        assert claims.roles == ("operador",)
        assert claims.permissions == frozenset({"incidentes.reportes.ver"})
        assert (claims.expires_at - clock.now).total_seconds() == 2 * 3600
        assert (pair.refresh_expires_at - clock.now).days == 7

    def test_standard_claims_present(self, tokens, resolver, account):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        access = _payload(pair.access_token)
        refresh = _payload(pair.refresh_token)

        assert access["iss"] == "citizen-security-api"
        assert access["aud"] == "citizen-security-client"
        assert access["token_type"] == "access"
        assert refresh["token_type"] == "refresh"
        assert set(refresh) == {"iss", "aud", "account_id", "token_type", "jti", "iat", "exp"}
        assert access["jti"] != refresh["jti"]

    def test_refresh_is_recorded_in_ledger(self, tokens, resolver, account, store):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        record = store.get_session(_payload(pair.refresh_token)["jti"])
        assert record is not None
        assert record.ip_address == "192.0.2.10"
        assert record.expires_at == pair.refresh_expires_at

    def test_expired_access_token_is_expiry_specific(self, tokens, resolver, account, clock):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        clock.advance(hours=2, seconds=1)
        with pytest.raises(TokenExpired) as exc_info:
            tokens.verify_access(pair.access_token)
        assert exc_info.value.error_code == "token_expired"

    def test_tampered_payload_rejected(self, tokens, resolver, account):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        header, payload, sig = pair.access_token.split(".")
        claims = _payload(pair.access_token)
        claims["permissions"].append("usuarios.usuarios.ver")
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
        with pytest.raises(TokenInvalid):
            tokens.verify_access(f"{header}.{forged}.{sig}")

    def test_refresh_token_is_not_an_access_token(self, tokens, resolver, account):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        with pytest.raises(TokenInvalid):
            tokens.verify_access(pair.refresh_token)

    def test_none_algorithm_rejected(self, tokens, resolver, account):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        _, payload, _ = pair.access_token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        with pytest.raises(TokenInvalid):
            tokens.verify_access(f"{header}.{payload}.")

    @pytest.mark.parametrize(
        "garbage", ["", "abc", "a.b", "a.b.c.d", "eyJhbGciOiJIUzI1NiJ9.e30.é"]
    )
    def test_malformed_tokens(self, tokens, garbage):
        with pytest.raises(TokenInvalid):
            tokens.verify_access(garbage)

    def test_other_audience_rejected(self, store, ledger, resolver, settings, clock, account):
        foreign = TokenService(
            store,
            ledger,
            resolver,
            settings.model_copy(update={"jwt_audience": "other-client"}),
            clock=clock,
        )
        pair = foreign.issue(account, resolver.resolve_grants(account.id), CTX)
        service = TokenService(store, ledger, resolver, settings, clock=clock)
        with pytest.raises(TokenInvalid):
            service.verify_access(pair.access_token)

    def test_password_change_token(self, tokens, account, clock):
        token, expires_at = tokens.issue_password_change_token(account)
        assert (expires_at - clock.now).total_seconds() == 15 * 60
        assert tokens.verify_password_change_token(token) == account.id
        with pytest.raises(TokenInvalid):
            tokens.verify_access(token)


class TestSecrets:
    def test_missing_secret_is_fatal(self, store, ledger, resolver, settings):
        with pytest.raises(ConfigurationError):
            TokenService(
                store, ledger, resolver, settings.model_copy(update={"jwt_refresh_secret": None})
            )

    def test_identical_secrets_are_fatal(self, store, ledger, resolver, settings):
        same = settings.model_copy(update={"jwt_refresh_secret": settings.jwt_access_secret})
        with pytest.raises(ConfigurationError):
            TokenService(store, ledger, resolver, same)


class TestRotation:
    def test_rotation_issues_new_pair_in_same_family(self, tokens, resolver, account, store):
        first = tokens.issue(account, resolver.resolve_grants(account.id), CTX)

        rotated = tokens.rotate(first.refresh_token, CTX)

        old_jti = _payload(first.refresh_token)["jti"]
        new_jti = _payload(rotated.tokens.refresh_token)["jti"]
        old = store.get_session(old_jti)
        new = store.get_session(new_jti)
        assert old.revoked_reason == RevocationReason.ROTATED.value
        assert old.replaced_by == new_jti
        assert new.family_id == old.family_id
        assert not new.is_revoked
        assert rotated.account.id == account.id

    def test_rotation_picks_up_permission_changes(self, tokens, resolver, account, store):
        first = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        role = store.create_role("supervisor", "Supervisor")
        perm = store.create_permission("incidentes", "reportes", "cerrar")
        store.grant_permission(role.id, perm.id)
        store.assign_role(account.id, role.id)

        rotated = tokens.rotate(first.refresh_token, CTX)

        assert "incidentes.reportes.cerrar" in tokens.verify_access(
            rotated.tokens.access_token
        ).permissions

    def test_second_use_is_reuse_and_revokes_family(self, tokens, resolver, account, store):
        first = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        second = tokens.rotate(first.refresh_token, CTX).tokens

        with pytest.raises(ReuseDetected) as exc_info:
            tokens.rotate(first.refresh_token, CTX)
        assert isinstance(exc_info.value, RefreshInvalid)
        assert exc_info.value.account_id == account.id

        # The legitimate successor is dead too
        successor = store.get_session(_payload(second.refresh_token)["jti"])
        assert successor.revoked_reason == RevocationReason.REUSE_DETECTED.value
        with pytest.raises(RefreshInvalid):
            tokens.rotate(second.refresh_token, CTX)

    def test_reuse_does_not_touch_other_families(self, tokens, resolver, account, store):
        grants = resolver.resolve_grants(account.id)
        stolen = tokens.issue(account, grants, CTX)
        other_device = tokens.issue(account, grants, CTX)
        tokens.rotate(stolen.refresh_token, CTX)
        with pytest.raises(ReuseDetected):
            tokens.rotate(stolen.refresh_token, CTX)
        assert tokens.rotate(other_device.refresh_token, CTX).tokens.access_token

    def test_logged_out_token_is_plain_invalid(self, tokens, resolver, account, ledger):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        ledger.revoke(_payload(pair.refresh_token)["jti"], reason=RevocationReason.LOGOUT)
        with pytest.raises(RefreshInvalid) as exc_info:
            tokens.rotate(pair.refresh_token, CTX)
        assert not isinstance(exc_info.value, ReuseDetected)

    def test_revoke_all_invalidates_refresh(self, tokens, resolver, account, ledger):
        grants = resolver.resolve_grants(account.id)
        pairs = [tokens.issue(account, grants, CTX) for _ in range(3)]
        assert ledger.revoke_all(account.id) == 3
        for pair in pairs:
            with pytest.raises(RefreshInvalid):
                tokens.rotate(pair.refresh_token, CTX)

    def test_expired_refresh_rejected(self, tokens, resolver, account, clock):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        clock.advance(days=7, seconds=1)
        with pytest.raises(RefreshInvalid):
            tokens.rotate(pair.refresh_token, CTX)

    def test_access_token_cannot_refresh(self, tokens, resolver, account):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        with pytest.raises(RefreshInvalid):
            tokens.rotate(pair.access_token, CTX)

    def test_non_ascii_signature_is_invalid(self, tokens, resolver, account):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        head, body, _ = pair.refresh_token.split(".")
        with pytest.raises(RefreshInvalid):
            tokens.rotate(f"{head}.{body}.é", CTX)
        with pytest.raises(TokenInvalid):
            tokens.verify_password_change_token("eyJhbGciOiJIUzI1NiJ9.e30.é")

    def test_blocked_account_cannot_refresh(self, tokens, resolver, account, store):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        stored = store.get_account(account.id)
        stored.status = AccountStatus.BLOCKED
        store.save_account(stored)
        with pytest.raises(RefreshInvalid):
            tokens.rotate(pair.refresh_token, CTX)

    def test_deleted_account_cannot_refresh(self, tokens, resolver, account, store):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        store.soft_delete_account(account.id, deleted_by=None)
        with pytest.raises(RefreshInvalid):
            tokens.rotate(pair.refresh_token, CTX)

    def test_forced_password_change_blocks_refresh(self, tokens, resolver, account, store):
        pair = tokens.issue(account, resolver.resolve_grants(account.id), CTX)
        stored = store.get_account(account.id)
        stored.require_password_change = True
        store.save_account(stored)
        with pytest.raises(PasswordChangeRequired) as exc_info:
            tokens.rotate(pair.refresh_token, CTX)
        assert exc_info.value.status_code == 403
        # Nothing was rotated
        assert not store.get_session(_payload(pair.refresh_token)["jti"]).is_revoked
