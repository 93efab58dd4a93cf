"""Refresh session bookkeeping and revocation."""

from datetime import timedelta

import pytest

from citizenauth.service.context import OperationContext
from citizenauth.service.sessions import RevocationReason, SessionLedger


@pytest.fixture
def ledger(store, settings, clock):
    return SessionLedger(store, settings, clock=clock)


@pytest.fixture
def account(make_account):
    return make_account("ana")


class TestSessionLedger:
    def test_record_and_lookup(self, ledger, account, clock):
        ctx = OperationContext(ip_address="10.1.1.1", user_agent="movil")
        record = ledger.record(
            account.id, "jti-1", expires_at=clock.now + timedelta(days=7), context=ctx
        )

        assert not ledger.is_revoked("jti-1")
        assert record.family_id
        assert record.ip_address == "10.1.1.1"
        assert [r.token_id for r in ledger.list_active(account.id)] == ["jti-1"]

    def test_unknown_token_counts_as_revoked(self, ledger):
        assert ledger.is_revoked("never-issued")

    def test_revoke_is_monotonic(self, ledger, account, clock, store):
        ledger.record(account.id, "jti-1", expires_at=clock.now + timedelta(days=7))
        first_revocation = clock.now
        assert ledger.revoke("jti-1", reason=RevocationReason.LOGOUT)

        clock.advance(minutes=5)
        assert not ledger.revoke("jti-1", reason=RevocationReason.PASSWORD_CHANGE)

        record = store.get_session("jti-1")
        assert record.revoked_at == first_revocation
        assert record.revoked_reason == "logout"

    def test_revoke_unknown_is_noop(self, ledger):
        assert ledger.revoke("missing") is False

    def test_revoke_all_counts_live_sessions(self, ledger, account, clock, make_account):
        other = make_account("beto")
        for jti in ("a", "b", "c"):
            ledger.record(account.id, jti, expires_at=clock.now + timedelta(days=7))
        ledger.record(other.id, "d", expires_at=clock.now + timedelta(days=7))
        ledger.revoke("a")

        assert ledger.revoke_all(account.id, reason=RevocationReason.LOGOUT_ALL) == 2
        assert all(ledger.is_revoked(jti) for jti in ("a", "b", "c"))
        assert not ledger.is_revoked("d")
        assert ledger.revoke_all(account.id) == 0

    def test_revoke_records_actor(self, ledger, account, clock, store):
        ledger.record(account.id, "jti-1", expires_at=clock.now + timedelta(days=7))
        ledger.revoke_all(
            account.id,
            reason=RevocationReason.ACCOUNT_STATUS,
            context=OperationContext(actor_id="admin-1"),
        )
        record = store.get_session("jti-1")
        assert record.revoked_by == "admin-1"
        assert record.revoked_reason == "account_status"

    def test_revoke_family(self, ledger, account, clock):
        ledger.record(account.id, "a", expires_at=clock.now + timedelta(days=7), family_id="fam-1")
        ledger.record(account.id, "b", expires_at=clock.now + timedelta(days=7), family_id="fam-1")
        ledger.record(account.id, "c", expires_at=clock.now + timedelta(days=7), family_id="fam-2")

        assert ledger.revoke_family("fam-1") == 2
        assert not ledger.is_revoked("c")

    def test_expired_sessions_are_not_listed(self, ledger, account, clock):
        ledger.record(account.id, "short", expires_at=clock.now + timedelta(minutes=1))
        ledger.record(account.id, "long", expires_at=clock.now + timedelta(days=7))
        clock.advance(minutes=2)
        assert [r.token_id for r in ledger.list_active(account.id)] == ["long"]
