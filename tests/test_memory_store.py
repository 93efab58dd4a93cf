import threading
import time

import pytest

from citizenauth.storage.errors import ConstraintViolation, TransactionTimeout
from citizenauth.storage.memory import MemoryStore
from citizenauth.storage.models import AccountStatus


def _account(store, username="ana"):
    return store.create_account(username, f"{username}@example.com", "hash")


def test_transaction_rolls_back_on_error():
    store = MemoryStore()
    account = _account(store)

    with pytest.raises(RuntimeError):
        with store.transaction():
            stored = store.get_account(account.id, for_update=True)
            stored.failed_login_attempts = 3
            store.save_account(stored)
            _account(store, "beto")
            raise RuntimeError("boom")

    assert store.get_account(account.id).failed_login_attempts == 0
    assert store.find_account("beto") is None


def test_timeout_rolls_back():
    store = MemoryStore()
    account = _account(store)

    with pytest.raises(TransactionTimeout):
        with store.transaction(timeout=0.01):
            stored = store.get_account(account.id, for_update=True)
            stored.status = AccountStatus.BLOCKED
            store.save_account(stored)
            time.sleep(0.05)

    assert store.get_account(account.id).status is AccountStatus.PENDING


def test_nested_transaction_joins_outer():
    store = MemoryStore()
    with pytest.raises(ValueError):
        with store.transaction():
            with store.transaction():
                _account(store)
            raise ValueError("outer failure")
    assert store.find_account("ana") is None


def test_returned_objects_are_copies():
    store = MemoryStore()
    account = _account(store)
    account.failed_login_attempts = 4
    assert store.get_account(account.id).failed_login_attempts == 0


def test_duplicate_username_or_email_rejected():
    store = MemoryStore()
    _account(store)
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_account("ANA", "other@example.com", "hash")
    assert exc_info.value.detail == {"field": "username"}
    with pytest.raises(ConstraintViolation):
        store.create_account("otra", "Ana@Example.com", "hash")


def test_find_account_skips_deleted():
    store = MemoryStore()
    account = _account(store)
    assert store.find_account("ANA@example.com").id == account.id
    assert store.soft_delete_account(account.id, deleted_by=None)
    assert store.find_account("ana") is None
    assert store.get_account(account.id).is_deleted


def test_transactions_are_serialized():
    store = MemoryStore()
    account = _account(store)
    seen = []

    def bump():
        with store.transaction():
            stored = store.get_account(account.id, for_update=True)
            value = stored.failed_login_attempts
            time.sleep(0.005)
            stored.failed_login_attempts = value + 1
            store.save_account(stored)
            seen.append(value)

    threads = [threading.Thread(target=bump) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get_account(account.id).failed_login_attempts == 8
    assert sorted(seen) == list(range(8))


def test_password_history_keeps_newest_entries():
    store = MemoryStore()
    account = _account(store)
    for index in range(4):
        store.add_password_history(account.id, f"hash-{index}", keep=2)
    entries = store.list_password_history(account.id, 10)
    assert [entry.password_hash for entry in entries] == ["hash-3", "hash-2"]
