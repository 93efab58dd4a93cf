import asyncio
import inspect
import os
from datetime import datetime, timedelta, timezone

# Configure the environment before anything builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

from citizenauth.config import Settings  # noqa: E402
from citizenauth.service.auth import AuthService  # noqa: E402
from citizenauth.service.passwords import CredentialHasher  # noqa: E402
from citizenauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from citizenauth.storage.memory import MemoryStore  # noqa: E402
from citizenauth.storage.models import AccountStatus  # noqa: E402

PASSWORD = "Secure#Pass123"


class FakeClock:
    """Settable clock injected into the services under test."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDelivery:
    def __init__(self):
        self.sent = []

    def send_password_reset(self, email: str, token: str) -> None:
        self.sent.append((email, token))


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="unit-access-secret-0123456789abcdef",
        jwt_refresh_secret="unit-refresh-secret-fedcba9876543210",
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def clock():
    # Real wall-clock base so MemoryStore timestamps and the fake clock agree
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher():
    # Cheap argon2 parameters keep the suite fast
    return CredentialHasher(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def auth(store, settings, clock, hasher, delivery):
    return AuthService(store, settings, delivery=delivery, hasher=hasher, clock=clock)


@pytest.fixture
def make_account(store, hasher):
    counter = {"n": 0}

    def _make(
        username=None,
        *,
        password=PASSWORD,
        status=AccountStatus.ACTIVE,
        email=None,
        roles=(),
    ):
        counter["n"] += 1
        username = username or f"ciudadano{counter['n']}"
        account = store.create_account(
            username,
            email or f"{username}@example.com",
            hasher.hash(password),
            status=status,
        )
        for slug in roles:
            role = store.get_role_by_slug(slug) or store.create_role(slug, slug.title())
            store.assign_role(account.id, role.id)
        return account

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
