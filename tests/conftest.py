import asyncio
import inspect
import os
import secrets
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault(
    "IDENTITY_JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production"
)
os.environ.setdefault("IDENTITY_ISSUER", "http://identity.test")
os.environ.setdefault("IDENTITY_COOKIE_SECURE", "false")
# Empty URL keeps tests on the in-memory code store.
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from identity_core.config import Settings  # noqa: E402
from identity_core.service.client_auth import pkce_challenge  # noqa: E402
from identity_core.service.runtime import reset_runtime_for_tests  # noqa: E402
from identity_core.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
REDIRECT_URI = "https://portal.example.com/callback"


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        issuer="http://identity.test",
        access_token_ttl_seconds=300,
        refresh_token_ttl_seconds=3600,
        authorization_code_ttl_seconds=60,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def registered_client(memory_store):
    return memory_store.register_client(
        "portal",
        product_id="prod-1",
        name="Portal",
        redirect_uris=[REDIRECT_URI],
        scopes=["openid", "profile", "email"],
    )


@pytest.fixture
def entitlement(memory_store, registered_client):
    return memory_store.grant_entitlement(
        user_id="user-1",
        product_id=registered_client.product_id,
        tenant_id="tenant-1",
        organization_id="org-1",
        roles=["admin", "viewer"],
    )


@pytest.fixture
def user_session(memory_store):
    return memory_store.create_session("user-1", email="user@example.com")


@pytest.fixture
def pkce_pair():
    verifier = secrets.token_urlsafe(48)
    return verifier, pkce_challenge(verifier)


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
