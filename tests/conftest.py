import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="pimify_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("PERSIST_MEMORY_STORE", "false")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Runtime falls back to in-process token and rate-limit stores without Redis
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from pimify_identity.config import Settings  # noqa: E402
from pimify_identity.service.activity import ActivityLogger  # noqa: E402
from pimify_identity.service.credentials import CredentialStore  # noqa: E402
from pimify_identity.service.runtime import reset_runtime_for_tests  # noqa: E402
from pimify_identity.storage.memory import MemoryStore  # noqa: E402
from pimify_identity.storage.token_store import MemoryTokenStore  # noqa: E402

TEST_PASSWORD = "Correct-Horse-9"


class FakeClock:
    """Settable UTC clock; call it for the current time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeMonotonic:
    """Settable monotonic clock in seconds for TTL-bearing stores."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def store():
    return MemoryStore(persist=False, encryption_key="unit-test-encryption-key")


@pytest.fixture
def credentials(store):
    return CredentialStore(store)


@pytest.fixture
def token_store():
    return MemoryTokenStore()


@pytest.fixture
def activity():
    return ActivityLogger()


@pytest.fixture
def admin(credentials):
    return credentials.create(
        "admin@example.com", TEST_PASSWORD, role="ADMIN", name="Ada Admin"
    ).unwrap()


@pytest.fixture
def editor(credentials):
    return credentials.create(
        "editor@example.com", TEST_PASSWORD, role="EDITOR", name="Eddie Editor"
    ).unwrap()


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
