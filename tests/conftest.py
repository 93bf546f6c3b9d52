import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="identity_core_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit tests; the runtime falls back to MemoryCache under TEST_MODE
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from identity_core.config import ConfigProvider, Settings  # noqa: E402
from identity_core.service.runtime import Runtime  # noqa: E402
from identity_core.storage.cache import MemoryCache  # noqa: E402
from identity_core.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Deterministic clock shared by services and the memory cache."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


STRONG_PASSWORD = "Str0ng@Pass"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url="",
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def config(settings, memory_store):
    return ConfigProvider(settings, memory_store)


@pytest.fixture
def runtime(settings, clock):
    """Fully wired runtime on the memory store with a log-only notifier."""
    return Runtime(settings, clock=clock)


@pytest.fixture
def make_user(runtime):
    def _make(username="alice", email="alice@example.com", password=STRONG_PASSWORD, first_login=False):
        return runtime.store.create_user(
            username,
            email,
            runtime.policy.hash(password),
            first_login=first_login,
        )

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
