import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Must be set before any fitauth import builds settings
_test_tmp_dir = tempfile.mkdtemp(prefix="fitauth_test_")
os.environ.setdefault("SECRETS_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
# Empty REDIS_URL keeps the runtime on its in-process fallbacks
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from fitauth.app import create_app  # noqa: E402
from fitauth.config import Settings, reset_settings_cache  # noqa: E402
from fitauth.seed import seed_users  # noqa: E402
from fitauth.service.runtime import Runtime  # noqa: E402
from fitauth.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Injectable clock; tests move time forward explicitly."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "test_mode": True,
        "use_memory_store": True,
        "redis_url": "",
        "secrets_dir": _test_tmp_dir,
        "jwt_secret": os.environ["JWT_SECRET"],
        "jwt_refresh_secret": os.environ["JWT_REFRESH_SECRET"],
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def runtime(settings):
    return Runtime(settings, store=MemoryStore())


@pytest.fixture
def clocked_runtime(settings, clock):
    return Runtime(settings, store=MemoryStore(), clock=clock)


@pytest.fixture
def seeded_runtime(runtime):
    seed_users(runtime)
    return runtime


@pytest.fixture
def client(seeded_runtime):
    return TestClient(create_app(runtime=seeded_runtime))


@pytest.fixture
def unlimited_client():
    """Client whose routes skip rate limiting, for flows that need many attempts."""
    runtime = Runtime(make_settings(rate_limit_enabled=False), store=MemoryStore())
    seed_users(runtime)
    return TestClient(create_app(runtime=runtime))


@pytest.fixture
def clocked_client(clock):
    runtime = Runtime(make_settings(), store=MemoryStore(), clock=clock)
    seed_users(runtime)
    return TestClient(create_app(runtime=runtime))


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
