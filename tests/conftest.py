import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("AUTH_SECRET", "test-auth-secret-for-automation-only-0123456789")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
# No Redis in tests; counters fall back to the primary store
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hardyauth.config import Settings  # noqa: E402
from hardyauth.service.auth import AuthService  # noqa: E402
from hardyauth.service.clock import FrozenClock  # noqa: E402
from hardyauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from hardyauth.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def fast_hasher():
    """Cheap argon2id parameters so suites stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1, type=Type.ID)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        auth_secret="unit-test-auth-secret-0123456789abcdef",
        redis_url=None,
        admin_emails=["root@hardy.example"],
    )


@pytest.fixture
def auth_service(store, settings, clock, fast_hasher):
    return AuthService(store, settings, clock=clock, hasher=fast_hasher)


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
