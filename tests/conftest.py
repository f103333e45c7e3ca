import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="otpgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("TOKEN_HASH_SECRET", "test-token-hash-secret-for-testing-only-do-not-use")
# No Redis in unit tests; the runtime falls back to MemoryCache under TEST_MODE
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from otpgate.service.challenges import OtpChallengeManager  # noqa: E402
from otpgate.service.hashing import SecretHasher  # noqa: E402
from otpgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from otpgate.service.sessions import SessionManager  # noqa: E402
from otpgate.storage.memory import MemoryCache, MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-hash-secret-0123456789abcdef"


class FakeNotifier:
    """Captures sent codes instead of delivering them."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    async def send_code(self, identifier, kind, code):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((identifier, kind, code))

    @property
    def last_code(self):
        return self.sent[-1][2]


class FakeClock:
    """Settable clock for expiry tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def hasher():
    return SecretHasher(TEST_SECRET)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def challenges(store, cache, hasher, notifier, clock):
    return OtpChallengeManager(store, cache, hasher, notifier, now=clock)


@pytest.fixture
def sessions(store, hasher, clock):
    return SessionManager(store, hasher, now=clock)


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
