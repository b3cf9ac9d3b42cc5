import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authsession_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("TWO_FACTOR_SECRET", "test-two-factor-secret-for-testing-only-not-production")
# In-process rate limit, OAuth state and lockout fallbacks
os.environ["REDIS_URL"] = ""
os.environ.setdefault("GEOLOCATION_ENABLED", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authsession.config import Settings  # noqa: E402
from authsession.service.runtime import reset_runtime_for_tests  # noqa: E402
from authsession.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Standalone settings for unit tests that build services by hand."""
    return Settings(
        jwt_secret="Unit-Test-JWT-Secret_for-Automation-Only-123456789!",
        two_factor_secret="Unit-Test-2FA-Secret_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24 * 7,
        two_factor_token_ttl_minutes=5,
        redis_url=None,
        use_memory_store=True,
        test_mode=True,
    )


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


@pytest.fixture
def memory_store(tmp_path):
    """Non-persisting in-memory store with a fixed 2FA encryption key."""
    return MemoryStore(
        fs_root=str(tmp_path), mfa_encryption_key="unit-test-mfa-key", persist=False
    )


class FakeClock:
    """Settable epoch-seconds clock for services that take ``clock=``."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
