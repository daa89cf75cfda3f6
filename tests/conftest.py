import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="medisecure_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Ephemeral state stays in process so tests never depend on a running Redis
os.environ.pop("REDIS_URL", None)
os.environ.pop("GOOGLE_CLIENT_ID", None)
os.environ.pop("GOOGLE_CLIENT_SECRET", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from medisecure.config import Settings  # noqa: E402
from medisecure.service.runtime import reset_runtime_for_tests  # noqa: E402
from medisecure.storage.memory import MemoryStore  # noqa: E402
from medisecure.storage.models import Organization, OrganizationType, Plan  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Controllable wall clock shared by every service in a test."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def timestamp(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh store directory per test keeps persisted snapshots from leaking between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        session_token_ttl_minutes=60,
        mfa_max_attempts=3,
        mfa_lockout_seconds=300,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path, settings):
    """Memory store seeded with the default organization."""
    store = MemoryStore(fs_root=str(tmp_path / "store"), mfa_encryption_key=TEST_JWT_SECRET)
    store.create_organization(
        Organization(
            id=settings.default_organization_id,
            name="Test General Hospital",
            type=OrganizationType.HOSPITAL,
            plan_id=Plan.BASIC,
        )
    )
    return store


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
