import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("AUDIT_SINK", "log")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionguard.config import Settings  # noqa: E402
from sessionguard.service.codec import HS256Codec  # noqa: E402
from sessionguard.service.tokens import TokenLifecycleManager  # noqa: E402
from sessionguard.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class RecordingAuditSink:
    """Audit sink that keeps events in memory for assertions."""

    def __init__(self):
        self.events = []

    async def log_action(self, event, owner_id, subject_id, detail=None):
        self.events.append((event, owner_id, subject_id, detail or {}))

    def of(self, event):
        return [e for e in self.events if e[0] == event]


class FailingAuditSink:
    async def log_action(self, event, owner_id, subject_id, detail=None):
        raise RuntimeError("audit backend down")


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        jwt_issuer="sessionguard-test",
        jwt_audience="sessionguard-test-clients",
        access_token_ttl="15m",
        refresh_token_ttl="7d",
        use_memory_store=True,
    )


@pytest.fixture
def codec(settings):
    return HS256Codec(settings.jwt_secret, settings.jwt_issuer, settings.jwt_audience)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def failing_audit():
    return FailingAuditSink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(store, codec, settings, audit, clock):
    return TokenLifecycleManager(store, codec, settings, audit, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("user-1")


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
