import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything imports the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests: revocations use the in-process store
os.environ.setdefault("REDIS_URL", "")
# TestClient talks plain http; a Secure cookie would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantguard.config import Settings  # noqa: E402
from tenantguard.service.alerts import SecurityAlerter  # noqa: E402
from tenantguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantguard.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = os.environ["JWT_SECRET"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class RecordingAlerter(SecurityAlerter):
    """Alerter that remembers what it escalated instead of calling out."""

    def __init__(self):
        super().__init__(None)
        self.alerts = []

    async def alert(self, event, **context):
        self.alerts.append((event, context))
        return await super().alert(event, **context)


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET, shared_fs_root=_test_tmp_dir, test_mode=True)


@pytest.fixture
def store():
    return MemoryStore(persist=False)


class AuditOutageStore(MemoryStore):
    """Memory store whose audit table is unreachable."""

    def __init__(self):
        super().__init__(persist=False)
        self.audit_attempts = 0

    def append_audit_record(self, record):
        self.audit_attempts += 1
        raise ConnectionError("audit table unavailable")


@pytest.fixture
def alerter():
    return RecordingAlerter()


@pytest.fixture
def audit_outage_store():
    return AuditOutageStore()


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
