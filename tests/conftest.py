import asyncio
import inspect
import os
import tempfile

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="stayhub_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Revocations and rate limits fall back to in-process stores
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
# Cheap hashing keeps the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("SIGNUP_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("RESET_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("VERIFY_RATE_LIMIT_PER_MINUTE", "1000")

import pytest  # noqa: E402

from stayhub.config import Settings  # noqa: E402
from stayhub.service.errors import EmailDeliveryError  # noqa: E402
from stayhub.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


class RecordingEmailSender:
    """Captures outgoing templated mail; optionally fails every send."""

    def __init__(self, *, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_templated(self, to, kind, data):
        if self.fail:
            raise EmailDeliveryError("Failed to send email")
        self.sent.append((to, kind, dict(data)))

    def last(self, kind=None):
        for to, sent_kind, data in reversed(self.sent):
            if kind is None or sent_kind == kind:
                return to, sent_kind, data
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings.from_env()


@pytest.fixture
def mailer():
    return RecordingEmailSender()


@pytest.fixture
def outbox(mailer):
    """Swap the runtime's email sender for a recorder."""
    get_runtime().sessions.email = mailer
    return mailer


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
