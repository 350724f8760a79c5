import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import initialises the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ADMIN_EMAIL", "owner@hireiq.example")
os.environ.setdefault("LOG_JSON", "false")
os.environ.pop("REDIS_URL", None)
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hiq.config import Settings  # noqa: E402
from hiq.service.runtime import reset_runtime_for_tests  # noqa: E402
from hiq.storage.memory import MemoryStore  # noqa: E402

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock injected into services in place of utcnow."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Collects outgoing emails instead of sending them."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def _record(self, kind, to_email, *args, **kwargs):
        if self.fail:
            raise RuntimeError("mail transport down")
        self.sent.append((kind, to_email, args, kwargs))
        return True

    def send_session_expiry_warning(self, to_email, name):
        return self._record("warning", to_email, name)

    def send_session_expired(self, to_email, name):
        return self._record("expired", to_email, name)

    def send_access_request_notification(self, to_email, **kwargs):
        return self._record("admin_notification", to_email, **kwargs)

    def send_registration_invite(self, to_email, token, expires_at):
        return self._record("invite", to_email, token, expires_at)

    def send_access_rejected(self, to_email, reason):
        return self._record("rejected", to_email, reason)

    def send_interview_invite(self, to_email, **kwargs):
        return self._record("interview_invite", to_email, **kwargs)

    def send_interview_cancelled(self, to_email, **kwargs):
        return self._record("interview_cancelled", to_email, **kwargs)

    def send_interview_completed(self, to_email, **kwargs):
        return self._record("interview_completed", to_email, **kwargs)

    def of_kind(self, kind):
        return [entry for entry in self.sent if entry[0] == kind]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(test_mode=True, use_memory_store=True, admin_email="owner@hireiq.example")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


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
