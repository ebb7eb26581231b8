import asyncio
import inspect
import os
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("BADGE_SECRET", "test-badge-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SECURE_COOKIES", "false")
os.environ.setdefault("APP_BASE_URL", "http://testserver")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from idbadge.config import Settings  # noqa: E402
from idbadge.service.runtime import Runtime, reset_runtime_for_tests, set_runtime  # noqa: E402
from idbadge.storage.memory import MemoryStore  # noqa: E402

# Aligned to a 30 second TOTP step so offsets of +/-15s land in distinct steps
START = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

_TOKEN_RE = re.compile(r"token=([0-9a-f]+)")


class FrozenClock:
    """Callable clock the services share; only moves when a test moves it."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmailSender:
    is_configured = True

    def __init__(self):
        self.sent = []

    async def send(self, to_email: str, subject: str, html_body: str) -> None:
        self.sent.append({"to": to_email, "subject": subject, "html": html_body})

    def to(self, email: str):
        return [m for m in self.sent if m["to"] == email]

    def last_token(self, email: str) -> str:
        messages = self.to(email)
        assert messages, f"no email sent to {email}"
        match = _TOKEN_RE.search(messages[-1]["html"])
        assert match, "last email carries no token link"
        return match.group(1)


class RecordingSmsSender:
    def __init__(self):
        self.sent = []

    async def send(self, to: str, body: str) -> None:
        self.sent.append({"to": to, "body": body})

    def last_code(self, phone: str) -> str:
        messages = [m for m in self.sent if m["to"] == phone]
        assert messages, f"no SMS sent to {phone}"
        return messages[-1]["body"].rsplit(" ", 1)[1]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        badge_secret="Test-Badge-Secret_for-Automation-Only-987654321!",
        secure_cookies=False,
        app_base_url="http://testserver",
        test_mode=True,
    )


@pytest.fixture
def emails():
    return RecordingEmailSender()


@pytest.fixture
def sms():
    return RecordingSmsSender()


@pytest.fixture
def make_runtime(clock, emails, sms):
    """Build and install a runtime wired to the frozen clock and recording senders."""

    def _make(settings: Settings, store=None) -> Runtime:
        runtime = Runtime(
            settings,
            store=store or MemoryStore(clock=clock),
            email_sender=emails,
            sms_sender=sms,
            clock=clock,
        )
        return set_runtime(runtime)

    return _make


@pytest.fixture
def runtime(make_runtime, settings):
    return make_runtime(settings)


class Flows:
    """Multi-step helpers shared by the engine tests."""

    PASSWORD = "correct horse battery"

    def __init__(self, runtime: Runtime, emails: RecordingEmailSender):
        self.runtime = runtime
        self.emails = emails

    async def register_verified(self, email: str, password: str = PASSWORD, *, name=None):
        """Register ``email`` and follow the verification link; returns the login result."""
        await self.runtime.registration.register(email, password, name=name)
        token = self.emails.last_token(email)
        result = await self.runtime.registration.verify_email(token)
        return result.login

    async def identity(self, email: str):
        return await self.runtime.directory.get_by_email(email)

    async def enable_totp(self, email: str, clock: FrozenClock) -> str:
        """Enroll TOTP for ``email`` and move the clock past the enrollment codes; returns the secret."""
        credentials = self.runtime.credentials
        identity = await self.identity(email)
        secret = (await self.runtime.mfa.start_totp(identity))["secret"]
        now = clock()
        first = credentials.generate_totp(secret, (now - timedelta(seconds=15)).timestamp())
        second = credentials.generate_totp(secret, (now + timedelta(seconds=15)).timestamp())
        assert await self.runtime.mfa.complete_enrollment(await self.identity(email), first) == {
            "complete": False
        }
        assert await self.runtime.mfa.complete_enrollment(await self.identity(email), second) == {
            "complete": True
        }
        clock.advance(minutes=5)
        return secret

    def totp_now(self, secret: str, clock: FrozenClock) -> str:
        return self.runtime.credentials.generate_totp(secret, clock().timestamp())


@pytest.fixture
def flows(runtime, emails):
    return Flows(runtime, emails)


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
