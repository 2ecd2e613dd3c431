import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SECRET_ENCRYPTION_KEY", "test-encryption-key-for-2fa-secrets")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from warden.config import Settings, reset_settings_cache  # noqa: E402
from warden.service.auth import AuthService  # noqa: E402
from warden.service.passwords import Argon2PasswordHasher  # noqa: E402
from warden.service.rate_limit import MemoryRateLimiter  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402
from warden.storage.models import AccountStatus  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-42"


class FrozenClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingNotifier:
    """Captures outbound messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.fail = False

    def send(self, recipient, template_kind, data):
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append((recipient, template_kind, dict(data)))
        return True

    def tokens(self, template_kind: str) -> list[str]:
        return [data["token"] for _, kind, data in self.sent if kind == template_kind]

    def last_token(self, template_kind: str) -> str:
        tokens = self.tokens(template_kind)
        assert tokens, f"no {template_kind} message was sent"
        return tokens[-1]


class RecordingAlertHook:
    def __init__(self) -> None:
        self.events = []

    async def on_high_risk_event(self, event) -> None:
        self.events.append(event)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        jwt_refresh_secret="Test-Refresh-Key_for-Automation-Only-123456789!",
        secret_encryption_key="test-encryption-key-material",
    )


@pytest.fixture
def store(settings):
    return MemoryStore(encryption_key=settings.encryption_key_material)


@pytest.fixture
def hasher():
    # Cheap parameters keep the suite fast; production uses library defaults
    return Argon2PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def alert_hook():
    return RecordingAlertHook()


@pytest.fixture
def auth_service(store, settings, clock, hasher, notifier, alert_hook):
    return AuthService(
        store,
        settings,
        clock=clock,
        hasher=hasher,
        rate_limiter=MemoryRateLimiter(clock),
        notifier=notifier,
        alert_hook=alert_hook,
    )


@pytest.fixture
def make_account(store, hasher, clock):
    """Create an account directly in the store, active and verified by default."""

    def _make(
        email: str = "alice@example.com",
        password: str = STRONG_PASSWORD,
        *,
        role: str = "user",
        status: AccountStatus = AccountStatus.ACTIVE,
        email_verified: bool = True,
    ):
        return store.create_account(
            email,
            hasher.hash(password),
            now=clock.now(),
            role=role,
            status=status,
            email_verified=email_verified,
        )

    return _make


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
