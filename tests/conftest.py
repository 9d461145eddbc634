import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Seed the environment before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="iamcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("PERSIST_MEMORY_STORE", "false")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from iamcore.clock import FrozenClock  # noqa: E402
from iamcore.config import Settings  # noqa: E402
from iamcore.service.auth import AuthService  # noqa: E402
from iamcore.storage.memory import MemoryStore  # noqa: E402

class RecordingNotifier:
    """Captures notifications instead of sending them."""

    def __init__(self):
        self.sent = []

    def _record(self, kind, **payload):
        self.sent.append((kind, payload))

    def of_kind(self, kind):
        return [payload for k, payload in self.sent if k == kind]

    def welcome(self, account):
        self._record("welcome", email=account.email)

    def login_alert(self, account, device_name, ip_addr):
        self._record("login_alert", email=account.email, device_name=device_name, ip_addr=ip_addr)

    def mfa_code(self, account, channel, destination, code):
        self._record("mfa_code", channel=channel, destination=destination, code=code)

    def password_reset(self, account, token):
        self._record("password_reset", email=account.email, token=token)

    def password_changed(self, account):
        self._record("password_changed", email=account.email)

    async def drain(self):
        return None


@pytest.fixture
def settings():
    """Settings with cheap argon2 parameters and every OAuth provider configured."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        mfa_secret_key="Test-MFA-Key_for-Automation-Only-123456789!",
        password_hash_time_cost=1,
        password_hash_memory_cost=8192,
        password_hash_parallelism=1,
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_github_client_id="github-client",
        oauth_github_client_secret="github-secret",
        oauth_microsoft_client_id="ms-client",
        oauth_microsoft_client_secret="ms-secret",
        oauth_linkedin_client_id="li-client",
        oauth_linkedin_client_secret="li-secret",
        oauth_redirect_uri="https://app.example.com/oauth/callback",
    )


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(settings):
    return MemoryStore(secret_key=settings.mfa_secret_key)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth(store, settings, notifier, clock):
    return AuthService(store, settings, notifier=notifier, clock=clock)


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
