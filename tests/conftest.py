import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="eduauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process cache so counters and blacklists never leak between tests
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

from eduauth.config import Settings  # noqa: E402
from eduauth.service.accounts import AccountDirectory  # noqa: E402
from eduauth.service.auth import AuthService  # noqa: E402
from eduauth.service.background import BackgroundRunner  # noqa: E402
from eduauth.service.notifications import NotificationService  # noqa: E402
from eduauth.service.rate_limit import RateLimiter  # noqa: E402
from eduauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from eduauth.service.sessions import ClientInfo, SessionRegistry  # noqa: E402
from eduauth.service.tokens import TokenManager  # noqa: E402
from eduauth.service.uploads import ImageStore  # noqa: E402
from eduauth.service.verification import VerificationService  # noqa: E402
from eduauth.storage.memory import MemoryStore  # noqa: E402
from eduauth.storage.memory_cache import MemoryCache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


class FakeClock:
    """Wall-clock stand-in that only moves when told to."""

    def __init__(self, start: float | None = None):
        self.now = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEmail:
    """Email collaborator that records what would have been sent."""

    def __init__(self, *, fail: bool = False):
        self.sent: list[tuple[str, str, dict]] = []
        self.fail = fail

    async def send_templated(self, kind, recipient, payload):
        if self.fail:
            raise OSError("smtp unreachable")
        self.sent.append((kind, recipient, dict(payload)))
        return True

    def of_kind(self, kind):
        return [entry for entry in self.sent if entry[0] == kind]

    def last_otp(self, recipient):
        for kind, to, payload in reversed(self.sent):
            if to == recipient and "otp" in payload:
                return payload["otp"]
        raise AssertionError(f"no OTP sent to {recipient}")


class FailingCache(MemoryCache):
    """Cache double whose every operation raises a connection error."""

    def __init__(self):
        super().__init__()

        class _Down:
            def __getattr__(self, name):
                async def _fail(*args, **kwargs):
                    raise RedisConnectionError("cache down")

                if name == "pipeline":
                    return lambda: _DownPipeline()
                return _fail

        class _DownPipeline:
            def __getattr__(self, name):
                if name == "execute":
                    async def _fail():
                        raise RedisConnectionError("cache down")

                    return _fail
                return lambda *args, **kwargs: self

        self.client = _Down()


class Stack:
    """Services wired by hand over MemoryStore and a chosen cache."""

    def __init__(self, root: Path, *, cache=None, clock: FakeClock | None = None, email=None):
        self.clock = clock or FakeClock()
        self.settings = Settings(
            jwt_secret="unit-test-secret-key-that-is-long-enough-0123456789",
            shared_fs_root=str(root),
            use_memory_store=True,
            test_mode=True,
            redis_url=None,
        )
        self.store = MemoryStore(fs_root=str(root))
        self.cache = cache if cache is not None else MemoryCache(clock=self.clock)
        self.background = BackgroundRunner()
        self.tokens = TokenManager(self.settings, now=self.clock)
        self.limiter = RateLimiter(self.cache, clock=self.clock)
        self.verification = VerificationService(self.cache, self.settings, now=self.clock)
        self.sessions = SessionRegistry(self.store, self.cache, self.tokens, self.settings)
        self.accounts = AccountDirectory(self.store, self.cache, self.settings, self.background)
        self.email = email or RecordingEmail()
        self.notifications = NotificationService(self.store, self.email)
        self.images = ImageStore(str(root), max_bytes=1024 * 1024)
        self.auth = AuthService(
            self.store,
            self.settings,
            accounts=self.accounts,
            sessions=self.sessions,
            verification=self.verification,
            limiter=self.limiter,
            email=self.email,
            notifications=self.notifications,
            images=self.images,
            background=self.background,
        )

    async def register_verified(self, email="ada@example.com", password="Secret123", **kwargs):
        client = kwargs.pop("client", ClientInfo(ip_address="10.0.0.1", user_agent="pytest"))
        await self.auth.register(
            first_name=kwargs.pop("first_name", "Ada"),
            last_name=kwargs.pop("last_name", "Lovelace"),
            email=email,
            password=password,
            role=kwargs.pop("role", "STUDENT"),
            client=client,
        )
        outcome = await self.auth.verify(
            client=client, email=email, otp=self.email.last_otp(email)
        )
        await self.background.drain()
        return outcome


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stack(tmp_path, clock):
    return Stack(tmp_path / "stack", clock=clock)


@pytest.fixture
def client_info():
    return ClientInfo(ip_address="10.0.0.1", user_agent="pytest")


@pytest.fixture
def failing_cache():
    return FailingCache()


@pytest.fixture
def make_stack(tmp_path):
    """Factory for extra stacks (e.g. over a failing cache or email)."""
    built = []

    def _make(**kwargs):
        built.append(Stack(tmp_path / f"stack-{len(built)}", **kwargs))
        return built[-1]

    return _make


@pytest.fixture
def recording_email():
    return RecordingEmail()


@pytest.fixture
def failing_email():
    return RecordingEmail(fail=True)
