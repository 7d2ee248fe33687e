import asyncio
import inspect
import os
import sys
from decimal import Decimal
from pathlib import Path

# Set before any imports that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("OFFER_SWEEP_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from stoneridge.config import Settings  # noqa: E402
from stoneridge.service.auth import AuthService  # noqa: E402
from stoneridge.service.clock import ManualClock  # noqa: E402
from stoneridge.service.devices import DeviceTrustRegistry, RequestMeta  # noqa: E402
from stoneridge.service.lockout import LockoutLedger  # noqa: E402
from stoneridge.service.negotiation import NegotiationEngine  # noqa: E402
from stoneridge.service.notifications import RecordingNotificationSink  # noqa: E402
from stoneridge.service.passwords import Argon2PasswordHasher  # noqa: E402
from stoneridge.service.runtime import reset_runtime_for_tests  # noqa: E402
from stoneridge.service.tokens import TokenService  # noqa: E402
from stoneridge.storage.memory import MemoryStore  # noqa: E402

PASSWORD = "Correct-Horse9"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        max_trusted_devices=3,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotificationSink()


@pytest.fixture(scope="session")
def hasher():
    return Argon2PasswordHasher()


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock)


@pytest.fixture
def ledger(store, settings, clock, notifier):
    return LockoutLedger(store, settings, clock, notifier)


@pytest.fixture
def devices(store, settings, clock, notifier):
    return DeviceTrustRegistry(store, settings, clock, notifier)


@pytest.fixture
def auth(store, settings, clock, hasher, tokens, ledger, devices, notifier):
    return AuthService(store, settings, clock, hasher, tokens, ledger, devices, notifier)


@pytest.fixture
def engine(store, settings, clock):
    return NegotiationEngine(store, settings, clock)


@pytest.fixture
def browser_meta():
    return RequestMeta(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) Firefox/124.0",
        accept_language="en-US",
        accept_encoding="gzip, br",
        remote_addr="203.0.113.7",
    )


@pytest.fixture
def make_account(store, hasher):
    """Create a verified, enabled account directly in the store."""

    def _make(username, *, password=PASSWORD, verified=True, enabled=True, first_name=""):
        return store.create_account(
            username,
            f"{username}@example.com",
            hasher.hash(password),
            first_name=first_name or username.title(),
            email_verified=verified,
            enabled=enabled,
        )

    return _make


@pytest.fixture
def marketplace(store, make_account):
    """A seller with a $100 negotiable product and a chat with one buyer."""
    seller = make_account("sally", first_name="Sally")
    buyer = make_account("bob", first_name="Bob")
    product = store.create_product(seller.id, "Oak bookshelf", Decimal("100.00"))
    chat = store.create_chat(product.id, buyer.id)
    return {"seller": seller, "buyer": buyer, "product": product, "chat": chat}


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
