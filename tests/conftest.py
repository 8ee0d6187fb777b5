import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("TOKEN_TTL", "1h")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sockauth.config import Settings  # noqa: E402
from sockauth.service.events import EventBus  # noqa: E402
from sockauth.service.handler import SessionHandler  # noqa: E402
from sockauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from sockauth.service.strategies import (  # noqa: E402
    JWTStrategy,
    LocalStrategy,
    StrategyRegistry,
    hash_password,
)
from sockauth.service.tokens import JWTTokenService  # noqa: E402
from sockauth.storage.memory import MemoryTokenStore, MemoryUserService  # noqa: E402

from fakes import CountingTokenService, EventRecorder  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
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


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET, token_ttl="1h")


@pytest.fixture
def users():
    return MemoryUserService(path="users")


@pytest.fixture
def alice(users):
    user = users.create_user("alice", email="alice@example.com")
    pwd_hash, algo = hash_password("wonderland")
    users.save_password(user.id, pwd_hash, algo)
    return user


@pytest.fixture
def token_store():
    return MemoryTokenStore()


@pytest.fixture
def token_service(token_store, settings):
    return CountingTokenService(JWTTokenService(token_store, settings))


@pytest.fixture
def registry(users, token_service):
    registry = StrategyRegistry({"users": users})
    registry.register(LocalStrategy(users), service="users")
    registry.register(JWTStrategy(token_service, users), service="users")
    return registry


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    return EventRecorder(bus)


@pytest.fixture
def make_handler(registry, token_service, bus, settings):
    def factory(**overrides):
        params = {
            "registry": registry,
            "tokens": token_service,
            "bus": bus,
            "settings": settings,
        }
        params.update(overrides)
        return SessionHandler(**params)

    return factory


@pytest.fixture
def handler(make_handler):
    return make_handler()
