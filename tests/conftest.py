import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="arenaauth_test_")
os.environ.setdefault("ARENAAUTH_STATE_DIR", _test_tmp_dir)
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from arenaauth.config import Settings, reset_settings_cache  # noqa: E402
from arenaauth.service.auth import AuthService  # noqa: E402
from arenaauth.storage.memory import MemoryStore  # noqa: E402

TEST_ENCRYPTION_KEY = "test-encryption-key-for-automation-only-0123456789"


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def encryption_key():
    return TEST_ENCRYPTION_KEY


@pytest.fixture
def settings():
    """Settings with the production policy defaults."""
    return Settings(secret_encryption_key=TEST_ENCRYPTION_KEY)


@pytest.fixture
def memory_store():
    return MemoryStore(secret_encryption_key=TEST_ENCRYPTION_KEY)


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, settings=settings)


@pytest.fixture
def user(memory_store):
    """A freshly upserted, unlocked user."""
    return memory_store.upsert_user(
        "u1", email="u1@example.com", first_name="Ada", last_name="Player"
    )


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
