import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before any import that builds settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="susi_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty Redis URL keeps rate limit buckets per-process so tests cannot leak into each other
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters; the production work factor makes the suite crawl
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from susi_auth.config import Settings  # noqa: E402
from susi_auth.service.auth import AuthService  # noqa: E402
from susi_auth.service.passwords import CredentialHasher  # noqa: E402
from susi_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from susi_auth.storage.cipher import SecretCipher  # noqa: E402
from susi_auth.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        store_timeout_seconds=2.0,
    )


@pytest.fixture
def cipher():
    return SecretCipher("cipher-key-material-for-tests")


@pytest.fixture
def memory_store(cipher):
    return MemoryStore(cipher=cipher)


@pytest.fixture
def hasher():
    return CredentialHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def auth_service(memory_store, settings, hasher):
    return AuthService(memory_store, settings, hasher=hasher)


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
