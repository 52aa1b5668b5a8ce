import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path

# Environment defaults before any import that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="portcullis_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient  # noqa: E402

from portcullis.app import create_app  # noqa: E402
from portcullis.config import Settings, reset_settings_cache  # noqa: E402
from portcullis.service.hashing import SecretHasher  # noqa: E402
from portcullis.service.runtime import Runtime  # noqa: E402
from portcullis.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"

# argon2 at minimum cost; production parameters make the suite crawl
FAST_HASH = {"time_cost": 1, "memory_cost": 1024, "parallelism": 1}


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        environment="test",
        test_mode=True,
        use_memory_store=True,
        allow_redis_fallback_dev=True,
        jwt_secret=TEST_JWT_SECRET,
        shared_fs_root=str(tmp_path),
        hash_time_cost=FAST_HASH["time_cost"],
        hash_memory_cost=FAST_HASH["memory_cost"],
        hash_parallelism=FAST_HASH["parallelism"],
    )
    values.update(overrides)
    return Settings(**values)


def bearer_for(runtime: Runtime, user_id: str, *, ttl: int = 3600, **claims) -> dict:
    token = runtime.verifier.encode({"sub": user_id, "exp": int(time.time()) + ttl, **claims})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def hasher() -> SecretHasher:
    return SecretHasher(**FAST_HASH)


@pytest.fixture
def memory_store(tmp_path) -> MemoryStore:
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def runtime(settings, memory_store) -> Runtime:
    # In-process counters only; a shared Redis would leak buckets between tests
    return Runtime(settings, store=memory_store, connect_cache=False)


@pytest.fixture
def app(runtime):
    return create_app(runtime=runtime)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("owner@example.com")


@pytest.fixture
def auth_headers(runtime, user) -> dict:
    return bearer_for(runtime, user.id)


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
