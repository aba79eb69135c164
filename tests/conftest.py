import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="medguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only-do-not-use-in-production")
# per-process rate limits keep tests independent of a running Redis
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from medguard.service.clock import ManualClock  # noqa: E402
from medguard.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch, clock):
    # a fresh state directory per test so the JSON-backed store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    runtime = reset_runtime_for_tests(clock=clock)
    yield runtime


@pytest.fixture
def runtime(reset_runtime_state):
    return reset_runtime_state


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
