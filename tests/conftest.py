import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("FLOW_RETRY_BACKOFF_MS", "0")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from liminalflow.config import Settings  # noqa: E402
from liminalflow.service.gateway import ModelGateway  # noqa: E402
from liminalflow.service.runtime import reset_runtime_for_tests  # noqa: E402
from liminalflow.service.workflow import FlowExecutionEngine  # noqa: E402
from liminalflow.storage.memory import MemoryStore  # noqa: E402
from tests.flow_helpers import ScriptedProvider  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(test_mode=True, retry_backoff_ms=0)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def gateway(provider):
    gateway = ModelGateway(default_timeout_seconds=5.0)
    gateway.register(provider, prefixes=["test-"])
    return gateway


@pytest.fixture
def engine(memory_store, gateway, settings):
    return FlowExecutionEngine(
        memory_store,
        gateway,
        settings=settings,
        template_lookup=memory_store.get_template,
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
