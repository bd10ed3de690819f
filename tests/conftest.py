import asyncio
import inspect
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("CLEANUP_WORKER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from credlife.service.otp import CacheOTPRepository, DurableOTPRepository  # noqa: E402
from credlife.service.runtime import reset_runtime_for_tests  # noqa: E402
from credlife.service.sessions import (  # noqa: E402
    CacheSessionRepository,
    DurableSessionRepository,
)
from credlife.storage.errors import StorageUnavailable  # noqa: E402
from credlife.storage.memory import MemoryDocumentStore, MemoryKeyValueStore  # noqa: E402

EPOCH = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FaultInjector:
    """Make selected store methods fail or stall on demand.

    ``fail("update", times=1, when=...)`` raises StorageUnavailable for the next
    matching call; ``when`` receives the call's positional arguments.
    """

    def __init__(self) -> None:
        self.calls = []
        self._plans = []

    def fail(self, method, *, times=1, when=None, error=None):
        self._plans.append({"method": method, "times": times, "when": when, "error": error})

    def stall(self, method, seconds, *, times=1):
        self._plans.append({"method": method, "times": times, "when": None, "stall": seconds})

    def _match(self, method, args):
        self.calls.append((method, args))
        for plan in self._plans:
            if plan["method"] != method or plan["times"] <= 0:
                continue
            if plan["when"] is not None and not plan["when"](*args):
                continue
            plan["times"] -= 1
            return plan
        return None

    @staticmethod
    def _error(plan, method):
        return plan.get("error") or StorageUnavailable(
            "injected failure", backend="test", operation=method
        )

    def check_sync(self, method, args):
        plan = self._match(method, args)
        if plan is None:
            return
        if "stall" in plan:
            time.sleep(plan["stall"])
            return
        raise self._error(plan, method)

    async def check_async(self, method, args):
        plan = self._match(method, args)
        if plan is None:
            return
        if "stall" in plan:
            await asyncio.sleep(plan["stall"])
            return
        raise self._error(plan, method)

    def called(self, method):
        return [args for name, args in self.calls if name == method]


class FlakyCollection:
    def __init__(self, inner, faults):
        self._inner = inner
        self._faults = faults

    def __getattr__(self, name):
        target = getattr(self._inner, name)
        if not callable(target):
            return target

        def wrapper(*args, **kwargs):
            self._faults.check_sync(name, args)
            return target(*args, **kwargs)

        return wrapper


class FlakyDocumentStore:
    def __init__(self, inner, faults):
        self.inner = inner
        self._faults = faults

    def collection(self, name):
        return FlakyCollection(self.inner.collection(name), self._faults)

    def verify_connection(self):
        self._faults.check_sync("verify_connection", ())

    def close(self):
        self.inner.close()


class FlakyKeyValueStore:
    def __init__(self, inner, faults):
        self.inner = inner
        self._faults = faults

    def __getattr__(self, name):
        target = getattr(self.inner, name)
        if not inspect.iscoroutinefunction(target):
            return target

        async def wrapper(*args, **kwargs):
            await self._faults.check_async(name, args)
            return await target(*args, **kwargs)

        return wrapper


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def faults():
    return FaultInjector()


@pytest.fixture
def document_store():
    return MemoryDocumentStore()


@pytest.fixture
def kv_store(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture(params=["durable", "cache"])
def tier(request):
    return request.param


@pytest.fixture
def otp_repo(tier, clock, faults, document_store, kv_store):
    if tier == "durable":
        return DurableOTPRepository(FlakyDocumentStore(document_store, faults), clock=clock)
    return CacheOTPRepository(FlakyKeyValueStore(kv_store, faults), clock=clock)


@pytest.fixture
def session_repo(tier, clock, faults, document_store, kv_store):
    if tier == "durable":
        return DurableSessionRepository(FlakyDocumentStore(document_store, faults), clock=clock)
    return CacheSessionRepository(FlakyKeyValueStore(kv_store, faults), clock=clock)


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
