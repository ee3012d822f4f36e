"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
from pathlib import Path

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from todo_sync.config import Config
from todo_sync.storage import MemoryStore
from todo_sync.sync.blob import decode_blob
from todo_sync.sync.blob_store import MemoryBlobStore
from todo_sync.sync.orchestrator import SyncOrchestrator
from todo_sync.sync.retry import RetryHandler
from todo_sync.sync.settings import SyncSettings
from todo_sync.todo import TaskRecord
from todo_sync.utils.datetime import MS_PER_DAY, now_ms


# 2024-01-15T12:00:00Z
BASE_TIME = 1705320000000


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: int = BASE_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class ScriptedRemote(MemoryBlobStore):
    """In-memory remote whose reads and writes can be made to fail.

    Queue exceptions in ``read_errors`` / ``write_errors``; each call pops
    one and raises it before touching the document.
    """

    def __init__(self, records=None, clock=now_ms):
        super().__init__(records, clock=clock)
        self.read_errors = []
        self.write_errors = []
        self.read_count = 0
        self.read_gate = None

    async def read(self):
        self.read_count += 1
        if self.read_gate is not None:
            await self.read_gate.wait()
        if self.read_errors:
            raise self.read_errors.pop(0)
        return await super().read()

    async def write(self, records):
        if self.write_errors:
            raise self.write_errors.pop(0)
        return await super().write(records)

    def stored(self):
        """Records currently in the document."""
        return decode_blob(self.content) if self.content else []


def make_record(id, text="task", completed=False, tags=None, priority=3, order=0,
                timestamp=BASE_TIME - MS_PER_DAY, last_modified=None, **kwargs) -> TaskRecord:
    """Build a record with sensible defaults for tests."""
    return TaskRecord(
        id=id,
        text=text,
        completed=completed,
        tags=list(tags or []),
        priority=priority,
        order=order,
        timestamp=timestamp,
        last_modified=last_modified if last_modified is not None else timestamp,
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def remote(clock):
    return ScriptedRemote(clock=clock)


@pytest.fixture
def fast_settings():
    return SyncSettings(debounce_ms=10, retry_base_delay=0, retry_max_delay=0, network_timeout_seconds=1.0)


@pytest.fixture
def make_orchestrator(store, remote, clock, fast_settings):
    """Factory building an orchestrator inside the running test loop."""
    def factory(**kwargs):
        kwargs.setdefault("settings", fast_settings)
        kwargs.setdefault("clock", clock)
        settings = kwargs["settings"]
        kwargs.setdefault("retry_handler", RetryHandler(
            max_attempts=settings.max_attempts,
            base_delay=0,
            max_delay=0,
            timeout=settings.network_timeout_seconds,
        ))
        return SyncOrchestrator(kwargs.pop("remote_store", remote), kwargs.pop("local_store", store), **kwargs)
    return factory


@pytest.fixture(autouse=True)
def reset_config_singleton():
    Config._instance = None
    yield
    Config._instance = None
