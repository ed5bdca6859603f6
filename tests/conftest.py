import os
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from config import SchedulerConfig
from errors import ProviderError
from handlers import build_registry
from scheduler import Scheduler
from storage import Storage

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start=T0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, **kwargs):
        with self._lock:
            self.now += timedelta(**kwargs)
        return self.now


class FakeProvider:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def refresh_metadata(self, identifier):
        self.calls.append(identifier)
        if self.fail:
            raise ProviderError(f"provider down for {identifier}")


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def storage(clock):
    store = Storage(":memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def registry(provider):
    calls = []
    reg = build_registry(
        provider,
        cleanup=lambda payload: calls.append(("cleanup", payload)),
        summary=lambda payload: calls.append(("summary", payload)),
        pull=lambda payload: calls.append(("pull", payload)),
    )
    reg.calls = calls
    return reg


@pytest.fixture
def make_scheduler(clock, registry):
    created = []

    def factory(registry=registry, clock=clock, **overrides):
        config = SchedulerConfig(**{"backoff_base": 0, "concurrency": 1, **overrides})
        scheduler = Scheduler(config, registry=registry, clock=clock)
        created.append(scheduler)
        return scheduler

    yield factory
    for s in created:
        s.close()


@pytest.fixture(autouse=True)
def scheduler_env(monkeypatch):
    """Tests start from defaults, whatever the surrounding shell exports."""
    for name in list(os.environ):
        if name.startswith("SCHEDULER_") or name == "INTEGRATION_PULL_EVERY":
            monkeypatch.delenv(name)
