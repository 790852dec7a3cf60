import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from jobqueue.config import Settings
from jobqueue.engine import JobQueue
from jobqueue.storage import JobStore


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, **kwargs):
        with self._lock:
            self.now += timedelta(**kwargs)


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def store(tmp_path):
    return JobStore(tmp_path / "jobs.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(tick_interval=0.05, reaper_grace_seconds=3600)


@pytest.fixture
def engine(store, settings, clock):
    q = JobQueue(store, settings=settings, clock=clock)
    yield q
    if q.is_running:
        q.stop(timeout=5)
    q.wait_idle(5)
