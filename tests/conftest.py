import threading
import time

import pytest

from jobrelay.db import connect_db, init_db
from jobrelay.repository import set_config


class FakeEngine:
    """Stands in for EngineClient.run. Queued responses are consumed in order;
    exceptions in the queue are raised instead of returned."""

    def __init__(self, responses=None, default=None, delay=0.0):
        self.responses = list(responses or [])
        self.default = default if default is not None else {"text": "ok"}
        self.delay = delay
        self.calls = []
        self.call_times = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def run(self, job_type, payload):
        with self._lock:
            self.calls.append((job_type, payload))
            self.call_times.append(time.monotonic())
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            response = self.responses.pop(0) if self.responses else self.default
        try:
            if self.delay:
                time.sleep(self.delay)
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            with self._lock:
                self.in_flight -= 1


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "queue.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def fast_backoff(conn):
    set_config(conn, "backoff_delay", "0.01")
    return conn
