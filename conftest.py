"""Shared fixtures for the queue tests."""

import logging

import pytest

from db import SqliteJobStore
from handlers import HandlerRegistry
from models import JobType
from queue_service import QueueService
from store import MemoryJobStore


class Recorder:
    """Handler that records payloads and fails a set number of times first."""

    def __init__(self, failures=0, exc=RuntimeError, output="ok"):
        self.calls = []
        self.failures = failures
        self.exc = exc
        self.output = output

    def __call__(self, payload):
        self.calls.append(payload)
        if len(self.calls) <= self.failures:
            raise self.exc(f"boom #{len(self.calls)}")
        return self.output


@pytest.fixture(autouse=True)
def reset_cli_logging():
    yield
    root = logging.getLogger()
    for h in [h for h in root.handlers if getattr(h, "_queuectl", False)]:
        root.removeHandler(h)


@pytest.fixture
def handlers():
    return {t: Recorder() for t in JobType}


@pytest.fixture
def registry(handlers):
    registry = HandlerRegistry()
    for job_type, handler in handlers.items():
        registry.register(job_type, handler)
    return registry


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryJobStore()
    else:
        s = SqliteJobStore(str(tmp_path / "queue.db"))
    s.initialize()
    return s


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def service(store, registry, notifications):
    return QueueService(store, registry, notifier=notifications.append,
                        max_retries=3, poll_interval=0.05)
