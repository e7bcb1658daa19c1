import time

import pytest

from config import QueueConfig
from conftest import Recorder
from db import SqliteJobStore
from handlers import HandlerRegistry
from models import JobState, JobType
from queue_module import QueueModule, build_queue_module
from store import MemoryJobStore
from worker import Worker, WorkerPool


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_burst_worker_drains_the_queue(service, handlers):
    for i in range(3):
        service.submit("generic", {"name": f"task-{i}"})
    service.submit("email", {"to": "a@x.com", "template": "welcome"})

    processed = Worker(1, service).run(burst=True)

    assert processed == 4
    assert service.summary()["succeeded"] == 4
    assert [p.name for p in handlers[JobType.GENERIC].calls] == ["task-0", "task-1", "task-2"]


def test_worker_stops_when_asked(service):
    w = Worker(1, service)
    w.stop()
    assert w.run() == 0
    assert not w.running


class FlakyService:
    poll_interval = 0.01

    def __init__(self):
        self.calls = 0

    def process_next(self, block=False, timeout=None):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("store went away")
        return None


def test_worker_survives_unexpected_errors():
    service = FlakyService()

    assert Worker(1, service).run(burst=True) == 0
    assert service.calls == 2


def test_worker_pool_runs_jobs_concurrently(registry, handlers):
    module = QueueModule(MemoryJobStore(), registry, config=QueueConfig(poll_interval=0.05))
    with module:
        pool = module.start_workers(3)
        ids = [module.service.submit("import", {"source": f"/tmp/{i}.csv"}) for i in range(20)]

        assert wait_for(lambda: module.service.summary()["succeeded"] == 20)
        assert wait_for(lambda: pool.processed == 20)

    assert all(module.service.status(job_id) is JobState.SUCCEEDED for job_id in ids)
    assert len(handlers[JobType.IMPORT].calls) == 20


def test_worker_pool_rejects_bad_count(service):
    with pytest.raises(ValueError):
        WorkerPool(service, 0)


def test_module_start_recovers_orphans(registry):
    store = MemoryJobStore()
    module = QueueModule(store, registry)
    job_id = module.service.submit("generic", {"name": "x"})
    module.service.dequeue()

    module.start(recover=True)
    assert module.service.status(job_id) is JobState.PENDING


def test_build_queue_module_picks_store_from_config(db_path, registry):
    memory = build_queue_module(QueueConfig(), registry=registry)
    assert isinstance(memory.store, MemoryJobStore)

    sqlite = build_queue_module(QueueConfig(db_path=db_path), registry=registry)
    assert isinstance(sqlite.store, SqliteJobStore)


def test_stored_config_overrides_defaults(db_path, registry):
    store = SqliteJobStore(db_path)
    store.initialize()
    store.set_config("max_retries", "1")
    store.set_config("backoff_base", "0")

    module = build_queue_module(QueueConfig(db_path=db_path, max_retries=5), registry=registry)
    assert module.config.max_retries == 1
    assert module.service.max_retries == 1


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("QUEUECTL_MAX_RETRIES", "7")
    monkeypatch.setenv("QUEUECTL_POLL_INTERVAL", "0.5")
    monkeypatch.delenv("QUEUECTL_DB", raising=False)

    config = QueueConfig.from_env(handlers="my_jobs:register")
    assert config.max_retries == 7
    assert config.poll_interval == 0.5
    assert config.db_path is None
    assert config.handlers == "my_jobs:register"


def test_failing_jobs_end_up_dead_under_a_pool():
    registry = HandlerRegistry()
    registry.register(JobType.EMAIL, Recorder(failures=100))
    dead = []
    module = QueueModule(MemoryJobStore(), registry, notifier=dead.append,
                         config=QueueConfig(max_retries=2, poll_interval=0.05))
    with module:
        module.start_workers(2)
        job_id = module.service.submit("email", {"to": "a@x.com", "template": "welcome"})
        assert wait_for(lambda: module.service.status(job_id) is JobState.FAILED)

    assert [f.job.id for f in dead] == [job_id]
    assert module.service.get(job_id).attempts == 2
