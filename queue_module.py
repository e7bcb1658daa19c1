"""Composition root: builds the queue service and owns its lifecycle."""

import logging

from config import QueueConfig
from db import SqliteJobStore
from handlers import HandlerRegistry, build_registry
from queue_service import QueueService
from store import MemoryJobStore

logger = logging.getLogger(__name__)


class QueueModule:
    def __init__(self, store, registry: HandlerRegistry, notifier=None, config: QueueConfig = None):
        self.store = store
        self.registry = registry
        self.config = config or QueueConfig()
        self.service = QueueService(
            store,
            registry,
            notifier=notifier,
            max_retries=self.config.max_retries,
            backoff_base=self.config.backoff_base,
            poll_interval=self.config.poll_interval,
        )
        self._pool = None
        self.started = False

    def start(self, recover: bool = False):
        """
        Prepares the store. With 'recover', jobs orphaned in 'running'
        are re-queued; only do this when no other worker is alive.
        """
        self.store.initialize()
        if recover:
            self.service.recover()
        backlog = self.store.load_pending()
        logger.info("Queue started with %d pending job(s), handlers for %s",
                    len(backlog), [t.value for t in self.registry.types()])
        self.started = True
        return self

    def start_workers(self, count: int = 1):
        from worker import WorkerPool

        if self._pool is not None:
            raise RuntimeError("Workers already started")
        self._pool = WorkerPool(self.service, count)
        self._pool.start()
        return self._pool

    def stop(self, timeout: float = None):
        if self._pool is not None:
            self._pool.stop()
            self._pool.join(timeout)
            self._pool = None
        self.started = False
        logger.info("Queue stopped")

    def __enter__(self):
        if not self.started:
            self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()


def build_store(config: QueueConfig):
    if config.db_path:
        return SqliteJobStore(config.db_path)
    return MemoryJobStore()


def build_queue_module(config: QueueConfig = None, registry: HandlerRegistry = None,
                       notifier=None) -> QueueModule:
    """
    Builds a module from config: SQLite store when 'db_path' is set,
    memory store otherwise. Settings saved in the database's config
    table win over 'config'.
    """
    config = config or QueueConfig.from_env()
    store = build_store(config)
    if config.db_path:
        store.initialize()
        config = config.with_store_overrides(store)
    if registry is None:
        registry = build_registry(config.handlers)
    return QueueModule(store, registry, notifier=notifier, config=config)
