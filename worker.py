import logging
import signal
import threading

from config import QueueConfig
from errors import QueueError
from log import setup_logging
from queue_module import build_queue_module

logger = logging.getLogger(__name__)


# This is the main function for a single worker process
def run_worker_process(worker_id, config: QueueConfig, log_level="INFO", json_logs=False):
    """
    Entry point of a worker process started by 'queuectl worker start'.
    Builds its own queue from 'config' and handles its own signals.
    """
    setup_logging(log_level, json_logs)
    module = build_queue_module(config)
    w = Worker(worker_id, module.service)

    # Graceful shutdown handler
    def shutdown(sig, frame):
        logger.info("Worker %s received signal %s, stopping...", w.id, sig)
        w.stop()

    signal.signal(signal.SIGINT, shutdown)  # Handle Ctrl+C
    signal.signal(signal.SIGTERM, shutdown)  # Handle termination

    try:
        w.run()
    except Exception:
        logger.exception("Worker %s crashed", w.id)
        raise
    finally:
        logger.info("Worker %s shut down.", w.id)


class Worker:
    def __init__(self, id, service):
        self.id = id
        self.service = service
        self.processed = 0
        self._stopped = threading.Event()
        logger.info("Worker %s starting...", self.id)

    @property
    def running(self):
        return not self._stopped.is_set()

    def stop(self):
        """Stops the worker loop after the current job."""
        self._stopped.set()
        logger.info("Worker %s stopping...", self.id)

    def run(self, burst: bool = False):
        """
        The main worker loop. With 'burst', returns as soon as the queue
        is empty instead of waiting for new jobs.
        """
        while self.running:
            try:
                job = self.service.process_next(
                    block=not burst,
                    timeout=None if burst else self.service.poll_interval,
                )
            except QueueError as e:
                # e.g. the job changed under us; the store already holds the truth
                logger.error("Worker %s could not finish a job: %s", self.id, e)
                continue
            except Exception:
                logger.exception("Worker %s hit an unexpected error", self.id)
                continue

            if job is not None:
                self.processed += 1
                logger.info("Worker %s finished job %s: %s", self.id, job.id, job.state.value)
            elif burst:
                break
        return self.processed


class WorkerPool:
    """Runs several workers against one service, each on its own thread."""

    def __init__(self, service, count: int = 1):
        if count <= 0:
            raise ValueError("count must be 1 or greater")
        self.workers = [Worker(i + 1, service) for i in range(count)]
        self._threads = []

    def start(self):
        for w in self.workers:
            t = threading.Thread(target=w.run, name=f"queue-worker-{w.id}", daemon=True)
            t.start()
            self._threads.append(t)

    def stop(self):
        for w in self.workers:
            w.stop()

    def join(self, timeout: float = None):
        for t in self._threads:
            t.join(timeout)

    @property
    def processed(self):
        return sum(w.processed for w in self.workers)
