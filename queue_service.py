"""
The queue service: enqueue typed jobs, hand them to workers one at a time,
and apply the retry policy to the outcomes workers report.

Job state lives in the store. Every transition is written with the state
the job is expected to be in, so a transition that lost a race is rejected
instead of overwriting another writer's change.
"""
import logging
import threading
import time
from datetime import timedelta
from typing import Callable, Optional

from errors import (
    EmptyQueue,
    HandlerExecutionFailure,
    InvalidJobKind,
    InvalidTransition,
    NoHandlerRegistered,
    PermanentJobError,
    QueueError,
    RetriesExhausted,
)
from models import Job, JobResult, JobState, parse_job_type, utcnow, validate_payload

logger = logging.getLogger(__name__)

Notifier = Callable[[RetriesExhausted], None]


def log_notifier(failure: RetriesExhausted):
    """Default notification sink: logs terminal failures."""
    logger.error("Dead job %s (%s): %s", failure.job.id, failure.job.type.value, failure)


class QueueService:
    def __init__(self, store, registry, notifier: Optional[Notifier] = None,
                 max_retries: int = 3, backoff_base: int = 0, poll_interval: float = 1.0):
        self.store = store
        self.registry = registry
        self.notifier = notifier or log_notifier
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.poll_interval = poll_interval
        self._wakeup = threading.Condition()

    # --- Producers ---

    def enqueue(self, job: Job) -> str:
        """
        Validates and stores a new job, making it visible to workers.
        Raises InvalidJobKind for a tag/payload mismatch and
        NoHandlerRegistered when nothing could ever run the job.
        """
        if not isinstance(job, Job):
            raise InvalidJobKind(f"Expected a Job, got {type(job).__name__}")
        job.type = parse_job_type(job.type)
        job.payload = validate_payload(job.type, job.payload)
        if job.state != JobState.PENDING:
            raise InvalidTransition(job.id, job.state.value, JobState.PENDING.value)

        self.registry.get(job.type)

        self.store.save(job)
        logger.info("Enqueued job %s (%s, priority %d)", job.id, job.type.value, job.priority)
        self._wake_workers()
        return job.id

    def submit(self, job_type, payload, *, priority: int = 0, job_id: str = None) -> str:
        """Builds a job from a type and payload, then enqueues it."""
        job = Job.create(job_type, payload, job_id=job_id, priority=priority,
                         max_retries=self.max_retries)
        return self.enqueue(job)

    # --- Workers ---

    def dequeue(self, block: bool = False, timeout: float = None, types=None) -> Job:
        """
        Claims the next pending job and returns it in the 'running' state.
        Raises EmptyQueue when there is nothing to run; when blocking, only
        after 'timeout' seconds (or never, if timeout is None).
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = self.store.claim_next(utcnow(), types)
            if job is not None:
                logger.debug("Claimed job %s (attempt %d)", job.id, job.attempts + 1)
                return job
            if not block:
                raise EmptyQueue("No pending jobs")

            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise EmptyQueue("No pending jobs")
                wait = min(wait, remaining)
            # Other processes can't signal us, so never sleep longer than a poll
            with self._wakeup:
                self._wakeup.wait(wait)

    def report_result(self, job_id: str, outcome: JobResult) -> Job:
        """
        Records the outcome of a running job. Failures are re-queued while
        attempts remain; otherwise the job fails for good and the notifier
        is told.
        """
        job = self.store.get(job_id)
        if job.state != JobState.RUNNING:
            target = JobState.SUCCEEDED if outcome.success else JobState.FAILED
            raise InvalidTransition(job.id, job.state.value, target.value)

        if outcome.success:
            job.transition(JobState.SUCCEEDED)
            job.result = outcome.output
            job.error = None
            self._commit(job)
            self.store.increment_metric("jobs_succeeded")
            logger.info("Job %s succeeded", job.id)
            return job

        job.attempts += 1
        job.error = outcome.error or "unknown error"

        if outcome.retryable and job.attempts < job.max_retries:
            job.transition(JobState.PENDING)
            if self.backoff_base > 0:
                delay = self.backoff_base ** job.attempts
                job.retry_at = utcnow() + timedelta(seconds=delay)
                logger.warning("Job %s failed (attempt %d/%d), retrying in %d seconds",
                               job.id, job.attempts, job.max_retries, delay)
            else:
                logger.warning("Job %s failed (attempt %d/%d), retrying",
                               job.id, job.attempts, job.max_retries)
            self._commit(job)
            self.store.increment_metric("jobs_failed")
            self._wake_workers()
            return job

        job.transition(JobState.FAILED)
        self._commit(job)
        self.store.increment_metric("jobs_failed")
        self._notify(RetriesExhausted(job))
        return job

    def dispatch(self, job: Job) -> Job:
        """Runs the handler for a claimed job and reports its outcome."""
        try:
            handler = self.registry.get(job.type)
        except NoHandlerRegistered as e:
            # Handler went away after the job was enqueued; retrying won't help
            return self.report_result(job.id, JobResult(False, error=str(e), retryable=False))

        try:
            output = handler(job.payload)
        except PermanentJobError as e:
            logger.warning("Job %s failed permanently: %s", job.id, e)
            outcome = JobResult(False, error=str(e) or type(e).__name__, retryable=False)
        except Exception as e:
            failure = HandlerExecutionFailure(job.id, e)
            logger.warning("%s", failure, exc_info=True)
            outcome = JobResult(False, error=str(failure))
        else:
            outcome = output if isinstance(output, JobResult) else JobResult(True, output)

        try:
            return self.report_result(job.id, outcome)
        except QueueError:
            raise
        except Exception as e:
            if not outcome.success:
                raise
            # The store could not keep the output; the job is still 'running'
            logger.exception("Could not store result of job %s", job.id)
            return self.report_result(job.id, JobResult(
                False,
                error=f"Could not store result: {type(e).__name__}: {e}",
                retryable=False,
            ))

    def process_next(self, block: bool = False, timeout: float = None, types=None) -> Optional[Job]:
        """Dequeues and runs one job. Returns the updated job, or None if there was none."""
        try:
            job = self.dequeue(block=block, timeout=timeout, types=types)
        except EmptyQueue:
            return None
        return self.dispatch(job)

    # --- Lookups and operator actions ---

    def get(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def status(self, job_id: str) -> JobState:
        return self.store.get(job_id).state

    def cancel(self, job_id: str) -> bool:
        """Withdraws a pending job. Jobs in any other state are left alone."""
        job = self.store.get(job_id)
        if job.state != JobState.PENDING:
            return False
        job.transition(JobState.CANCELED)
        canceled = self.store.update(job, expected=JobState.PENDING)
        if canceled:
            logger.info("Canceled job %s", job_id)
        return canceled

    def retry_failed(self, job_id: str) -> Optional[str]:
        """
        Re-submits a dead job's payload as a new job and returns the new id.
        The dead job itself stays 'failed'. Returns None if the job isn't dead.
        """
        job = self.store.get(job_id)
        if job.state != JobState.FAILED:
            return None
        new_id = self.submit(job.type, job.payload, priority=job.priority)
        logger.info("Re-submitted dead job %s as %s", job_id, new_id)
        return new_id

    def recover(self) -> int:
        """Re-queues jobs left 'running' by workers that are gone."""
        recovered = self.store.recover_running()
        if recovered:
            logger.warning("Re-queued %d job(s) orphaned in 'running'", recovered)
            self._wake_workers()
        return recovered

    def purge(self, retention_hours: float) -> int:
        """Deletes terminal jobs that finished more than 'retention_hours' ago."""
        removed = self.store.purge(utcnow() - timedelta(hours=retention_hours))
        logger.info("Purged %d terminal job(s) older than %s hours", removed, retention_hours)
        return removed

    def list_jobs(self, state: JobState = None, limit: int = None):
        return self.store.list_jobs(state=state, limit=limit)

    def load_pending(self):
        return self.store.load_pending()

    def summary(self):
        counts = {s.value: 0 for s in JobState}
        counts.update(self.store.summary())
        return counts

    def metrics(self):
        return self.store.metrics()

    # --- Internals ---

    def _commit(self, job: Job):
        if not self.store.update(job, expected=JobState.RUNNING):
            raise InvalidTransition(job.id, JobState.RUNNING.value, job.state.value)

    def _notify(self, failure: RetriesExhausted):
        try:
            self.notifier(failure)
        except Exception:
            logger.exception("Notifier raised while reporting job %s", failure.job.id)

    def _wake_workers(self):
        with self._wakeup:
            self._wakeup.notify_all()
