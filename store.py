"""
Persistence contract for jobs, and an in-memory implementation.

Stores are the single source of truth for job state. Every state change
the queue makes goes through update(job, expected=...), a compare-and-set
on the stored state, so two writers can never both move the same job.
"""
import copy
import itertools
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol

from errors import DuplicateJob, JobNotFound
from models import TERMINAL_STATES, Job, JobState, JobType, parse_job_type


class JobStore(Protocol):
    def initialize(self) -> None: ...

    def save(self, job: Job) -> None: ...

    def load_pending(self) -> List[Job]: ...

    def update(self, job: Job, expected: Optional[JobState] = None) -> bool: ...

    def get(self, job_id: str) -> Job: ...

    def claim_next(self, now: datetime, types: Optional[Iterable[JobType]] = None) -> Optional[Job]: ...

    def list_jobs(self, state: Optional[JobState] = None, limit: Optional[int] = None) -> List[Job]: ...

    def summary(self) -> Dict[str, int]: ...

    def recover_running(self) -> int: ...

    def purge(self, before: datetime) -> int: ...

    def increment_metric(self, key: str) -> None: ...

    def metrics(self) -> Dict[str, int]: ...

    def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]: ...

    def set_config(self, key: str, value: str) -> None: ...


class MemoryJobStore:
    """Keeps jobs in a dict. Jobs are copied in and out so callers never share state with the store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._seq: Dict[str, int] = {}
        self._counter = itertools.count()
        self._metrics: Dict[str, int] = {"jobs_succeeded": 0, "jobs_failed": 0}
        self._config: Dict[str, str] = {}

    def initialize(self):
        pass

    def save(self, job):
        with self._lock:
            if job.id in self._jobs:
                raise DuplicateJob(job.id)
            self._jobs[job.id] = copy.deepcopy(job)
            self._seq[job.id] = next(self._counter)

    def _ordered(self, jobs):
        # highest priority first, then oldest
        return sorted(jobs, key=lambda j: (-j.priority, self._seq[j.id]))

    def load_pending(self):
        with self._lock:
            pending = [j for j in self._jobs.values() if j.state == JobState.PENDING]
            return [copy.deepcopy(j) for j in self._ordered(pending)]

    def update(self, job, expected=None):
        with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                raise JobNotFound(job.id)
            if expected is not None and current.state != expected:
                return False
            self._jobs[job.id] = copy.deepcopy(job)
            return True

    def get(self, job_id):
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return copy.deepcopy(job)

    def claim_next(self, now, types=None):
        wanted = {parse_job_type(t) for t in types} if types else None
        with self._lock:
            ready = [
                j for j in self._jobs.values()
                if j.state == JobState.PENDING
                and (j.retry_at is None or j.retry_at <= now)
                and (wanted is None or j.type in wanted)
            ]
            if not ready:
                return None
            job = self._ordered(ready)[0]
            job.transition(JobState.RUNNING)
            job.retry_at = None
            return copy.deepcopy(job)

    def list_jobs(self, state=None, limit=None):
        with self._lock:
            jobs = [j for j in self._jobs.values() if state is None or j.state == state]
            jobs = sorted(jobs, key=lambda j: self._seq[j.id])
            if limit is not None:
                jobs = jobs[:limit]
            return [copy.deepcopy(j) for j in jobs]

    def summary(self):
        with self._lock:
            counts: Dict[str, int] = {}
            for job in self._jobs.values():
                counts[job.state.value] = counts.get(job.state.value, 0) + 1
            return counts

    def recover_running(self):
        with self._lock:
            recovered = 0
            for job in self._jobs.values():
                if job.state == JobState.RUNNING:
                    job.transition(JobState.PENDING)
                    recovered += 1
            return recovered

    def purge(self, before):
        with self._lock:
            old = [
                job_id for job_id, job in self._jobs.items()
                if job.state in TERMINAL_STATES and job.updated_at < before
            ]
            for job_id in old:
                del self._jobs[job_id]
                del self._seq[job_id]
            return len(old)

    def increment_metric(self, key):
        with self._lock:
            self._metrics[key] = self._metrics.get(key, 0) + 1

    def metrics(self):
        with self._lock:
            return dict(self._metrics)

    def get_config(self, key, default=None):
        with self._lock:
            return self._config.get(key, default)

    def set_config(self, key, value):
        with self._lock:
            self._config[key] = str(value)
