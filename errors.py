"""Exceptions raised by the job queue."""


class QueueError(Exception):
    """Base exception for the queue."""
    pass


class InvalidJobKind(QueueError):
    """Payload does not match the declared job type. Never retried."""
    pass


class NoHandlerRegistered(QueueError):
    """No handler is registered for the job type."""

    def __init__(self, job_type):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type '{job_type}'")


class EmptyQueue(QueueError):
    """Nothing is ready to run. Callers should wait and try again."""
    pass


class JobNotFound(QueueError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class DuplicateJob(QueueError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job with ID '{job_id}' already exists")


class InvalidTransition(QueueError):
    def __init__(self, job_id: str, current, target):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job '{job_id}' cannot move from '{current}' to '{target}'")


class HandlerExecutionFailure(QueueError):
    """A handler raised while running a job. Triggers the retry policy."""

    def __init__(self, job_id: str, cause: BaseException):
        self.job_id = job_id
        self.cause = cause
        super().__init__(f"Job '{job_id}' handler failed: {cause}")


class RetriesExhausted(QueueError):
    """A job failed for the last time and is now terminal."""

    def __init__(self, job):
        self.job = job
        super().__init__(
            f"Job '{job.id}' failed after {job.attempts} attempt(s): {job.error}"
        )


class PermanentJobError(Exception):
    """Raised by handlers for failures that must not be retried."""
    pass
