import enum
import uuid
from collections import namedtuple
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import InvalidJobKind, InvalidTransition


class JobType(str, enum.Enum):
    EMAIL = "email"
    GENERIC = "generic"
    IMPORT = "import"
    VECTORIZATION = "vectorization"


class JobState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED})

# running -> pending is the retry edge
TRANSITIONS = {
    JobState.PENDING: {JobState.RUNNING, JobState.CANCELED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED, JobState.PENDING},
    JobState.SUCCEEDED: set(),
    JobState.FAILED: set(),
    JobState.CANCELED: set(),
}


class EmailJobData(BaseModel):
    """Job payload for sending a templated email."""
    model_config = ConfigDict(extra="forbid")

    to: str = Field(..., min_length=3)
    template: str = Field(..., min_length=1)
    subject: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("to")
    @classmethod
    def _check_recipient(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("recipient must be an email address")
        return value


class ImportJobData(BaseModel):
    """Job payload for importing a file (path or URL)."""
    model_config = ConfigDict(extra="forbid")

    source: str = Field(..., min_length=1)
    format: Optional[str] = None
    user_id: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class VectorizationJobData(BaseModel):
    """Job payload for embedding a document, or some of its segments."""
    model_config = ConfigDict(extra="forbid")

    document_id: str = Field(..., min_length=1)
    dataset_id: Optional[str] = None
    segment_ids: List[str] = Field(default_factory=list)
    model: Optional[str] = None


class GenericJobData(BaseModel):
    """Named task with opaque arguments."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    args: List[Any] = Field(default_factory=list)
    kwargs: Dict[str, Any] = Field(default_factory=dict)


JobPayload = Union[EmailJobData, GenericJobData, ImportJobData, VectorizationJobData]

PAYLOAD_TYPES = {
    JobType.EMAIL: EmailJobData,
    JobType.GENERIC: GenericJobData,
    JobType.IMPORT: ImportJobData,
    JobType.VECTORIZATION: VectorizationJobData,
}

if set(PAYLOAD_TYPES) != set(JobType):
    raise RuntimeError("every JobType needs a payload class")


def parse_job_type(value) -> JobType:
    if isinstance(value, JobType):
        return value
    try:
        return JobType(str(value).lower())
    except ValueError:
        raise InvalidJobKind(f"Unknown job type '{value}'") from None


def validate_payload(job_type, payload) -> JobPayload:
    """
    Checks that 'payload' is a valid payload for 'job_type'.
    Accepts a payload model or a plain mapping (e.g. decoded JSON).
    Returns the payload model, raises InvalidJobKind otherwise.
    """
    job_type = parse_job_type(job_type)
    payload_cls = PAYLOAD_TYPES[job_type]

    if isinstance(payload, BaseModel):
        if type(payload) is not payload_cls:
            raise InvalidJobKind(
                f"Job type '{job_type.value}' expects {payload_cls.__name__}, "
                f"got {type(payload).__name__}"
            )
        return payload

    if isinstance(payload, Mapping):
        try:
            return payload_cls.model_validate(dict(payload))
        except ValidationError as e:
            raise InvalidJobKind(
                f"Invalid payload for job type '{job_type.value}': {e}"
            ) from e

    raise InvalidJobKind(
        f"Payload for job type '{job_type.value}' must be an object, "
        f"got {type(payload).__name__}"
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


@dataclass
class Job:
    id: str
    type: JobType
    payload: JobPayload
    state: JobState = JobState.PENDING
    attempts: int = 0
    max_retries: int = 3
    priority: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    retry_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None

    @classmethod
    def create(cls, job_type, payload, *, job_id: str = None, priority: int = 0,
               max_retries: int = 3) -> "Job":
        job_type = parse_job_type(job_type)
        now = utcnow()
        return cls(
            id=job_id or new_job_id(),
            type=job_type,
            payload=validate_payload(job_type, payload),
            priority=priority,
            max_retries=max_retries,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: JobState):
        """Moves the job to 'target', or raises InvalidTransition."""
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(self.id, self.state.value, target.value)
        self.state = target
        self.updated_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload.model_dump(mode="json"),
            "state": self.state.value,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "retry_at": self.retry_at.isoformat() if self.retry_at else None,
            "result": self.result,
            "error": self.error,
        }


# Outcome a worker reports for a job it ran
JobResult = namedtuple("JobResult", ["success", "output", "error", "retryable"],
                       defaults=(None, None, True))
