"""Domain models for the generation job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.DEAD_LETTERED}


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    RATE_LIMITED = "rate_limited"
    PROVIDER_TRANSIENT = "provider_transient"
    INVALID_PAYLOAD = "invalid_payload"
    POLICY_REJECTED = "policy_rejected"
    ACCESS_OR_AUTH = "access_or_auth"
    PROVIDER_TERMINAL = "provider_terminal"
    STALLED = "stalled"


RETRYABLE_FAILURE_CLASSES: frozenset[FailureClass] = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.TRANSPORT,
        FailureClass.RATE_LIMITED,
        FailureClass.PROVIDER_TRANSIENT,
        FailureClass.STALLED,
    },
)


class DeadLetterReason(str, Enum):
    """Why a job ended in the dead-letter state."""

    NON_RETRYABLE = "non_retryable"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a generation job."""

    user_id: str
    day_key: str
    payload: dict[str, Any]
    priority: int = 3
    max_attempts: int = 3
    timeout_seconds: int = 120
    job_id: str | None = None
    run_after: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job state for status polls and worker logic."""

    job_id: str
    user_id: str
    day_key: str
    payload: dict[str, Any]
    priority: int
    status: JobStatus
    attempt: int
    max_attempts: int
    timeout_seconds: int
    run_after: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    failure_class: FailureClass | None
    dead_letter_reason: DeadLetterReason | None
    worker_id: str | None
    error_summary: str | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime

    @property
    def reason_code(self) -> str | None:
        """Stable code for a dead-lettered job, e.g. ``non_retryable:invalid_payload``."""

        if self.status != JobStatus.DEAD_LETTERED or self.dead_letter_reason is None:
            return None
        if self.failure_class is None:
            return self.dead_letter_reason.value
        return f"{self.dead_letter_reason.value}:{self.failure_class.value}"


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class QueueStats:
    """Job counts per status plus throughput and wait-time metrics."""

    queued: int = 0
    running: int = 0
    completed: int = 0
    dead_lettered: int = 0
    completed_last_hour: int = 0
    avg_wait_seconds: float = 0.0
    paused: bool = False

    @property
    def total(self) -> int:
        return self.queued + self.running + self.completed + self.dead_lettered

    @property
    def success_rate(self) -> float:
        finished = self.completed + self.dead_lettered
        if finished == 0:
            return 0.0
        return self.completed / finished * 100

    @property
    def processing_rate(self) -> float:
        """Jobs completed per minute, averaged over the last hour."""

        return self.completed_last_hour / 60
