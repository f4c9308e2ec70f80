"""Job lifecycle notifications delivered to explicit observers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol

from generation_broker.jobs.models import DeadLetterReason, FailureClass, JobStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JobTransition:
    """One committed state change of a job."""

    job_id: str
    user_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus
    attempt: int
    failure_class: FailureClass | None = None
    dead_letter_reason: DeadLetterReason | None = None
    error_summary: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status_to.is_terminal


class JobObserver(Protocol):
    """Receives every committed transition exactly once."""

    def on_transition(self, transition: JobTransition) -> None:
        """Handle one transition; must not raise for normal delivery."""


class LoggingJobObserver:
    """Write transitions to the module logger."""

    def on_transition(self, transition: JobTransition) -> None:
        if transition.status_to == JobStatus.DEAD_LETTERED:
            logger.warning(
                "Job %s dead-lettered after attempt %d (%s/%s): %s",
                transition.job_id,
                transition.attempt,
                transition.dead_letter_reason.value if transition.dead_letter_reason else "-",
                transition.failure_class.value if transition.failure_class else "-",
                transition.error_summary or "",
            )
            return
        logger.info(
            "Job %s %s -> %s (%s, attempt %d)",
            transition.job_id,
            transition.status_from.value if transition.status_from else "-",
            transition.status_to.value,
            transition.event_type,
            transition.attempt,
        )


@dataclass(slots=True)
class RecordingJobObserver:
    """Keep transitions in memory for later inspection."""

    transitions: list[JobTransition] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def on_transition(self, transition: JobTransition) -> None:
        with self._lock:
            self.transitions.append(transition)

    def terminal_for(self, job_id: str) -> list[JobTransition]:
        with self._lock:
            return [t for t in self.transitions if t.job_id == job_id and t.is_terminal]


class CompositeJobObserver:
    """Fan a transition out to several observers.

    An observer that raises is logged and skipped so that the others still
    receive the notification; the job state is already committed.
    """

    def __init__(self, observers: list[JobObserver] | None = None) -> None:
        self.observers: list[JobObserver] = list(observers or [])

    def on_transition(self, transition: JobTransition) -> None:
        for observer in self.observers:
            try:
                observer.on_transition(transition)
            except Exception:
                logger.exception(
                    "Observer %s failed for job %s",
                    type(observer).__name__,
                    transition.job_id,
                )
