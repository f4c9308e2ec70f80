"""Queue worker that executes generation jobs against the provider."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from generation_broker.jobs.failure_classifier import (
    ProviderFailureClassification,
    classify_provider_failure,
)
from generation_broker.jobs.models import DeadLetterReason, JobStatus, JobView
from generation_broker.jobs.observer import JobObserver, JobTransition, LoggingJobObserver
from generation_broker.jobs.provider.base import GenerationProvider
from generation_broker.jobs.repository import JobRepository
from generation_broker.storage.common import translate_store_errors

logger = logging.getLogger(__name__)

ERROR_SUMMARY_LIMIT = 500


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    recovered: int = 0
    idle_polls: int = 0
    errors: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.recovered += other.recovered
        self.idle_polls += other.idle_polls
        self.errors += other.errors


def compute_backoff_seconds(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    """Delay before the retry that follows failed ``attempt`` (1-based)."""

    return min(max_seconds, base_seconds * (2 ** max(attempt - 1, 0)))


class JobWorker:
    """Consumes queued jobs and executes them via the generation provider."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        provider: GenerationProvider,
        worker_id: str,
        observer: JobObserver | None = None,
        poll_interval_seconds: float = 1.0,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 300.0,
        stale_after_seconds: int = 1800,
        heartbeat_interval_seconds: float = 30.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.worker_id = worker_id
        self.observer = observer or LoggingJobObserver()
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_after_seconds = stale_after_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.stop_event = stop_event or threading.Event()

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def request_stop(self) -> None:
        self.stop_event.set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        summary.recovered = self._recover_stale_jobs()
        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._notify(job, event_type="claimed", status_from=JobStatus.QUEUED)
        logger.debug(
            "Worker %s executing job %s attempt %d",
            self.worker_id,
            job.job_id,
            job.attempt,
        )

        try:
            with self._heartbeat(job):
                result = self.provider.generate(job.payload, timeout_seconds=job.timeout_seconds)
        except Exception as error:  # noqa: BLE001
            classification = classify_provider_failure(error)
            self._handle_failure(
                job=job,
                classification=classification,
                error_summary=_summarize(error),
                summary=summary,
            )
            return summary

        with translate_store_errors("complete_job"):
            completed = self.repository.complete_job(
                job_id=job.job_id,
                worker_id=self.worker_id,
                attempt=job.attempt,
                result=result,
            )
        if completed:
            summary.succeeded = 1
            self._notify(
                job,
                event_type="completed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.COMPLETED,
            )
        else:
            logger.warning(
                "Worker %s lost ownership of job %s before completion",
                self.worker_id,
                job.job_id,
            )
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run worker loop until stopped, idle or ``max_jobs`` reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = keep polling until stopped).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while True:
            if self.stop_requested:
                return aggregate
            if max_jobs is not None and aggregate.processed >= max_jobs:
                return aggregate

            try:
                summary = self.run_once()
            except Exception:
                logger.exception("Worker %s iteration failed", self.worker_id)
                aggregate.errors += 1
                self._sleep_with_stop(self.poll_interval_seconds)
                continue
            aggregate.merge(summary)

            if summary.processed == 0:
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    return aggregate
                self._sleep_with_stop(self.poll_interval_seconds)
                continue
            consecutive_idle = 0

    def _claim_job(self) -> JobView | None:
        if self.stop_requested:
            return None
        with translate_store_errors("claim_next_ready_job"):
            return self.repository.claim_next_ready_job(worker_id=self.worker_id)

    def _recover_stale_jobs(self) -> int:
        if self.stale_after_seconds <= 0:
            return 0
        with translate_store_errors("recover_stale_running_jobs"):
            recovered = self.repository.recover_stale_running_jobs(
                stale_after=timedelta(seconds=self.stale_after_seconds),
            )
        for job in recovered:
            self._notify(job, event_type="stale_recovered", status_from=JobStatus.RUNNING)
        return len(recovered)

    def _handle_failure(
        self,
        *,
        job: JobView,
        classification: ProviderFailureClassification,
        error_summary: str,
        summary: WorkerRunSummary,
    ) -> None:
        if classification.retryable and job.attempt < job.max_attempts:
            delay = compute_backoff_seconds(
                job.attempt,
                base_seconds=self.retry_base_seconds,
                max_seconds=self.retry_max_seconds,
            )
            with translate_store_errors("schedule_retry"):
                retried = self.repository.schedule_retry(
                    job_id=job.job_id,
                    worker_id=self.worker_id,
                    attempt=job.attempt,
                    run_after=self.repository.now() + timedelta(seconds=delay),
                    failure_class=classification.failure_class,
                    error_summary=error_summary,
                    details=classification.to_event_details(),
                )
            if retried:
                summary.retried = 1
                logger.info(
                    "Job %s attempt %d failed (%s); retrying in %.1fs",
                    job.job_id,
                    job.attempt,
                    classification.failure_class.value,
                    delay,
                )
                self._notify(
                    job,
                    event_type="retry_scheduled",
                    status_from=JobStatus.RUNNING,
                    status_to=JobStatus.QUEUED,
                    classification=classification,
                    error_summary=error_summary,
                )
            return

        reason = (
            DeadLetterReason.ATTEMPTS_EXHAUSTED
            if classification.retryable
            else DeadLetterReason.NON_RETRYABLE
        )
        with translate_store_errors("dead_letter_job"):
            dead_lettered = self.repository.dead_letter_job(
                job_id=job.job_id,
                worker_id=self.worker_id,
                attempt=job.attempt,
                reason=reason,
                failure_class=classification.failure_class,
                error_summary=error_summary,
                details=classification.to_event_details(),
            )
        if dead_lettered:
            summary.dead_lettered = 1
            self._notify(
                job,
                event_type="dead_lettered",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.DEAD_LETTERED,
                classification=classification,
                error_summary=error_summary,
                dead_letter_reason=reason,
            )

    def _notify(  # noqa: PLR0913
        self,
        job: JobView,
        *,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None = None,
        classification: ProviderFailureClassification | None = None,
        error_summary: str | None = None,
        dead_letter_reason: DeadLetterReason | None = None,
    ) -> None:
        status_to = status_to or job.status
        if status_to == JobStatus.COMPLETED:
            job_failure, job_reason, job_error = None, None, None
        else:
            job_failure, job_reason, job_error = (
                job.failure_class,
                job.dead_letter_reason,
                job.error_summary,
            )
        self.observer.on_transition(
            JobTransition(
                job_id=job.job_id,
                user_id=job.user_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                attempt=job.attempt,
                failure_class=(
                    classification.failure_class
                    if classification is not None
                    else job_failure
                ),
                dead_letter_reason=dead_letter_reason or job_reason,
                error_summary=error_summary or job_error,
            ),
        )

    @contextmanager
    def _heartbeat(self, job: JobView) -> Iterator[None]:
        if self.heartbeat_interval_seconds <= 0:
            yield
            return

        finished = threading.Event()

        def _beat() -> None:
            while not finished.wait(self.heartbeat_interval_seconds):
                try:
                    alive = self.repository.touch_job(job_id=job.job_id, worker_id=self.worker_id)
                except SQLAlchemyError as error:
                    logger.warning("Heartbeat for job %s failed: %s", job.job_id, error)
                    continue
                if not alive:
                    logger.warning("Job %s is no longer owned by %s", job.job_id, self.worker_id)
                    return

        thread = threading.Thread(target=_beat, name=f"heartbeat-{job.job_id}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            finished.set()
            thread.join()

    def _sleep_with_stop(self, seconds: float) -> None:
        self.stop_event.wait(max(0.0, seconds))


@contextmanager
def stop_on_signals(stop_event: threading.Event) -> Iterator[None]:
    """Set ``stop_event`` on SIGINT/SIGTERM while the block runs."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s; finishing in-flight jobs before exit", name)
        stop_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _summarize(error: BaseException) -> str:
    text = str(error).strip() or type(error).__name__
    return text[:ERROR_SUMMARY_LIMIT]
