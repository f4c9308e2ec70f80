"""Job queue facade: enqueue, inspect, cancel and run generation jobs."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta

from generation_broker.config import QueueSettings
from generation_broker.errors import JobNotFoundError
from generation_broker.jobs.models import JobCreate, JobDetails, JobStatus, JobView, QueueStats
from generation_broker.jobs.observer import CompositeJobObserver, JobObserver, LoggingJobObserver
from generation_broker.jobs.pool import WorkerPool
from generation_broker.jobs.provider.base import GenerationProvider
from generation_broker.jobs.repository import JobRepository
from generation_broker.jobs.worker import JobWorker, WorkerRunSummary
from generation_broker.storage.common import translate_store_errors

logger = logging.getLogger(__name__)


class JobQueue:
    """Persistent priority queue with a bounded worker pool."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        provider: GenerationProvider,
        settings: QueueSettings | None = None,
        observer: JobObserver | None = None,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.settings = settings or QueueSettings()
        self.observer = observer or CompositeJobObserver([LoggingJobObserver()])

    def enqueue(self, payload: JobCreate) -> JobView:
        with translate_store_errors("enqueue"):
            job = self.repository.enqueue_job(payload)
        logger.info(
            "Enqueued job %s for user %s (priority %d)",
            job.job_id,
            job.user_id,
            job.priority,
        )
        return job

    def status(self, job_id: str) -> JobView | None:
        with translate_store_errors("status"):
            return self.repository.get_job(job_id)

    def cancel(self, job_id: str) -> bool:
        """Remove a job that has not been dispatched; in-flight jobs are left alone."""

        with translate_store_errors("cancel"):
            cancelled = self.repository.cancel_job(job_id=job_id)
        if cancelled:
            logger.info("Cancelled queued job %s", job_id)
        return cancelled

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        if limit <= 0:
            raise ValueError(f"limit must be > 0, got {limit}")
        with translate_store_errors("list_jobs"):
            return self.repository.list_jobs(status=status, user_id=user_id, limit=limit)

    def details(self, job_id: str) -> JobDetails:
        with translate_store_errors("get_job_details"):
            details = self.repository.get_job_details(job_id=job_id)
        if details is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return details

    def stats(self) -> QueueStats:
        with translate_store_errors("queue_stats"):
            return self.repository.queue_stats()

    def pause(self) -> bool:
        """Stop workers in every process from claiming; running jobs finish."""

        with translate_store_errors("pause"):
            changed = self.repository.set_paused(True)
        if changed:
            logger.warning("Job queue paused")
        return changed

    def resume(self) -> bool:
        with translate_store_errors("resume"):
            changed = self.repository.set_paused(False)
        if changed:
            logger.info("Job queue resumed")
        return changed

    def purge_finished(self, *, older_than: timedelta | None = None) -> int:
        """Delete completed and dead-lettered jobs older than the retention window."""

        window = older_than or timedelta(hours=self.settings.purge_after_hours)
        with translate_store_errors("purge_finished"):
            deleted = self.repository.purge_finished(older_than=window)
        if deleted:
            logger.info("Purged %d finished jobs older than %s", deleted, window)
        return deleted

    def build_worker(self, worker_id: str, stop_event: threading.Event | None = None) -> JobWorker:
        settings = self.settings
        return JobWorker(
            repository=self.repository,
            provider=self.provider,
            worker_id=worker_id,
            observer=self.observer,
            poll_interval_seconds=settings.poll_interval_seconds,
            retry_base_seconds=settings.retry_base_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            stale_after_seconds=settings.stale_after_seconds,
            heartbeat_interval_seconds=settings.heartbeat_interval_seconds,
            stop_event=stop_event,
        )

    def run(
        self,
        *,
        worker_count: int | None = None,
        max_jobs_per_worker: int | None = None,
        max_idle_polls: int | None = None,
        handle_signals: bool = True,
    ) -> WorkerRunSummary:
        """Run the worker pool until stopped or, with ``max_idle_polls``, until drained."""

        pool = WorkerPool(
            worker_factory=self.build_worker,
            worker_count=worker_count or self.settings.worker_count,
        )
        return pool.run(
            max_jobs_per_worker=max_jobs_per_worker,
            max_idle_polls=max_idle_polls,
            handle_signals=handle_signals,
        )
