"""Fixed-size pool of job workers sharing one stop signal."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from generation_broker.jobs.worker import JobWorker, WorkerRunSummary, stop_on_signals

logger = logging.getLogger(__name__)

DEFAULT_WORKER_COUNT = 5


class WorkerPool:
    """Run ``worker_count`` workers in threads over the shared job table.

    Exclusive claims come from the repository's conditional updates, so
    several pools (or processes) may serve the same database.
    """

    def __init__(
        self,
        *,
        worker_factory: Callable[[str, threading.Event], JobWorker],
        worker_count: int = DEFAULT_WORKER_COUNT,
        worker_id_prefix: str = "worker",
    ) -> None:
        if worker_count <= 0:
            raise ValueError(f"worker_count must be > 0, got {worker_count}")
        self.worker_factory = worker_factory
        self.worker_count = worker_count
        self.worker_id_prefix = worker_id_prefix
        self.stop_event = threading.Event()

    def stop(self) -> None:
        self.stop_event.set()

    def run(
        self,
        *,
        max_jobs_per_worker: int | None = None,
        max_idle_polls: int | None = None,
        handle_signals: bool = True,
    ) -> WorkerRunSummary:
        """Start all workers and block until every one of them returns."""

        workers = [
            self.worker_factory(f"{self.worker_id_prefix}-{index}", self.stop_event)
            for index in range(1, self.worker_count + 1)
        ]
        summaries: list[WorkerRunSummary] = []
        summaries_lock = threading.Lock()

        def _run(worker: JobWorker) -> None:
            summary = worker.run_loop(max_jobs=max_jobs_per_worker, max_idle_polls=max_idle_polls)
            with summaries_lock:
                summaries.append(summary)

        threads = [
            threading.Thread(target=_run, args=(worker,), name=worker.worker_id, daemon=True)
            for worker in workers
        ]
        logger.info("Starting %d workers", len(threads))
        if handle_signals:
            with stop_on_signals(self.stop_event):
                self._join(threads)
        else:
            self._join(threads)

        aggregate = WorkerRunSummary()
        for summary in summaries:
            aggregate.merge(summary)
        logger.info(
            "Workers stopped: processed=%d succeeded=%d retried=%d dead_lettered=%d",
            aggregate.processed,
            aggregate.succeeded,
            aggregate.retried,
            aggregate.dead_lettered,
        )
        return aggregate

    def _join(self, threads: list[threading.Thread]) -> None:
        for thread in threads:
            thread.start()
        for thread in threads:
            # Short joins keep the main thread responsive to signals.
            while thread.is_alive():
                thread.join(timeout=0.2)
