"""Persistent queue repository for generation jobs."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from generation_broker.errors import UserNotFoundError
from generation_broker.jobs.models import (
    DeadLetterReason,
    FailureClass,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    QueueStats,
)
from generation_broker.storage.alembic_runner import upgrade_head
from generation_broker.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from generation_broker.storage.sqlmodel_models import (
    AppUser,
    GenerationJob,
    GenerationJobEvent,
    QueueControl,
)

QUEUE_CONTROL_NAME = "generation"
PROCESSING_RATE_WINDOW = timedelta(hours=1)


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Workers claim jobs and record outcomes through conditional updates keyed
    on the expected status, owner and attempt, so several processes can share
    one queue table.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._clock = clock

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def now(self) -> datetime:
        return self._clock()

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Create a queued job."""

        if payload.max_attempts <= 0:
            raise ValueError(f"max_attempts must be > 0, got {payload.max_attempts}")
        if payload.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {payload.timeout_seconds}")

        now = self._clock()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = GenerationJob(
                job_id=job_id,
                user_id=payload.user_id,
                day_key=payload.day_key,
                payload_json=json.dumps(payload.payload, ensure_ascii=False, sort_keys=True),
                priority=payload.priority,
                status=JobStatus.QUEUED.value,
                attempt=0,
                max_attempts=payload.max_attempts,
                timeout_seconds=payload.timeout_seconds,
                run_after=to_db_datetime(payload.run_after or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                owner = session.exec(
                    select(AppUser).where(AppUser.user_id == payload.user_id),
                ).one_or_none()
                if owner is None:
                    raise UserNotFoundError(f"User not found: {payload.user_id}") from error
                raise ValueError(f"Job already exists: {job_id}") from error
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                    "timeout_seconds": payload.timeout_seconds,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next_ready_job(self, *, worker_id: str) -> JobView | None:
        """Atomically claim the next job whose backoff deadline has passed.

        Order is priority ascending, then creation time, then insertion order.
        Nothing is claimed while the queue is paused.
        """

        while True:
            now = self._clock()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(GenerationJob)
                    .where(
                        GenerationJob.status == JobStatus.QUEUED.value,
                        GenerationJob.run_after <= to_db_datetime(now),
                        ~_queue_paused(),
                    )
                    .order_by(
                        col(GenerationJob.priority).asc(),
                        col(GenerationJob.created_at).asc(),
                        col(GenerationJob.id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(GenerationJob)
                    .where(
                        col(GenerationJob.job_id) == candidate.job_id,
                        col(GenerationJob.status) == JobStatus.QUEUED.value,
                        col(GenerationJob.attempt) == candidate.attempt,
                        ~_queue_paused(),
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        finished_at=None,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    )
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.expire_all()
                claimed = session.exec(
                    select(GenerationJob).where(GenerationJob.job_id == candidate.job_id),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.RUNNING,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                view = _to_job_view(claimed)
                session.commit()
                return view

    def touch_job(self, *, job_id: str, worker_id: str) -> bool:
        """Update heartbeat for a running job owned by ``worker_id``."""

        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.RUNNING.value,
                    col(GenerationJob.worker_id) == worker_id,
                )
                .values(heartbeat_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        attempt: int,
        result: dict[str, Any],
    ) -> bool:
        """Mark a running job as completed with the provider result."""

        now = self._clock()
        with Session(self.engine) as session:
            updated = session.exec(
                self._owned_running_update(job_id=job_id, worker_id=worker_id, attempt=attempt)
                .values(
                    status=JobStatus.COMPLETED.value,
                    result_json=json.dumps(result, ensure_ascii=False, sort_keys=True),
                    failure_class=None,
                    error_summary=None,
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.COMPLETED,
                details={"attempt": attempt},
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        attempt: int,
        run_after: datetime,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Requeue a running job, not claimable before ``run_after``.

        ``details`` (for example the failure classification) is merged into
        the ``retry_scheduled`` event.
        """

        now = self._clock()
        with Session(self.engine) as session:
            updated = session.exec(
                self._owned_running_update(job_id=job_id, worker_id=worker_id, attempt=attempt)
                .values(
                    status=JobStatus.QUEUED.value,
                    run_after=to_db_datetime(run_after),
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    started_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.QUEUED,
                details={
                    **(details or {}),
                    "attempt": attempt,
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "failure_class": failure_class.value,
                },
            )
            session.commit()
            return True

    def dead_letter_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        attempt: int,
        reason: DeadLetterReason,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move a running job to the final dead-letter state."""

        now = self._clock()
        with Session(self.engine) as session:
            updated = session.exec(
                self._owned_running_update(job_id=job_id, worker_id=worker_id, attempt=attempt)
                .values(
                    status=JobStatus.DEAD_LETTERED.value,
                    dead_letter_reason=reason.value,
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="dead_lettered",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.DEAD_LETTERED,
                details={
                    **(details or {}),
                    "attempt": attempt,
                    "reason": reason.value,
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                },
            )
            session.commit()
            return True

    def cancel_job(self, *, job_id: str) -> bool:
        """Remove a job that no worker has claimed yet."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(GenerationJob).where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.QUEUED.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def recover_stale_running_jobs(self, *, stale_after: timedelta) -> list[JobView]:
        """Requeue running jobs whose heartbeat is older than ``stale_after``.

        A stale job that already used all attempts is dead-lettered instead.
        """

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")

        now = self._clock()
        cutoff = to_db_datetime(now - stale_after)
        recovered: list[JobView] = []
        with Session(self.engine) as session:
            candidates = session.exec(
                select(GenerationJob).where(
                    GenerationJob.status == JobStatus.RUNNING.value,
                    or_(
                        col(GenerationJob.heartbeat_at) < cutoff,
                        col(GenerationJob.heartbeat_at).is_(None),
                    ),
                ),
            ).all()
            stale = [
                (row.job_id, row.worker_id, row.attempt, row.max_attempts) for row in candidates
            ]

        for job_id, worker_id, attempt, max_attempts in stale:
            exhausted = attempt >= max_attempts
            with Session(self.engine) as session:
                values: dict[str, object] = {
                    "failure_class": FailureClass.STALLED.value,
                    "error_summary": f"No heartbeat from worker {worker_id} since before {cutoff}",
                    "updated_at": to_db_datetime(now),
                }
                if exhausted:
                    values.update(
                        status=JobStatus.DEAD_LETTERED.value,
                        dead_letter_reason=DeadLetterReason.ATTEMPTS_EXHAUSTED.value,
                        finished_at=to_db_datetime(now),
                    )
                else:
                    values.update(
                        status=JobStatus.QUEUED.value,
                        run_after=to_db_datetime(now),
                        started_at=None,
                        heartbeat_at=None,
                        worker_id=None,
                    )
                result = session.exec(
                    sa_update(GenerationJob)
                    .where(
                        col(GenerationJob.job_id) == job_id,
                        col(GenerationJob.status) == JobStatus.RUNNING.value,
                        col(GenerationJob.attempt) == attempt,
                        or_(
                            col(GenerationJob.heartbeat_at) < cutoff,
                            col(GenerationJob.heartbeat_at).is_(None),
                        ),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                status_to = JobStatus.DEAD_LETTERED if exhausted else JobStatus.QUEUED
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="stale_recovered",
                    status_from=JobStatus.RUNNING,
                    status_to=status_to,
                    details={"worker_id": worker_id, "attempt": attempt},
                )
                session.commit()
                row = session.exec(
                    select(GenerationJob).where(GenerationJob.job_id == job_id),
                ).one()
                recovered.append(_to_job_view(row))
        return recovered

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status and user."""

        with Session(self.engine) as session:
            statement = select(GenerationJob)
            if status is not None:
                statement = statement.where(GenerationJob.status == status.value)
            if user_id is not None:
                statement = statement.where(GenerationJob.user_id == user_id)
            statement = statement.order_by(
                col(GenerationJob.created_at).desc(),
                col(GenerationJob.id).desc(),
            ).limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job with its event stream."""

        with Session(self.engine) as session:
            job = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(GenerationJobEvent)
                .where(GenerationJobEvent.job_id == job_id)
                .order_by(
                    col(GenerationJobEvent.created_at).asc(),
                    col(GenerationJobEvent.id).asc(),
                ),
            ).all()

        events: list[JobEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                    status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=_to_job_view(job), events=events)

    def queue_stats(self) -> QueueStats:
        """Counts per status plus throughput over the last hour and average wait."""

        since = to_db_datetime(self._clock() - PROCESSING_RATE_WINDOW)
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob.status, func.count()).group_by(GenerationJob.status),
            ).all()
            completed_recently = session.exec(
                select(func.count()).where(
                    GenerationJob.status == JobStatus.COMPLETED.value,
                    col(GenerationJob.finished_at) >= since,
                ),
            ).one()
            waits = session.exec(
                select(GenerationJob.created_at, GenerationJob.started_at).where(
                    GenerationJob.status == JobStatus.COMPLETED.value,
                    col(GenerationJob.started_at).is_not(None),
                ),
            ).all()
            paused = self._is_paused(session)
        counts = {status: int(count) for status, count in rows}
        wait_seconds = [
            (to_utc_aware_datetime(started) - to_utc_aware_datetime(created)).total_seconds()
            for created, started in waits
        ]
        return QueueStats(
            queued=counts.get(JobStatus.QUEUED.value, 0),
            running=counts.get(JobStatus.RUNNING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            dead_lettered=counts.get(JobStatus.DEAD_LETTERED.value, 0),
            completed_last_hour=int(completed_recently),
            avg_wait_seconds=sum(wait_seconds) / len(wait_seconds) if wait_seconds else 0.0,
            paused=paused,
        )

    def is_paused(self) -> bool:
        with Session(self.engine) as session:
            return self._is_paused(session)

    def set_paused(self, paused: bool) -> bool:
        """Flip the shared pause flag; returns False when it already had that value."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueControl)
                .where(
                    col(QueueControl.name) == QUEUE_CONTROL_NAME,
                    col(QueueControl.paused) != paused,
                )
                .values(paused=paused, paused_at=now if paused else None, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def purge_finished(self, *, older_than: timedelta) -> int:
        """Delete terminal jobs finished before ``now - older_than``."""

        cutoff = to_db_datetime(self._clock() - older_than)
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(GenerationJob).where(
                    col(GenerationJob.status).in_(
                        [JobStatus.COMPLETED.value, JobStatus.DEAD_LETTERED.value],
                    ),
                    col(GenerationJob.finished_at) < cutoff,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _is_paused(self, session: Session) -> bool:
        paused = session.exec(
            select(QueueControl.paused).where(QueueControl.name == QUEUE_CONTROL_NAME),
        ).one_or_none()
        return bool(paused)

    def _owned_running_update(self, *, job_id: str, worker_id: str, attempt: int):
        return (
            sa_update(GenerationJob)
            .where(
                col(GenerationJob.job_id) == job_id,
                col(GenerationJob.status) == JobStatus.RUNNING.value,
                col(GenerationJob.worker_id) == worker_id,
                col(GenerationJob.attempt) == attempt,
            )
            .execution_options(synchronize_session=False)
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            GenerationJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _queue_paused():
    return (
        select(QueueControl.name)
        .where(
            col(QueueControl.name) == QUEUE_CONTROL_NAME,
            col(QueueControl.paused).is_(True),
        )
        .exists()
    )


def _to_job_view(row: GenerationJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        day_key=row.day_key,
        payload=json.loads(row.payload_json),
        priority=row.priority,
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        timeout_seconds=row.timeout_seconds,
        run_after=to_utc_aware_datetime(row.run_after),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        dead_letter_reason=(
            DeadLetterReason(row.dead_letter_reason)
            if row.dead_letter_reason is not None
            else None
        ),
        worker_id=row.worker_id,
        error_summary=row.error_summary,
        result=json.loads(row.result_json) if row.result_json else None,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
