"""Controllers for broker CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from generation_broker.accounts.models import Tier, UserCreate
from generation_broker.admission import Denial, GenerationRequest
from generation_broker.config import Settings
from generation_broker.errors import JobNotFoundError, UserNotFoundError
from generation_broker.jobs.models import JobStatus, JobView
from generation_broker.runtime import BrokerRuntime, open_runtime


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus whether the command achieved its goal."""

    lines: list[str]
    success: bool = True


@dataclass(slots=True)
class UserAddCommand:
    """CLI input for user registration."""

    db_path: Path | None
    user_id: str
    display_name: str | None
    tier: str


@dataclass(slots=True)
class UserMutateCommand:
    """CLI input for tier change or deactivation."""

    db_path: Path | None
    user_id: str
    tier: str | None = None


@dataclass(slots=True)
class UserListCommand:
    db_path: Path | None
    active_only: bool


@dataclass(slots=True)
class TokenDayCommand:
    """CLI input for pool, allocation and analytics operations on one day."""

    db_path: Path | None
    day_key: str | None


@dataclass(slots=True)
class TokenUserCommand:
    """CLI input for per-user token status and refunds."""

    db_path: Path | None
    user_id: str
    day_key: str | None
    amount: int = 1


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for generation submission."""

    db_path: Path | None
    user_id: str
    prompt: str
    style: str | None
    title: str | None
    custom_mode: bool
    instrumental: bool
    lyrics: str | None
    duration: int | None


@dataclass(slots=True)
class JobIdCommand:
    """CLI input for status, inspect and cancel."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    user_id: str | None
    limit: int


@dataclass(slots=True)
class JobStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class QueueControlCommand:
    db_path: Path | None


@dataclass(slots=True)
class JobPurgeCommand:
    db_path: Path | None
    older_than_hours: int | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker pool execution."""

    db_path: Path | None
    workers: int | None
    once: bool
    max_jobs: int | None


class AccountsCliController:
    """User registry operations."""

    def add_user(self, command: UserAddCommand) -> CommandResult:
        tier = Tier.parse(command.tier)
        with _runtime(command.db_path) as runtime:
            try:
                user = runtime.users.add_user(
                    UserCreate(
                        user_id=command.user_id,
                        display_name=command.display_name or command.user_id,
                        tier=tier,
                    ),
                )
            except ValueError as error:
                return CommandResult(lines=[str(error)], success=False)
        return CommandResult(
            lines=[f"User added: user_id={user.user_id} tier={user.tier.value}"],
        )

    def set_tier(self, command: UserMutateCommand) -> CommandResult:
        tier = Tier.parse(command.tier or "")
        with _runtime(command.db_path) as runtime:
            try:
                runtime.users.set_tier(user_id=command.user_id, tier=tier)
            except UserNotFoundError as error:
                return CommandResult(lines=[str(error)], success=False)
        return CommandResult(
            lines=[
                f"User {command.user_id} moved to tier {tier.value}; "
                "applies from the next allocation pass.",
            ],
        )

    def deactivate(self, command: UserMutateCommand) -> CommandResult:
        with _runtime(command.db_path) as runtime:
            try:
                runtime.users.set_active(user_id=command.user_id, active=False)
            except UserNotFoundError as error:
                return CommandResult(lines=[str(error)], success=False)
        return CommandResult(lines=[f"User deactivated: {command.user_id}"])

    def list_users(self, command: UserListCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            users = runtime.users.list_users(active_only=command.active_only)
        lines = [f"Users: {len(users)}"]
        for user in users:
            lines.append(
                f"  {user.user_id} tier={user.tier.value} "
                f"active={'yes' if user.active else 'no'} name={user.display_name}",
            )
        return lines


class TokensCliController:
    """Daily pool, allocation and rotation operations."""

    def run_daily(self, command: TokenDayCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            summary = runtime.economy.run_daily_cycle(command.day_key)
        pool = summary.pool
        rotation = summary.rotation
        return [
            f"Daily cycle {pool.day_key}: pool free={pool.free_tokens} paid={pool.paid_tokens} "
            f"contributed={pool.contributed_tokens}",
            f"Allocations: {summary.allocations}",
            (
                f"Rotation: unused_free={rotation.unused_free_tokens} "
                f"distributed={rotation.distributed_tokens} "
                f"recipients={len(rotation.recipients)}"
                if rotation.applied
                else "Rotation: already applied"
            ),
        ]

    def pool(self, command: TokenDayCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            pool = runtime.economy.pool_status(command.day_key)
        rotated_at = pool.last_rotation.isoformat() if pool.last_rotation else "-"
        return [
            f"Pool: {pool.day_key}",
            f"Free tokens: {pool.free_tokens}",
            f"Paid tokens: {pool.paid_tokens}",
            f"Total tokens: {pool.total_tokens}",
            f"Contributed: {pool.contributed_tokens} from {pool.contributor_count} contributors",
            f"Rotated: {pool.free_tokens_rotated} at {rotated_at}",
        ]

    def user_status(self, command: TokenUserCommand) -> CommandResult:
        with _runtime(command.db_path) as runtime:
            try:
                usage = runtime.economy.user_status(command.user_id, command.day_key)
            except UserNotFoundError as error:
                return CommandResult(lines=[str(error)], success=False)
        return CommandResult(
            lines=[
                f"User: {usage.user_id} ({usage.tier.value}) on {usage.day_key}",
                f"Used: {usage.tokens_used}/{usage.total_granted}",
                f"Remaining: {usage.tokens_remaining}",
            ],
        )

    def analytics(self, command: TokenDayCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            analytics = runtime.economy.analytics(command.day_key)
        return [
            f"Analytics: {analytics.day_key}",
            f"Allocated: {analytics.total_allocated}",
            f"Used: {analytics.total_used}",
            f"Remaining: {analytics.total_remaining}",
            f"Utilization: {analytics.utilization_rate:.1f}%",
            f"Users: free={analytics.free_users} paid={analytics.paid_users}",
        ]

    def refund(self, command: TokenUserCommand) -> CommandResult:
        with _runtime(command.db_path) as runtime:
            refunded = runtime.economy.refund(command.user_id, command.day_key, command.amount)
        if not refunded:
            return CommandResult(
                lines=[f"Nothing to refund for {command.user_id}: usage below {command.amount}"],
                success=False,
            )
        return CommandResult(lines=[f"Refunded {command.amount} tokens to {command.user_id}"])


class JobsCliController:
    """Submission, inspection and worker operations."""

    def submit(self, command: JobSubmitCommand) -> CommandResult:
        request = GenerationRequest(
            prompt=command.prompt,
            style=command.style,
            title=command.title,
            custom_mode=command.custom_mode,
            instrumental=command.instrumental,
            lyrics=command.lyrics,
            duration=command.duration,
        )
        with _runtime(command.db_path) as runtime:
            outcome = runtime.admission.submit(command.user_id, request)
        if isinstance(outcome, Denial):
            return CommandResult(
                lines=[f"Denied: {outcome.reason.value} ({outcome.message})"],
                success=False,
            )
        return CommandResult(
            lines=[
                f"Job submitted: job_id={outcome.job_id} priority={outcome.priority} "
                f"estimated_seconds={outcome.estimated_seconds}",
                f"Tokens remaining today: {outcome.tokens_remaining}",
            ],
        )

    def status(self, command: JobIdCommand) -> CommandResult:
        with _runtime(command.db_path) as runtime:
            job = runtime.admission.get_status(command.job_id)
        if job is None:
            return CommandResult(lines=[f"Job not found: {command.job_id}"], success=False)
        return CommandResult(lines=_job_status_lines(job))

    def cancel(self, command: JobIdCommand) -> CommandResult:
        with _runtime(command.db_path) as runtime:
            cancelled = runtime.queue.cancel(command.job_id)
        if cancelled:
            return CommandResult(lines=[f"Job cancelled: {command.job_id}"])
        return CommandResult(
            lines=[f"Job {command.job_id} is not queued; only queued jobs can be cancelled."],
            success=False,
        )

    def list_jobs(self, command: JobListCommand) -> list[str]:
        status = JobStatus(command.status) if command.status else None
        with _runtime(command.db_path) as runtime:
            jobs = runtime.queue.list_jobs(
                status=status,
                user_id=command.user_id,
                limit=command.limit,
            )
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} user={job.user_id} status={job.status.value} "
                f"priority={job.priority} attempt={job.attempt}/{job.max_attempts} "
                f"run_after={job.run_after.isoformat()}",
            )
        return lines

    def inspect(self, command: JobIdCommand) -> CommandResult:
        with _runtime(command.db_path) as runtime:
            try:
                details = runtime.queue.details(command.job_id)
            except JobNotFoundError as error:
                return CommandResult(lines=[str(error)], success=False)

        job = details.job
        lines = [
            *_job_status_lines(job),
            f"Payload: {json.dumps(job.payload, ensure_ascii=False, sort_keys=True)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return CommandResult(lines=lines)

    def stats(self, command: JobStatsCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            stats = runtime.queue.stats()
        return [
            f"Queued: {stats.queued}",
            f"Running: {stats.running}",
            f"Completed: {stats.completed}",
            f"Dead-lettered: {stats.dead_lettered}",
            f"Success rate: {stats.success_rate:.1f}%",
            f"Processing rate: {stats.processing_rate:.2f} jobs/min (last hour)",
            f"Average wait: {stats.avg_wait_seconds:.1f}s",
            f"Paused: {'yes' if stats.paused else 'no'}",
        ]

    def pause(self, command: QueueControlCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            changed = runtime.queue.pause()
        return ["Queue paused." if changed else "Queue was already paused."]

    def resume(self, command: QueueControlCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            changed = runtime.queue.resume()
        return ["Queue resumed." if changed else "Queue was not paused."]

    def purge(self, command: JobPurgeCommand) -> list[str]:
        older_than = (
            timedelta(hours=command.older_than_hours)
            if command.older_than_hours is not None
            else None
        )
        with _runtime(command.db_path) as runtime:
            deleted = runtime.queue.purge_finished(older_than=older_than)
        return [f"Purged finished jobs: {deleted}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            summary = runtime.queue.run(
                worker_count=command.workers,
                max_jobs_per_worker=command.max_jobs,
                max_idle_polls=1 if command.once else None,
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"retried={summary.retried} dead_lettered={summary.dead_lettered} "
            f"recovered={summary.recovered} errors={summary.errors}",
        ]


def _job_status_lines(job: JobView) -> list[str]:
    lines = [
        f"Job: {job.job_id}",
        f"User: {job.user_id}",
        f"Status: {job.status.value}",
        f"Attempt: {job.attempt}/{job.max_attempts}",
        f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
        f"Error: {job.error_summary or '-'}",
    ]
    if job.reason_code is not None:
        lines.append(f"Reason: {job.reason_code}")
    if job.result is not None:
        lines.append(f"Result: {json.dumps(job.result, ensure_ascii=False, sort_keys=True)}")
    return lines


@contextmanager
def _runtime(db_path: Path | None) -> Iterator[BrokerRuntime]:
    settings = Settings.from_env(db_path=db_path)
    with open_runtime(settings) as runtime:
        yield runtime
