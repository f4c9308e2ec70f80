"""CLI entrypoint for generation-broker."""

import logging
import os
from pathlib import Path

import rich_click as click

from generation_broker import __version__
from generation_broker.accounts.models import Tier
from generation_broker.controllers import (
    AccountsCliController,
    CommandResult,
    JobIdCommand,
    JobListCommand,
    JobPurgeCommand,
    JobsCliController,
    JobStatsCommand,
    JobSubmitCommand,
    QueueControlCommand,
    TokenDayCommand,
    TokensCliController,
    TokenUserCommand,
    UserAddCommand,
    UserListCommand,
    UserMutateCommand,
    WorkerRunCommand,
)
from generation_broker.jobs.models import JobStatus

click.rich_click.USE_MARKDOWN = True
ACCOUNTS_CONTROLLER = AccountsCliController()
TOKENS_CONTROLLER = TokensCliController()
JOBS_CONTROLLER = JobsCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (default: GEN_BROKER_DB_PATH).",
)
DAY_OPTION = click.option(
    "--day",
    "day_key",
    default=None,
    help="Day key YYYY-MM-DD (default: today in GEN_BROKER_TIMEZONE).",
)
TIER_CHOICE = click.Choice([tier.value for tier in Tier])


@click.group()
@click.version_option(version=__version__, prog_name="gen-broker")
def gen_broker() -> None:
    """Generation job broker with a shared daily token economy."""

    logging.basicConfig(
        level=os.getenv("GEN_BROKER_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@gen_broker.group()
def users() -> None:
    """User registry commands."""


@users.command("add")
@DB_PATH_OPTION
@click.option("--user-id", required=True, help="User id.")
@click.option("--name", "display_name", default=None, help="Display name (default: user id).")
@click.option("--tier", type=TIER_CHOICE, default=Tier.FREE.value, show_default=True)
def users_add(db_path: Path | None, user_id: str, display_name: str | None, tier: str) -> None:
    """Register a user."""

    _emit_result(
        ACCOUNTS_CONTROLLER.add_user(
            UserAddCommand(
                db_path=db_path,
                user_id=user_id,
                display_name=display_name,
                tier=tier,
            ),
        ),
    )


@users.command("tier")
@DB_PATH_OPTION
@click.option("--user-id", required=True, help="User id.")
@click.option("--tier", type=TIER_CHOICE, required=True)
def users_tier(db_path: Path | None, user_id: str, tier: str) -> None:
    """Change a user's subscription tier."""

    _emit_result(
        ACCOUNTS_CONTROLLER.set_tier(
            UserMutateCommand(db_path=db_path, user_id=user_id, tier=tier),
        ),
    )


@users.command("deactivate")
@DB_PATH_OPTION
@click.option("--user-id", required=True, help="User id.")
def users_deactivate(db_path: Path | None, user_id: str) -> None:
    """Soft-delete a user; reservations are refused from now on."""

    _emit_result(
        ACCOUNTS_CONTROLLER.deactivate(UserMutateCommand(db_path=db_path, user_id=user_id)),
    )


@users.command("list")
@DB_PATH_OPTION
@click.option("--active-only", is_flag=True, default=False, help="Hide deactivated users.")
def users_list(db_path: Path | None, active_only: bool) -> None:
    """List registered users."""

    _emit_lines(
        ACCOUNTS_CONTROLLER.list_users(UserListCommand(db_path=db_path, active_only=active_only)),
    )


@gen_broker.group()
def tokens() -> None:
    """Daily token economy commands."""


@tokens.command("daily")
@DB_PATH_OPTION
@DAY_OPTION
def tokens_daily(db_path: Path | None, day_key: str | None) -> None:
    """Run the day-boundary cycle: ensure pool, allocate, rotate unused free tokens."""

    _emit_lines(TOKENS_CONTROLLER.run_daily(TokenDayCommand(db_path=db_path, day_key=day_key)))


@tokens.command("pool")
@DB_PATH_OPTION
@DAY_OPTION
def tokens_pool(db_path: Path | None, day_key: str | None) -> None:
    """Show the daily pool."""

    _emit_lines(TOKENS_CONTROLLER.pool(TokenDayCommand(db_path=db_path, day_key=day_key)))


@tokens.command("status")
@DB_PATH_OPTION
@DAY_OPTION
@click.option("--user-id", required=True, help="User id.")
def tokens_status(db_path: Path | None, day_key: str | None, user_id: str) -> None:
    """Show one user's usage for the day."""

    _emit_result(
        TOKENS_CONTROLLER.user_status(
            TokenUserCommand(db_path=db_path, user_id=user_id, day_key=day_key),
        ),
    )


@tokens.command("analytics")
@DB_PATH_OPTION
@DAY_OPTION
def tokens_analytics(db_path: Path | None, day_key: str | None) -> None:
    """Show allocation and usage totals for the day."""

    _emit_lines(TOKENS_CONTROLLER.analytics(TokenDayCommand(db_path=db_path, day_key=day_key)))


@tokens.command("refund")
@DB_PATH_OPTION
@DAY_OPTION
@click.option("--user-id", required=True, help="User id.")
@click.option("--amount", type=click.IntRange(min=1), default=1, show_default=True)
def tokens_refund(db_path: Path | None, day_key: str | None, user_id: str, amount: int) -> None:
    """Give consumed tokens back to a user (operator action; failures never refund)."""

    _emit_result(
        TOKENS_CONTROLLER.refund(
            TokenUserCommand(db_path=db_path, user_id=user_id, day_key=day_key, amount=amount),
        ),
    )


@gen_broker.group()
def jobs() -> None:
    """Generation job commands."""


@jobs.command("submit")
@DB_PATH_OPTION
@click.option("--user-id", required=True, help="Submitting user id.")
@click.option("--prompt", required=True, help="Generation prompt.")
@click.option("--style", default=None, help="Musical style.")
@click.option("--title", default=None, help="Track title.")
@click.option("--custom-mode", is_flag=True, default=False, help="Use custom mode.")
@click.option("--instrumental", is_flag=True, default=False, help="No vocals.")
@click.option("--lyrics", default=None, help="Lyrics text.")
@click.option("--duration", type=click.IntRange(min=1), default=None, help="Seconds.")
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str,
    prompt: str,
    style: str | None,
    title: str | None,
    custom_mode: bool,
    instrumental: bool,
    lyrics: str | None,
    duration: int | None,
) -> None:
    """Reserve a token and enqueue a generation job."""

    _emit_result(
        JOBS_CONTROLLER.submit(
            JobSubmitCommand(
                db_path=db_path,
                user_id=user_id,
                prompt=prompt,
                style=style,
                title=title,
                custom_mode=custom_mode,
                instrumental=instrumental,
                lyrics=lyrics,
                duration=duration,
            ),
        ),
    )


@jobs.command("status")
@DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_status(db_path: Path | None, job_id: str) -> None:
    """Show job state, attempts and result or last error."""

    _emit_result(JOBS_CONTROLLER.status(JobIdCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a job that has not started yet."""

    _emit_result(JOBS_CONTROLLER.cancel(JobIdCommand(db_path=db_path, job_id=job_id)))


@jobs.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option("--user-id", default=None, help="Optional user filter.")
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def jobs_list(db_path: Path | None, status: str | None, user_id: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        JOBS_CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, user_id=user_id, limit=limit),
        ),
    )


@jobs.command("inspect")
@DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show a job with its event history."""

    _emit_result(JOBS_CONTROLLER.inspect(JobIdCommand(db_path=db_path, job_id=job_id)))


@jobs.command("stats")
@DB_PATH_OPTION
def jobs_stats(db_path: Path | None) -> None:
    """Show job counts per status, throughput, wait time and pause state."""

    _emit_lines(JOBS_CONTROLLER.stats(JobStatsCommand(db_path=db_path)))


@jobs.command("pause")
@DB_PATH_OPTION
def jobs_pause(db_path: Path | None) -> None:
    """Stop workers from claiming new jobs; running jobs finish."""

    _emit_lines(JOBS_CONTROLLER.pause(QueueControlCommand(db_path=db_path)))


@jobs.command("resume")
@DB_PATH_OPTION
def jobs_resume(db_path: Path | None) -> None:
    """Let workers claim jobs again."""

    _emit_lines(JOBS_CONTROLLER.resume(QueueControlCommand(db_path=db_path)))


@jobs.command("purge")
@DB_PATH_OPTION
@click.option(
    "--older-than-hours",
    type=click.IntRange(min=0),
    default=None,
    help="Retention window (default: GEN_BROKER_PURGE_AFTER_HOURS).",
)
def jobs_purge(db_path: Path | None, older_than_hours: int | None) -> None:
    """Delete completed and dead-lettered jobs past the retention window."""

    _emit_lines(
        JOBS_CONTROLLER.purge(JobPurgeCommand(db_path=db_path, older_than_hours=older_than_hours)),
    )


@gen_broker.group()
def worker() -> None:
    """Worker pool commands."""


@worker.command("run")
@DB_PATH_OPTION
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=None,
    help="Pool size (default: GEN_BROKER_WORKERS).",
)
@click.option("--once", is_flag=True, default=False, help="Exit once the queue is drained.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop each worker after this many jobs.",
)
def worker_run(db_path: Path | None, workers: int | None, once: bool, max_jobs: int | None) -> None:
    """Run the worker pool until interrupted."""

    _emit_lines(
        JOBS_CONTROLLER.run_worker(
            WorkerRunCommand(db_path=db_path, workers=workers, once=once, max_jobs=max_jobs),
        ),
    )


def _emit_result(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Command did not complete.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    gen_broker()
