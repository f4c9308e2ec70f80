from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import allure
import pytest

from generation_broker.accounts.models import Tier
from generation_broker.clock import DayClock
from generation_broker.errors import StoreUnavailableError
from generation_broker.jobs.models import JobCreate
from generation_broker.jobs.provider import EchoGenerationProvider
from generation_broker.jobs.queue import JobQueue
from generation_broker.jobs.repository import JobRepository
from generation_broker.tokens.contribution import FixedContributionSource
from generation_broker.tokens.engine import TokenEconomy
from generation_broker.tokens.repository import TokenRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Store Unavailability"),
]

DAY = "2026-10-19"


@contextmanager
def _write_locked(db_path: Path) -> Iterator[None]:
    """Hold the database write lock from a foreign connection."""

    holder = sqlite3.connect(str(db_path), isolation_level=None)
    try:
        holder.execute("BEGIN IMMEDIATE")
        yield
        holder.execute("ROLLBACK")
    finally:
        holder.close()


@pytest.fixture()
def impatient_economy(db_path: Path, clock) -> Iterator[TokenEconomy]:
    repository = TokenRepository(db_path, busy_timeout_ms=1)
    yield TokenEconomy(
        repository=repository,
        contribution_source=FixedContributionSource(),
        clock=DayClock(now=clock),
    )
    repository.close()


@pytest.fixture()
def impatient_queue(db_path: Path, clock) -> Iterator[JobQueue]:
    repository = JobRepository(db_path, busy_timeout_ms=1, clock=clock)
    yield JobQueue(repository=repository, provider=EchoGenerationProvider())
    repository.close()


def test_reserve_on_locked_database_raises_retryable_error(
    seed_users,
    impatient_economy: TokenEconomy,
    db_path: Path,
) -> None:
    seed_users(("paula", Tier.PRO))
    impatient_economy.run_daily_cycle(DAY)

    with _write_locked(db_path), pytest.raises(StoreUnavailableError, match="reserve") as error:
        impatient_economy.reserve("paula", DAY)

    assert error.value.retryable
    # Nothing was debited, and the retried call succeeds once the lock is gone.
    assert impatient_economy.user_status("paula", DAY).tokens_used == 0
    assert impatient_economy.reserve("paula", DAY).ok


def test_enqueue_on_locked_database_raises_retryable_error(
    seed_users,
    impatient_queue: JobQueue,
    db_path: Path,
) -> None:
    seed_users(("paula", Tier.PRO))
    job = JobCreate(user_id="paula", day_key=DAY, payload={"prompt": "x"})

    with _write_locked(db_path), pytest.raises(StoreUnavailableError, match="enqueue"):
        impatient_queue.enqueue(job)

    assert impatient_queue.stats().total == 0
    assert impatient_queue.enqueue(job).user_id == "paula"
