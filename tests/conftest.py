"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from generation_broker.accounts.models import Tier, UserCreate
from generation_broker.accounts.repository import UserRepository
from generation_broker.clock import DayClock
from generation_broker.jobs.repository import JobRepository
from generation_broker.tokens.contribution import FixedContributionSource
from generation_broker.tokens.engine import TokenEconomy
from generation_broker.tokens.repository import TokenRepository

START = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


class MutableClock:
    """Thread-safe fake wall clock advanced explicitly by tests."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "broker.db"
    repository = UserRepository(path)
    repository.init_schema()
    repository.close()
    return path


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture()
def users(db_path: Path) -> Iterator[UserRepository]:
    repository = UserRepository(db_path)
    yield repository
    repository.close()


@pytest.fixture()
def token_repository(db_path: Path) -> Iterator[TokenRepository]:
    repository = TokenRepository(db_path)
    yield repository
    repository.close()


@pytest.fixture()
def job_repository(db_path: Path, clock: MutableClock) -> Iterator[JobRepository]:
    repository = JobRepository(db_path, clock=clock)
    yield repository
    repository.close()


@pytest.fixture()
def economy(token_repository: TokenRepository, clock: MutableClock) -> TokenEconomy:
    return TokenEconomy(
        repository=token_repository,
        contribution_source=FixedContributionSource(),
        clock=DayClock(now=clock),
    )


@pytest.fixture()
def seed_users(users: UserRepository):
    """Register users given as (user_id, tier) pairs."""

    def _seed(*specs: tuple[str, Tier]) -> None:
        for user_id, tier in specs:
            users.add_user(UserCreate(user_id=user_id, display_name=user_id.title(), tier=tier))

    return _seed



@pytest.fixture()
def queue_users(seed_users) -> None:
    """Owners of the jobs enqueued directly through the repository."""

    seed_users(("alice", Tier.FREE), ("bob", Tier.PRO))
