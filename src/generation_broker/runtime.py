"""Composition root wiring repositories, engines, provider and observers."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from generation_broker.accounts.repository import UserRepository
from generation_broker.admission import AdmissionService
from generation_broker.clock import DayClock
from generation_broker.config import Settings
from generation_broker.jobs.observer import CompositeJobObserver, JobObserver, LoggingJobObserver
from generation_broker.jobs.provider import (
    EchoGenerationProvider,
    GenerationProvider,
    HttpGenerationProvider,
)
from generation_broker.jobs.queue import JobQueue
from generation_broker.jobs.repository import JobRepository
from generation_broker.storage.common import utc_now
from generation_broker.tokens.contribution import ContributionSource, FixedContributionSource
from generation_broker.tokens.engine import TokenEconomy
from generation_broker.tokens.repository import TokenRepository


@dataclass(slots=True)
class BrokerRuntime:
    """Everything a caller needs, built once per process or CLI command."""

    settings: Settings
    users: UserRepository
    token_repository: TokenRepository
    job_repository: JobRepository
    economy: TokenEconomy
    queue: JobQueue
    admission: AdmissionService
    provider: GenerationProvider

    def init_schema(self) -> None:
        self.users.init_schema()

    def close(self) -> None:
        if isinstance(self.provider, HttpGenerationProvider):
            self.provider.close()
        self.users.close()
        self.token_repository.close()
        self.job_repository.close()


def build_provider(settings: Settings) -> GenerationProvider:
    """Create the provider selected by ``GEN_BROKER_PROVIDER``."""

    settings.validate_provider()
    provider = settings.provider
    if provider.kind == "http":
        return HttpGenerationProvider(
            base_url=provider.base_url,
            api_key=provider.api_key,
            polling_url=provider.polling_url or None,
            poll_interval_seconds=provider.poll_interval_seconds,
        )
    return EchoGenerationProvider()


def build_runtime(
    settings: Settings,
    *,
    provider: GenerationProvider | None = None,
    observers: list[JobObserver] | None = None,
    contribution_source: ContributionSource | None = None,
    now: Callable[[], datetime] = utc_now,
) -> BrokerRuntime:
    """Wire the runtime explicitly; tests pass fakes for provider, clock and observers."""

    settings.validate()
    busy_timeout_ms = settings.busy_timeout_ms
    users = UserRepository(settings.db_path, busy_timeout_ms=busy_timeout_ms)
    token_repository = TokenRepository(settings.db_path, busy_timeout_ms=busy_timeout_ms)
    job_repository = JobRepository(settings.db_path, busy_timeout_ms=busy_timeout_ms, clock=now)

    economy = TokenEconomy(
        repository=token_repository,
        contribution_source=contribution_source
        or FixedContributionSource(
            total_tokens=settings.tokens.contribution_tokens,
            contributor_count=settings.tokens.contributor_count,
        ),
        clock=DayClock(timezone_name=settings.timezone, now=now),
        base_free_tokens=settings.tokens.base_free_tokens,
        base_paid_tokens=settings.tokens.base_paid_tokens,
    )
    resolved_provider = provider or build_provider(settings)
    queue = JobQueue(
        repository=job_repository,
        provider=resolved_provider,
        settings=settings.queue,
        observer=CompositeJobObserver(observers or [LoggingJobObserver()]),
    )
    admission = AdmissionService(
        users=users,
        economy=economy,
        queue=queue,
        settings=settings.admission,
        max_attempts=settings.queue.max_attempts,
    )
    return BrokerRuntime(
        settings=settings,
        users=users,
        token_repository=token_repository,
        job_repository=job_repository,
        economy=economy,
        queue=queue,
        admission=admission,
        provider=resolved_provider,
    )


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    provider: GenerationProvider | None = None,
    observers: list[JobObserver] | None = None,
) -> Iterator[BrokerRuntime]:
    """Build the runtime, apply migrations and dispose engines on exit."""

    runtime = build_runtime(settings, provider=provider, observers=observers)
    try:
        runtime.init_schema()
        yield runtime
    finally:
        runtime.close()
