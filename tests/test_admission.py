from __future__ import annotations

import allure
import pytest

from generation_broker.accounts.models import TIER_JOB_PRIORITY, Tier
from generation_broker.accounts.repository import UserRepository
from generation_broker.admission import (
    Admission,
    AdmissionService,
    Denial,
    GenerationRequest,
    derive_timeout_seconds,
    estimate_seconds,
)
from generation_broker.config import AdmissionSettings
from generation_broker.errors import StoreUnavailableError
from generation_broker.jobs.models import JobCreate, JobStatus, JobView
from generation_broker.jobs.provider import EchoGenerationProvider
from generation_broker.jobs.queue import JobQueue
from generation_broker.jobs.repository import JobRepository
from generation_broker.tokens.engine import TokenEconomy
from generation_broker.tokens.models import DenialReason

pytestmark = [
    allure.epic("Admission"),
    allure.feature("Token-Gated Submission"),
]

DAY = "2026-10-19"


class FailingQueue:
    """Queue that raises the given error at enqueue time."""

    def __init__(self, error: Exception) -> None:
        self.error = error

    def enqueue(self, payload: JobCreate) -> JobView:
        raise self.error

    def status(self, job_id: str) -> JobView | None:
        return None


@pytest.fixture()
def queue(job_repository: JobRepository) -> JobQueue:
    return JobQueue(repository=job_repository, provider=EchoGenerationProvider())


@pytest.fixture()
def service(users: UserRepository, economy: TokenEconomy, queue: JobQueue) -> AdmissionService:
    return AdmissionService(users=users, economy=economy, queue=queue)


def test_free_user_sixth_submission_is_denied_without_a_job(
    seed_users,
    economy: TokenEconomy,
    queue: JobQueue,
    service: AdmissionService,
) -> None:
    seed_users(("fred", Tier.FREE))
    economy.run_daily_cycle(DAY)

    outcomes = [service.submit("fred", GenerationRequest(prompt=f"song {n}")) for n in range(6)]

    assert [outcome.ok for outcome in outcomes] == [True] * 5 + [False]
    denial = outcomes[-1]
    assert isinstance(denial, Denial)
    assert denial.reason == DenialReason.INSUFFICIENT_TOKENS
    assert queue.stats().queued == 5
    remaining = [o.tokens_remaining for o in outcomes[:5] if isinstance(o, Admission)]
    assert remaining == [4, 3, 2, 1, 0]


def test_unknown_and_inactive_users_are_denied(
    users: UserRepository,
    seed_users,
    queue: JobQueue,
    service: AdmissionService,
) -> None:
    seed_users(("gone", Tier.PRO))
    users.set_active(user_id="gone", active=False)

    unknown = service.submit("ghost", GenerationRequest(prompt="x"))
    inactive = service.submit("gone", GenerationRequest(prompt="x"))

    assert isinstance(unknown, Denial)
    assert unknown.reason == DenialReason.UNKNOWN_USER
    assert isinstance(inactive, Denial)
    assert inactive.reason == DenialReason.USER_INACTIVE
    assert queue.stats().total == 0


def test_user_registered_after_daily_pass_is_allocated_on_first_submit(
    seed_users,
    economy: TokenEconomy,
    service: AdmissionService,
) -> None:
    economy.run_daily_cycle(DAY)
    seed_users(("newbie", Tier.PREMIUM))

    outcome = service.submit("newbie", GenerationRequest(prompt="first song"))

    assert isinstance(outcome, Admission)
    assert outcome.day_key == DAY
    assert outcome.tokens_remaining == 4
    usage = economy.user_status("newbie", DAY)
    assert usage.tokens_used == 1


def test_priority_follows_tier(
    seed_users,
    job_repository: JobRepository,
    service: AdmissionService,
) -> None:
    seed_users(("fred", Tier.FREE), ("ent", Tier.ENTERPRISE), ("paula", Tier.PRO))

    free_job = service.submit("fred", GenerationRequest(prompt="a"))
    ent_job = service.submit("ent", GenerationRequest(prompt="b"))
    pro_job = service.submit("paula", GenerationRequest(prompt="c"))
    assert isinstance(free_job, Admission)
    assert isinstance(ent_job, Admission)
    assert isinstance(pro_job, Admission)
    assert free_job.priority == TIER_JOB_PRIORITY[Tier.FREE]

    order = []
    while (job := job_repository.claim_next_ready_job(worker_id="w1")) is not None:
        order.append(job.job_id)
    assert order == [ent_job.job_id, pro_job.job_id, free_job.job_id]


def test_job_carries_payload_and_derived_timeout(
    seed_users,
    service: AdmissionService,
) -> None:
    seed_users(("ent", Tier.ENTERPRISE))
    request = GenerationRequest(
        prompt="  synthwave  ",
        style="retro",
        custom_mode=True,
        lyrics="la la",
        duration=180,
    )

    outcome = service.submit("ent", request)

    assert isinstance(outcome, Admission)
    assert outcome.estimated_seconds == 85
    assert outcome.timeout_seconds == 340
    job = service.get_status(outcome.job_id)
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.timeout_seconds == 340
    assert job.payload == {
        "prompt": "synthwave",
        "style": "retro",
        "custom_mode": True,
        "instrumental": False,
        "lyrics": "la la",
        "duration": 180,
    }


@pytest.mark.parametrize(
    "error",
    [
        StoreUnavailableError("Store unavailable during enqueue: database is locked"),
        ValueError("timeout_seconds must be > 0, got 0"),
    ],
)
def test_enqueue_failure_reverses_the_debit(
    users: UserRepository,
    seed_users,
    economy: TokenEconomy,
    error: Exception,
) -> None:
    seed_users(("paula", Tier.PRO))
    service = AdmissionService(users=users, economy=economy, queue=FailingQueue(error))

    with pytest.raises(type(error)):
        service.submit("paula", GenerationRequest(prompt="x"))

    assert economy.user_status("paula", DAY).tokens_used == 0


def test_invalid_request_is_rejected_before_reserving(
    seed_users,
    economy: TokenEconomy,
    service: AdmissionService,
) -> None:
    seed_users(("fred", Tier.FREE))
    economy.run_daily_cycle(DAY)

    with pytest.raises(ValueError, match="prompt"):
        service.submit("fred", GenerationRequest(prompt="   "))
    with pytest.raises(ValueError, match="Duration"):
        service.submit("fred", GenerationRequest(prompt="x", duration=0))

    assert economy.user_status("fred", DAY).tokens_used == 0


def test_estimate_and_timeout_bounds() -> None:
    settings = AdmissionSettings(
        timeout_multiplier=4.0,
        min_timeout_seconds=60,
        max_timeout_seconds=900,
    )

    assert estimate_seconds(GenerationRequest(prompt="x")) == 30
    assert estimate_seconds(GenerationRequest(prompt="x", duration=60)) == 30
    assert estimate_seconds(GenerationRequest(prompt="x", duration=3600)) == 630
    assert derive_timeout_seconds(10, settings) == 60
    assert derive_timeout_seconds(30, settings) == 120
    assert derive_timeout_seconds(630, settings) == 900
