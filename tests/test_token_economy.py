from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from generation_broker.accounts.models import (
    ROTATION_CAPS,
    TIER_GRANTS,
    TIER_JOB_PRIORITY,
    Tier,
)
from generation_broker.clock import DayClock
from generation_broker.tokens.contribution import FixedContributionSource
from generation_broker.tokens.engine import TokenEconomy
from generation_broker.tokens.models import DailyContribution, DenialReason
from generation_broker.tokens.repository import TokenRepository

pytestmark = [
    allure.epic("Token Economy"),
    allure.feature("Daily Pool & Reservations"),
]

DAY = "2026-10-19"


def test_contribution_split_floors_each_share() -> None:
    contribution = DailyContribution(total_tokens=101, contributor_count=3)

    assert contribution.free_amount == 70
    assert contribution.paid_amount == 30
    with pytest.raises(ValueError, match=">= 0"):
        DailyContribution(total_tokens=-1)


def test_supplied_split_is_used_as_is(token_repository: TokenRepository) -> None:
    economy = TokenEconomy(
        repository=token_repository,
        contribution_source=FixedContributionSource(
            free_amount=40,
            paid_amount=10,
            contributor_count=2,
        ),
    )

    pool = economy.ensure_daily_pool(DAY)

    assert (pool.free_tokens, pool.paid_tokens) == (1040, 2010)
    assert pool.contributed_tokens == 50
    with pytest.raises(ValueError, match="add up"):
        DailyContribution(total_tokens=50, free_share=45, paid_share=10)
    with pytest.raises(ValueError, match="together"):
        DailyContribution(total_tokens=50, free_share=50)


def test_tier_tables_cover_every_tier() -> None:
    assert TIER_GRANTS[Tier.FREE].total_tokens == 5
    assert (TIER_GRANTS[Tier.PRO].free_tokens, TIER_GRANTS[Tier.PRO].paid_tokens) == (2, 2)
    assert TIER_GRANTS[Tier.ENTERPRISE].paid_tokens == 100
    assert Tier.FREE not in ROTATION_CAPS
    assert set(TIER_JOB_PRIORITY) == set(Tier)
    assert TIER_JOB_PRIORITY[Tier.ENTERPRISE] < TIER_JOB_PRIORITY[Tier.FREE]


def test_daily_pool_is_created_once_under_concurrent_initialization(db_path: Path) -> None:
    results = []
    errors: list[BaseException] = []
    start = threading.Barrier(8)
    lock = threading.Lock()

    def _ensure() -> None:
        repository = TokenRepository(db_path)
        economy = TokenEconomy(
            repository=repository,
            contribution_source=FixedContributionSource(total_tokens=101, contributor_count=4),
        )
        try:
            start.wait(timeout=5)
            pool = economy.ensure_daily_pool(DAY)
            with lock:
                results.append(pool)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            repository.close()

    threads = [threading.Thread(target=_ensure) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(results) == 8
    assert {(pool.free_tokens, pool.paid_tokens, pool.created_at) for pool in results} == {
        (1070, 2030, results[0].created_at),
    }
    assert results[0].total_tokens == 3100
    assert results[0].contributor_count == 4


def test_concurrent_reservations_never_exceed_grant(
    db_path: Path,
    seed_users,
    economy: TokenEconomy,
) -> None:
    seed_users(("alice", Tier.FREE))
    economy.ensure_daily_pool(DAY)
    economy.allocate_daily(DAY)

    outcomes: list[bool] = []
    lock = threading.Lock()
    start = threading.Barrier(20)

    def _reserve() -> None:
        repository = TokenRepository(db_path)
        local = TokenEconomy(repository=repository, contribution_source=FixedContributionSource())
        try:
            start.wait(timeout=5)
            result = local.reserve("alice", DAY)
            with lock:
                outcomes.append(result.ok)
        finally:
            repository.close()

    threads = [threading.Thread(target=_reserve) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(outcomes) == 20
    assert outcomes.count(True) == 5
    allocation = economy.repository.get_allocation(user_id="alice", day_key=DAY)
    assert allocation is not None
    assert allocation.total_used == 5
    assert allocation.free_used == 5


def test_reservation_consumes_free_tokens_before_paid(seed_users, economy: TokenEconomy) -> None:
    seed_users(("paula", Tier.PRO))
    economy.ensure_daily_pool(DAY)
    economy.allocate_daily(DAY)

    first = economy.reserve("paula", DAY)
    assert first.ok
    assert first.allocation is not None
    assert (first.allocation.free_used, first.allocation.paid_used) == (1, 0)

    bulk = economy.reserve("paula", DAY, amount=2)
    assert bulk.ok
    assert bulk.allocation is not None
    assert (bulk.allocation.free_used, bulk.allocation.paid_used) == (2, 1)
    assert bulk.allocation.remaining == 1

    too_many = economy.reserve("paula", DAY, amount=2)
    assert not too_many.ok
    assert too_many.reason == DenialReason.INSUFFICIENT_TOKENS


def test_free_user_gets_five_reservations_then_denial(seed_users, economy: TokenEconomy) -> None:
    seed_users(("fred", Tier.FREE))
    economy.run_daily_cycle(DAY)

    results = [economy.reserve("fred", DAY) for _ in range(6)]

    assert [result.ok for result in results] == [True, True, True, True, True, False]
    assert results[-1].reason == DenialReason.INSUFFICIENT_TOKENS
    usage = economy.user_status("fred", DAY)
    assert (usage.tokens_used, usage.tokens_remaining) == (5, 0)


def test_reserve_reports_unknown_inactive_and_unallocated_users(
    users,
    seed_users,
    economy: TokenEconomy,
) -> None:
    seed_users(("ivan", Tier.PRO), ("late", Tier.FREE))
    economy.ensure_daily_pool(DAY)
    economy.allocate_user(user_id="ivan", tier=Tier.PRO, day_key=DAY)
    users.set_active(user_id="ivan", active=False)

    assert economy.reserve("ghost", DAY).reason == DenialReason.UNKNOWN_USER
    assert economy.reserve("ivan", DAY).reason == DenialReason.USER_INACTIVE
    assert economy.reserve("late", DAY).reason == DenialReason.NO_ALLOCATION
    with pytest.raises(ValueError, match="must be > 0"):
        economy.reserve("late", DAY, amount=0)


def test_allocate_daily_skips_inactive_users_and_keeps_usage(
    users,
    seed_users,
    economy: TokenEconomy,
) -> None:
    seed_users(("amy", Tier.FREE), ("bob", Tier.FREE))
    users.set_active(user_id="bob", active=False)
    economy.ensure_daily_pool(DAY)

    allocations = economy.allocate_daily(DAY)
    assert [allocation.user_id for allocation in allocations] == ["amy"]

    assert economy.reserve("amy", DAY, amount=3).ok
    users.set_tier(user_id="amy", tier=Tier.PRO)
    economy.allocate_daily(DAY)

    allocation = economy.repository.get_allocation(user_id="amy", day_key=DAY)
    assert allocation is not None
    assert allocation.tier == Tier.PRO
    # PRO grants two free tokens but three were already used.
    assert (allocation.free_granted, allocation.free_used) == (3, 3)
    assert allocation.paid_granted == 2
    assert allocation.total_used == 3


def test_rotation_moves_unused_free_tokens_to_paid_tiers_once(
    seed_users,
    economy: TokenEconomy,
) -> None:
    seed_users(*[(f"free-{index:02d}", Tier.FREE) for index in range(10)])
    seed_users(("pro-1", Tier.PRO), ("premium-1", Tier.PREMIUM))
    economy.ensure_daily_pool(DAY)
    economy.allocate_daily(DAY)
    assert economy.reserve("free-00", DAY, amount=2).ok

    result = economy.rotate_unused(DAY)

    assert result.applied
    assert result.unused_free_tokens == 48
    assert result.distributed_tokens == 48
    assert [(r.user_id, r.tokens) for r in result.recipients] == [("pro-1", 18), ("premium-1", 30)]
    pro = economy.repository.get_allocation(user_id="pro-1", day_key=DAY)
    premium = economy.repository.get_allocation(user_id="premium-1", day_key=DAY)
    assert pro is not None and premium is not None
    assert pro.paid_granted == ROTATION_CAPS[Tier.PRO]
    assert pro.rotation_bonus == 18
    assert premium.paid_granted == 34
    assert economy.pool_status(DAY).free_tokens_rotated == 48

    again = economy.rotate_unused(DAY)
    assert not again.applied
    assert again.distributed_tokens == 0
    pro_after = economy.repository.get_allocation(user_id="pro-1", day_key=DAY)
    assert pro_after is not None
    assert pro_after.paid_granted == 20


def test_rotation_respects_cap_and_leaves_remainder(seed_users, economy: TokenEconomy) -> None:
    seed_users(*[(f"free-{index:02d}", Tier.FREE) for index in range(10)])
    seed_users(("pro-1", Tier.PRO))
    economy.ensure_daily_pool(DAY)
    economy.allocate_daily(DAY)

    result = economy.rotate_unused(DAY)

    assert result.distributed_tokens == 18
    assert result.undistributed_tokens == 32
    pro = economy.repository.get_allocation(user_id="pro-1", day_key=DAY)
    assert pro is not None
    assert pro.paid_granted == 20

    # A later allocation pass keeps the rotation bonus.
    economy.allocate_daily(DAY)
    pro = economy.repository.get_allocation(user_id="pro-1", day_key=DAY)
    assert pro is not None
    assert pro.paid_granted == 20


def test_tier_change_trims_rotation_bonus_to_new_cap(
    users,
    seed_users,
    economy: TokenEconomy,
) -> None:
    seed_users(*[(f"free-{index:02d}", Tier.FREE) for index in range(4)])
    seed_users(("vera", Tier.PREMIUM))
    economy.ensure_daily_pool(DAY)
    economy.allocate_daily(DAY)
    assert economy.rotate_unused(DAY).distributed_tokens == 20
    assert economy.reserve("vera", DAY, amount=3).ok

    users.set_tier(user_id="vera", tier=Tier.PRO)
    economy.allocate_daily(DAY)

    vera = economy.repository.get_allocation(user_id="vera", day_key=DAY)
    assert vera is not None
    assert vera.paid_granted == ROTATION_CAPS[Tier.PRO]
    assert vera.rotation_bonus == 18
    assert (vera.total_granted, vera.total_used) == (22, 3)

    assert economy.reserve("vera", DAY, amount=19).ok
    users.set_tier(user_id="vera", tier=Tier.FREE)
    economy.allocate_daily(DAY)

    vera = economy.repository.get_allocation(user_id="vera", day_key=DAY)
    assert vera is not None
    # Consumed paid tokens stay granted; the bonus itself is gone.
    assert (vera.paid_granted, vera.paid_used) == (20, 20)
    assert vera.rotation_bonus == 0
    assert vera.remaining == 3


def test_refund_returns_paid_tokens_first(seed_users, economy: TokenEconomy) -> None:
    seed_users(("paula", Tier.PRO))
    economy.ensure_daily_pool(DAY)
    economy.allocate_daily(DAY)
    assert economy.reserve("paula", DAY, amount=3).ok

    assert economy.refund("paula", DAY, 1)
    allocation = economy.repository.get_allocation(user_id="paula", day_key=DAY)
    assert allocation is not None
    assert (allocation.free_used, allocation.paid_used, allocation.total_used) == (2, 0, 2)

    assert not economy.refund("paula", DAY, 5)


def test_analytics_and_daily_cycle_summary(seed_users, economy: TokenEconomy) -> None:
    seed_users(("amy", Tier.FREE), ("paula", Tier.PRO), ("ent", Tier.ENTERPRISE))

    summary = economy.run_daily_cycle(DAY)
    assert summary.allocations == 3
    assert summary.pool.free_tokens == 1000
    assert summary.pool.paid_tokens == 2000
    assert summary.rotation.applied

    assert economy.reserve("ent", DAY, amount=10).ok
    analytics = economy.analytics(DAY)
    # amy's 5 free tokens went to paula during rotation.
    assert analytics.total_allocated == 5 + 4 + 5 + 100
    assert analytics.total_used == 10
    assert (analytics.free_users, analytics.paid_users) == (1, 2)
    assert analytics.utilization_rate == pytest.approx(10 / 114 * 100)


def test_day_key_follows_clock_and_rejects_garbage(
    token_repository: TokenRepository,
    clock,
) -> None:
    economy = TokenEconomy(
        repository=token_repository,
        contribution_source=FixedContributionSource(),
        clock=DayClock(timezone_name="UTC", now=clock),
    )
    assert economy.ensure_daily_pool().day_key == DAY
    with pytest.raises(ValueError, match="Invalid day key"):
        economy.ensure_daily_pool("19/10/2026")
