"""Daily token economy: pool initialization, tier allocation, reservation, rotation."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from generation_broker.accounts.models import TIER_GRANTS, Tier
from generation_broker.clock import DayClock, parse_day_key
from generation_broker.errors import UserNotFoundError
from generation_broker.storage.common import translate_store_errors
from generation_broker.tokens.contribution import ContributionSource
from generation_broker.tokens.models import (
    ReserveResult,
    RotationResult,
    TokenAnalytics,
    TokenPoolView,
    TokenUsageView,
    UserAllocationView,
)
from generation_broker.tokens.repository import TokenRepository

logger = logging.getLogger(__name__)

DEFAULT_BASE_FREE_TOKENS = 1000
DEFAULT_BASE_PAID_TOKENS = 2000


@dataclass(slots=True)
class DailyCycleSummary:
    """Result of the scheduled ensure → allocate → rotate sequence."""

    pool: TokenPoolView
    allocations: int
    rotation: RotationResult


class TokenEconomy:
    """Rations the shared daily pool of generation tokens across users."""

    def __init__(
        self,
        *,
        repository: TokenRepository,
        contribution_source: ContributionSource,
        clock: DayClock | None = None,
        base_free_tokens: int = DEFAULT_BASE_FREE_TOKENS,
        base_paid_tokens: int = DEFAULT_BASE_PAID_TOKENS,
    ) -> None:
        self.repository = repository
        self.contribution_source = contribution_source
        self.clock = clock or DayClock()
        self.base_free_tokens = base_free_tokens
        self.base_paid_tokens = base_paid_tokens

    def ensure_daily_pool(self, day_key: str | None = None) -> TokenPoolView:
        """Return the day's pool, creating it from base amounts plus contributions."""

        day_key = self._resolve_day(day_key)
        with translate_store_errors("ensure_daily_pool"):
            existing = self.repository.get_pool(day_key)
            if existing is not None:
                return existing

            contribution = self.contribution_source.daily_contribution()
            pool, created = self.repository.create_pool(
                day_key=day_key,
                free_tokens=self.base_free_tokens + contribution.free_amount,
                paid_tokens=self.base_paid_tokens + contribution.paid_amount,
                contribution=contribution,
            )
        if created:
            logger.info(
                "Daily token pool %s initialized: %d free + %d paid (%d contributors)",
                day_key,
                pool.free_tokens,
                pool.paid_tokens,
                pool.contributor_count,
            )
        return pool

    def allocate_daily(self, day_key: str | None = None) -> list[UserAllocationView]:
        """Grant every active user the tier allowance for the day."""

        day_key = self._resolve_day(day_key)
        allocations: list[UserAllocationView] = []
        with translate_store_errors("allocate_daily"):
            for user_id, tier in self.repository.list_active_users():
                allocations.append(
                    self.repository.upsert_allocation(
                        user_id=user_id,
                        day_key=day_key,
                        tier=tier,
                        grant=TIER_GRANTS[tier],
                    ),
                )
        logger.info("Allocated tokens to %d users for %s", len(allocations), day_key)
        return allocations

    def allocate_user(
        self,
        *,
        user_id: str,
        tier: Tier,
        day_key: str | None = None,
    ) -> UserAllocationView:
        """Grant one user the tier allowance, for users registered after the daily pass."""

        day_key = self._resolve_day(day_key)
        with translate_store_errors("allocate_user"):
            return self.repository.upsert_allocation(
                user_id=user_id,
                day_key=day_key,
                tier=tier,
                grant=TIER_GRANTS[tier],
            )

    def reserve(self, user_id: str, day_key: str | None = None, amount: int = 1) -> ReserveResult:
        """Atomically debit ``amount`` tokens; denial is a result, not an error."""

        if amount <= 0:
            raise ValueError(f"Reservation amount must be > 0, got {amount}")
        day_key = self._resolve_day(day_key)
        with translate_store_errors("reserve"):
            result = self.repository.reserve(user_id=user_id, day_key=day_key, amount=amount)
        if result.ok:
            logger.debug("User %s reserved %d tokens for %s", user_id, amount, day_key)
        else:
            logger.info(
                "Reservation denied for user %s on %s: %s",
                user_id,
                day_key,
                result.reason.value if result.reason is not None else "unknown",
            )
        return result

    def refund(self, user_id: str, day_key: str | None = None, amount: int = 1) -> bool:
        """Reverse a debit on operator request; job failures never call this."""

        day_key = self._resolve_day(day_key)
        with translate_store_errors("refund"):
            refunded = self.repository.refund(user_id=user_id, day_key=day_key, amount=amount)
        if refunded:
            logger.warning("Refunded %d tokens to user %s for %s", amount, user_id, day_key)
        return refunded

    def rotate_unused(self, day_key: str | None = None) -> RotationResult:
        """Redistribute unused free-tier grants to paid tiers, at most once per day."""

        day_key = self._resolve_day(day_key)
        with translate_store_errors("rotate_unused"):
            self.ensure_daily_pool(day_key)
            result = self.repository.rotate_unused(day_key=day_key)
        if not result.applied:
            logger.info("Token rotation for %s already applied; skipping", day_key)
        elif result.unused_free_tokens == 0:
            logger.info("No unused free tokens to rotate for %s", day_key)
        else:
            logger.info(
                "Rotated %d of %d unused free tokens to %d paid users for %s",
                result.distributed_tokens,
                result.unused_free_tokens,
                len(result.recipients),
                day_key,
            )
        return result

    def run_daily_cycle(self, day_key: str | None = None) -> DailyCycleSummary:
        """Run the scheduled day-boundary sequence: ensure, allocate, rotate."""

        day_key = self._resolve_day(day_key)
        logger.info("Starting daily token cycle for %s", day_key)
        try:
            pool = self.ensure_daily_pool(day_key)
            allocations = self.allocate_daily(day_key)
            rotation = self.rotate_unused(day_key)
        except Exception:
            logger.exception("Daily token cycle for %s failed", day_key)
            raise
        logger.info("Daily token cycle for %s completed", day_key)
        return DailyCycleSummary(pool=pool, allocations=len(allocations), rotation=rotation)

    def pool_status(self, day_key: str | None = None) -> TokenPoolView:
        return self.ensure_daily_pool(day_key)

    def user_status(self, user_id: str, day_key: str | None = None) -> TokenUsageView:
        day_key = self._resolve_day(day_key)
        with translate_store_errors("user_status"):
            allocation = self.repository.get_allocation(user_id=user_id, day_key=day_key)
        if allocation is None:
            raise UserNotFoundError(f"No token allocation for user {user_id} on {day_key}")
        return TokenUsageView(
            user_id=user_id,
            day_key=day_key,
            tier=allocation.tier,
            tokens_used=allocation.total_used,
            tokens_remaining=allocation.remaining,
            total_granted=allocation.total_granted,
        )

    def analytics(self, day_key: str | None = None) -> TokenAnalytics:
        day_key = self._resolve_day(day_key)
        pool = self.ensure_daily_pool(day_key)
        with translate_store_errors("analytics"):
            allocated, used, free_users, paid_users = self.repository.allocation_totals(
                day_key=day_key,
            )
        return TokenAnalytics(
            day_key=day_key,
            total_allocated=allocated,
            total_used=used,
            free_users=free_users,
            paid_users=paid_users,
            pool=pool,
        )

    def _resolve_day(self, day_key: str | None) -> str:
        if day_key is None:
            return self.clock.day_key()
        parse_day_key(day_key)
        return day_key
