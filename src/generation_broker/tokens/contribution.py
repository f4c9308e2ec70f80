"""Sources of the daily anonymous-client token contribution."""

from __future__ import annotations

from typing import Protocol

from generation_broker.tokens.models import DailyContribution


class ContributionSource(Protocol):
    """Supplies one aggregate contribution per day."""

    def daily_contribution(self) -> DailyContribution:
        """Return today's contribution, optionally with its free/paid split."""


class FixedContributionSource:
    """Constant contribution, configured from settings or injected by tests."""

    def __init__(
        self,
        *,
        total_tokens: int = 0,
        contributor_count: int = 0,
        free_amount: int | None = None,
        paid_amount: int | None = None,
    ) -> None:
        if free_amount is not None or paid_amount is not None:
            self._contribution = DailyContribution.from_split(
                free_amount=free_amount or 0,
                paid_amount=paid_amount or 0,
                contributor_count=contributor_count,
            )
        else:
            self._contribution = DailyContribution(
                total_tokens=total_tokens,
                contributor_count=contributor_count,
            )

    def daily_contribution(self) -> DailyContribution:
        return self._contribution
