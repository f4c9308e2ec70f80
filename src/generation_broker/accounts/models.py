"""Subscription tiers and the data tables derived from them."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Tier(str, Enum):
    """Subscription level of a user."""

    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @property
    def is_paid(self) -> bool:
        return self is not Tier.FREE

    @classmethod
    def parse(cls, value: str) -> Tier:
        try:
            return cls(value.strip().lower())
        except ValueError as error:
            supported = ", ".join(tier.value for tier in cls)
            raise ValueError(f"Unknown tier {value!r}; expected one of: {supported}") from error


@dataclass(slots=True, frozen=True)
class TierGrant:
    """Daily token grant for one tier."""

    free_tokens: int
    paid_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.free_tokens + self.paid_tokens


TIER_GRANTS: dict[Tier, TierGrant] = {
    Tier.FREE: TierGrant(free_tokens=5, paid_tokens=0),
    Tier.PRO: TierGrant(free_tokens=2, paid_tokens=2),
    Tier.PREMIUM: TierGrant(free_tokens=1, paid_tokens=4),
    Tier.ENTERPRISE: TierGrant(free_tokens=0, paid_tokens=100),
}

# Upper bound for paid_granted after rotation.
ROTATION_CAPS: dict[Tier, int] = {
    Tier.PRO: 20,
    Tier.PREMIUM: 100,
    Tier.ENTERPRISE: 200,
}

# Rotation visits paid tiers in ascending rank, cheapest first.
TIER_RANK: dict[Tier, int] = {
    Tier.FREE: 0,
    Tier.PRO: 1,
    Tier.PREMIUM: 2,
    Tier.ENTERPRISE: 3,
}

# Lower value is dequeued sooner.
TIER_JOB_PRIORITY: dict[Tier, int] = {
    Tier.ENTERPRISE: 1,
    Tier.PREMIUM: 2,
    Tier.PRO: 2,
    Tier.FREE: 4,
}


@dataclass(slots=True)
class UserCreate:
    """Input payload for registering a user."""

    user_id: str
    display_name: str
    tier: Tier = Tier.FREE
    active: bool = True


@dataclass(slots=True)
class UserView:
    """Stored user with tier and soft-delete flag."""

    user_id: str
    display_name: str
    tier: Tier
    active: bool
    created_at: datetime
    updated_at: datetime
