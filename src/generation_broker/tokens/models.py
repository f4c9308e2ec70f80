"""Domain models for the daily token economy."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from generation_broker.accounts.models import Tier

# Contributed tokens are split between the pools with floor rounding.
FREE_SHARE_PERCENT = 70
PAID_SHARE_PERCENT = 30


class DenialReason(str, Enum):
    """Stable reason codes for a refused reservation or submission."""

    INSUFFICIENT_TOKENS = "insufficient_tokens"
    USER_INACTIVE = "user_inactive"
    UNKNOWN_USER = "unknown_user"
    NO_ALLOCATION = "no_allocation"


@dataclass(slots=True, frozen=True)
class DailyContribution:
    """Aggregate tokens contributed by anonymous clients for one day.

    A source that already knows how the contribution divides between the
    pools passes ``free_share`` and ``paid_share``; otherwise the total is
    split 70/30.
    """

    total_tokens: int
    contributor_count: int = 0
    free_share: int | None = None
    paid_share: int | None = None

    def __post_init__(self) -> None:
        if self.total_tokens < 0:
            raise ValueError("Contributed tokens must be >= 0.")
        if (self.free_share is None) != (self.paid_share is None):
            raise ValueError("free_share and paid_share must be given together.")
        if self.free_share is not None and self.paid_share is not None:
            if self.free_share < 0 or self.paid_share < 0:
                raise ValueError("Contribution shares must be >= 0.")
            if self.free_share + self.paid_share != self.total_tokens:
                raise ValueError("Contribution shares must add up to total_tokens.")

    @classmethod
    def from_split(
        cls,
        *,
        free_amount: int,
        paid_amount: int,
        contributor_count: int = 0,
    ) -> DailyContribution:
        return cls(
            total_tokens=free_amount + paid_amount,
            contributor_count=contributor_count,
            free_share=free_amount,
            paid_share=paid_amount,
        )

    @property
    def free_amount(self) -> int:
        if self.free_share is not None:
            return self.free_share
        return self.total_tokens * FREE_SHARE_PERCENT // 100

    @property
    def paid_amount(self) -> int:
        if self.paid_share is not None:
            return self.paid_share
        return self.total_tokens * PAID_SHARE_PERCENT // 100


@dataclass(slots=True)
class TokenPoolView:
    """Stored daily pool."""

    day_key: str
    free_tokens: int
    paid_tokens: int
    total_tokens: int
    contributed_tokens: int
    contributor_count: int
    free_tokens_rotated: int
    last_rotation: datetime | None
    created_at: datetime


@dataclass(slots=True)
class UserAllocationView:
    """Per-user grant and consumption for one day."""

    user_id: str
    day_key: str
    tier: Tier
    free_granted: int
    paid_granted: int
    total_granted: int
    free_used: int
    paid_used: int
    total_used: int
    rotation_bonus: int
    updated_at: datetime

    @property
    def remaining(self) -> int:
        return self.total_granted - self.total_used


@dataclass(slots=True)
class ReserveResult:
    """Outcome of one atomic reservation attempt."""

    ok: bool
    reason: DenialReason | None = None
    allocation: UserAllocationView | None = None


@dataclass(slots=True)
class RotationRecipient:
    user_id: str
    tier: Tier
    tokens: int


@dataclass(slots=True)
class RotationResult:
    """What one rotation call did; ``applied`` is false on a repeat call."""

    day_key: str
    applied: bool
    unused_free_tokens: int
    distributed_tokens: int
    recipients: list[RotationRecipient] = field(default_factory=list)

    @property
    def undistributed_tokens(self) -> int:
        return self.unused_free_tokens - self.distributed_tokens


@dataclass(slots=True)
class TokenUsageView:
    user_id: str
    day_key: str
    tier: Tier
    tokens_used: int
    tokens_remaining: int
    total_granted: int


@dataclass(slots=True)
class TokenAnalytics:
    """Day-level aggregate over all allocations."""

    day_key: str
    total_allocated: int
    total_used: int
    free_users: int
    paid_users: int
    pool: TokenPoolView

    @property
    def total_remaining(self) -> int:
        return self.total_allocated - self.total_used

    @property
    def utilization_rate(self) -> float:
        if self.total_allocated <= 0:
            return 0.0
        return self.total_used / self.total_allocated * 100
