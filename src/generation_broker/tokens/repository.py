"""Persistent pools and per-user allocations with atomic consumption."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import case, func, literal
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from generation_broker.accounts.models import ROTATION_CAPS, TIER_RANK, Tier, TierGrant
from generation_broker.storage.alembic_runner import upgrade_head
from generation_broker.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from generation_broker.storage.sqlmodel_models import AppUser, TokenPool, UserAllocation
from generation_broker.tokens.models import (
    DailyContribution,
    DenialReason,
    ReserveResult,
    RotationRecipient,
    RotationResult,
    TokenPoolView,
    UserAllocationView,
)


class TokenRepository:
    """Token pool and allocation persistence backed by SQLModel + SQLite.

    Every mutation of an allocation row is one conditional UPDATE so that
    concurrent reservations from several processes cannot overspend a grant.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def get_pool(self, day_key: str) -> TokenPoolView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TokenPool).where(TokenPool.day_key == day_key)).one_or_none()
        return _to_pool_view(row) if row is not None else None

    def create_pool(
        self,
        *,
        day_key: str,
        free_tokens: int,
        paid_tokens: int,
        contribution: DailyContribution,
    ) -> tuple[TokenPoolView, bool]:
        """Insert the day's pool, or return the row a concurrent caller created.

        Returns the stored pool and whether this call created it.
        """

        with Session(self.engine) as session:
            row = TokenPool(
                day_key=day_key,
                free_tokens=free_tokens,
                paid_tokens=paid_tokens,
                total_tokens=free_tokens + paid_tokens,
                contributed_tokens=contribution.total_tokens,
                contributor_count=contribution.contributor_count,
                free_tokens_rotated=0,
                rotated_at=None,
                created_at=utc_now(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.exec(
                    select(TokenPool).where(TokenPool.day_key == day_key),
                ).one_or_none()
                if existing is None:
                    raise
                return _to_pool_view(existing), False
            session.refresh(row)
            return _to_pool_view(row), True

    def list_active_users(self) -> list[tuple[str, Tier]]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AppUser)
                .where(col(AppUser.active).is_(True))
                .order_by(col(AppUser.user_id).asc()),
            ).all()
        return [(row.user_id, Tier(row.tier)) for row in rows]

    def upsert_allocation(
        self,
        *,
        user_id: str,
        day_key: str,
        tier: Tier,
        grant: TierGrant,
    ) -> UserAllocationView:
        """Write the day's grant for one user without touching used counters.

        Rotation bonus credited earlier in the day is kept on top of the paid
        grant, trimmed to the rotation cap of ``tier`` (tiers without a cap
        lose it). A grant smaller than what was already consumed is raised to
        the consumed amount.
        """

        now = utc_now()
        paid_cap = ROTATION_CAPS.get(tier, grant.paid_tokens)
        with Session(self.engine) as session:
            free_granted = case(
                (col(UserAllocation.free_used) > grant.free_tokens, col(UserAllocation.free_used)),
                else_=literal(grant.free_tokens),
            )
            with_bonus = literal(grant.paid_tokens) + col(UserAllocation.rotation_bonus)
            paid_target = case((with_bonus > paid_cap, literal(paid_cap)), else_=with_bonus)
            paid_granted = case(
                (col(UserAllocation.paid_used) > paid_target, col(UserAllocation.paid_used)),
                else_=paid_target,
            )
            result = session.exec(
                sa_update(UserAllocation)
                .where(
                    col(UserAllocation.user_id) == user_id,
                    col(UserAllocation.day_key) == day_key,
                )
                .values(
                    tier=tier.value,
                    free_granted=free_granted,
                    paid_granted=paid_granted,
                    total_granted=free_granted + paid_granted,
                    rotation_bonus=paid_target - grant.paid_tokens,
                    updated_at=to_db_datetime(now),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount == 0:
                session.add(
                    UserAllocation(
                        user_id=user_id,
                        day_key=day_key,
                        tier=tier.value,
                        free_granted=grant.free_tokens,
                        paid_granted=grant.paid_tokens,
                        total_granted=grant.total_tokens,
                        created_at=now,
                        updated_at=now,
                    ),
                )
                session.flush()
            row = self._get_allocation_row(session=session, user_id=user_id, day_key=day_key)
            view = _to_allocation_view(row)
            session.commit()
            return view

    def reserve(self, *, user_id: str, day_key: str, amount: int) -> ReserveResult:
        """Debit ``amount`` tokens in one statement, free tokens first."""

        if amount <= 0:
            raise ValueError(f"Reservation amount must be > 0, got {amount}")

        now = utc_now()
        with Session(self.engine) as session:
            free_left = col(UserAllocation.free_granted) - col(UserAllocation.free_used)
            free_delta = case((free_left >= amount, literal(amount)), else_=free_left)
            active_user = (
                select(AppUser.user_id)
                .where(
                    col(AppUser.user_id) == user_id,
                    col(AppUser.active).is_(True),
                )
                .exists()
            )
            result = session.exec(
                sa_update(UserAllocation)
                .where(
                    col(UserAllocation.user_id) == user_id,
                    col(UserAllocation.day_key) == day_key,
                    col(UserAllocation.total_used) + amount <= col(UserAllocation.total_granted),
                    active_user,
                )
                .values(
                    free_used=col(UserAllocation.free_used) + free_delta,
                    paid_used=col(UserAllocation.paid_used) + (literal(amount) - free_delta),
                    total_used=col(UserAllocation.total_used) + amount,
                    updated_at=to_db_datetime(now),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return ReserveResult(
                    ok=False,
                    reason=self._denial_reason(session=session, user_id=user_id, day_key=day_key),
                    allocation=self._find_allocation(
                        session=session,
                        user_id=user_id,
                        day_key=day_key,
                    ),
                )
            row = self._get_allocation_row(session=session, user_id=user_id, day_key=day_key)
            view = _to_allocation_view(row)
            session.commit()
            return ReserveResult(ok=True, allocation=view)

    def refund(self, *, user_id: str, day_key: str, amount: int) -> bool:
        """Give back ``amount`` consumed tokens, paid tokens first."""

        if amount <= 0:
            raise ValueError(f"Refund amount must be > 0, got {amount}")

        with Session(self.engine) as session:
            paid_back = case(
                (col(UserAllocation.paid_used) >= amount, literal(amount)),
                else_=col(UserAllocation.paid_used),
            )
            result = session.exec(
                sa_update(UserAllocation)
                .where(
                    col(UserAllocation.user_id) == user_id,
                    col(UserAllocation.day_key) == day_key,
                    col(UserAllocation.total_used) >= amount,
                )
                .values(
                    paid_used=col(UserAllocation.paid_used) - paid_back,
                    free_used=col(UserAllocation.free_used) - (literal(amount) - paid_back),
                    total_used=col(UserAllocation.total_used) - amount,
                    updated_at=to_db_datetime(utc_now()),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def rotate_unused(self, *, day_key: str) -> RotationResult:
        """Move unused free-tier grants to paid-tier users, once per day.

        The pool's ``rotated_at`` column is claimed with a conditional update in
        the same transaction as the redistribution, so a repeated or concurrent
        call finds the claim taken and changes nothing.
        """

        now = utc_now()
        with Session(self.engine) as session:
            claimed = session.exec(
                sa_update(TokenPool)
                .where(
                    col(TokenPool.day_key) == day_key,
                    col(TokenPool.rotated_at).is_(None),
                )
                .values(rotated_at=to_db_datetime(now)),
            )
            if claimed.rowcount != 1:
                session.rollback()
                pool = session.exec(
                    select(TokenPool).where(TokenPool.day_key == day_key),
                ).one_or_none()
                if pool is None:
                    raise RuntimeError(f"Token pool not initialized for day {day_key}")
                return RotationResult(
                    day_key=day_key,
                    applied=False,
                    unused_free_tokens=0,
                    distributed_tokens=0,
                )

            free_rows = session.exec(
                select(UserAllocation).where(
                    UserAllocation.day_key == day_key,
                    UserAllocation.tier == Tier.FREE.value,
                ),
            ).all()
            unused = sum(max(row.free_granted - row.free_used, 0) for row in free_rows)

            paid_rows = session.exec(
                select(UserAllocation)
                .join(AppUser, col(AppUser.user_id) == col(UserAllocation.user_id))
                .where(
                    UserAllocation.day_key == day_key,
                    col(UserAllocation.tier).in_([tier.value for tier in ROTATION_CAPS]),
                    col(AppUser.active).is_(True),
                ),
            ).all()
            ordered = sorted(paid_rows, key=lambda row: (TIER_RANK[Tier(row.tier)], row.user_id))

            remaining = unused
            recipients: list[RotationRecipient] = []
            for row in ordered:
                if remaining <= 0:
                    break
                tier = Tier(row.tier)
                cap = ROTATION_CAPS[tier]
                tokens = min(remaining, max(cap - row.paid_granted, 0))
                if tokens <= 0:
                    continue
                result = session.exec(
                    sa_update(UserAllocation)
                    .where(
                        col(UserAllocation.user_id) == row.user_id,
                        col(UserAllocation.day_key) == day_key,
                        col(UserAllocation.paid_granted) + tokens <= cap,
                    )
                    .values(
                        paid_granted=col(UserAllocation.paid_granted) + tokens,
                        total_granted=col(UserAllocation.total_granted) + tokens,
                        rotation_bonus=col(UserAllocation.rotation_bonus) + tokens,
                        updated_at=to_db_datetime(now),
                    )
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    continue
                remaining -= tokens
                recipients.append(RotationRecipient(user_id=row.user_id, tier=tier, tokens=tokens))

            distributed = unused - remaining
            session.exec(
                sa_update(TokenPool)
                .where(col(TokenPool.day_key) == day_key)
                .values(free_tokens_rotated=distributed),
            )
            session.commit()
            return RotationResult(
                day_key=day_key,
                applied=True,
                unused_free_tokens=unused,
                distributed_tokens=distributed,
                recipients=recipients,
            )

    def get_allocation(self, *, user_id: str, day_key: str) -> UserAllocationView | None:
        with Session(self.engine) as session:
            return self._find_allocation(session=session, user_id=user_id, day_key=day_key)

    def allocation_totals(self, *, day_key: str) -> tuple[int, int, int, int]:
        """Return (total allocated, total used, free users, paid users) for a day."""

        with Session(self.engine) as session:
            allocated, used = session.exec(
                select(
                    func.coalesce(func.sum(UserAllocation.total_granted), 0),
                    func.coalesce(func.sum(UserAllocation.total_used), 0),
                ).where(UserAllocation.day_key == day_key),
            ).one()
            tier_counts = session.exec(
                select(UserAllocation.tier, func.count())
                .where(UserAllocation.day_key == day_key)
                .group_by(UserAllocation.tier),
            ).all()
        counts = {tier: int(count) for tier, count in tier_counts}
        free_users = counts.get(Tier.FREE.value, 0)
        paid_users = sum(count for tier, count in counts.items() if Tier(tier).is_paid)
        return int(allocated), int(used), free_users, paid_users

    def _denial_reason(self, *, session: Session, user_id: str, day_key: str) -> DenialReason:
        user = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
        if user is None:
            return DenialReason.UNKNOWN_USER
        if not user.active:
            return DenialReason.USER_INACTIVE
        if self._find_allocation(session=session, user_id=user_id, day_key=day_key) is None:
            return DenialReason.NO_ALLOCATION
        return DenialReason.INSUFFICIENT_TOKENS

    def _find_allocation(
        self,
        *,
        session: Session,
        user_id: str,
        day_key: str,
    ) -> UserAllocationView | None:
        row = session.exec(
            select(UserAllocation).where(
                UserAllocation.user_id == user_id,
                UserAllocation.day_key == day_key,
            ),
        ).one_or_none()
        return _to_allocation_view(row) if row is not None else None

    def _get_allocation_row(
        self,
        *,
        session: Session,
        user_id: str,
        day_key: str,
    ) -> UserAllocation:
        return session.exec(
            select(UserAllocation).where(
                UserAllocation.user_id == user_id,
                UserAllocation.day_key == day_key,
            ),
        ).one()


def _to_pool_view(row: TokenPool) -> TokenPoolView:
    return TokenPoolView(
        day_key=row.day_key,
        free_tokens=row.free_tokens,
        paid_tokens=row.paid_tokens,
        total_tokens=row.total_tokens,
        contributed_tokens=row.contributed_tokens,
        contributor_count=row.contributor_count,
        free_tokens_rotated=row.free_tokens_rotated,
        last_rotation=optional_utc(row.rotated_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_allocation_view(row: UserAllocation) -> UserAllocationView:
    return UserAllocationView(
        user_id=row.user_id,
        day_key=row.day_key,
        tier=Tier(row.tier),
        free_granted=row.free_granted,
        paid_granted=row.paid_granted,
        total_granted=row.total_granted,
        free_used=row.free_used,
        paid_used=row.paid_used,
        total_used=row.total_used,
        rotation_bonus=row.rotation_bonus,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


