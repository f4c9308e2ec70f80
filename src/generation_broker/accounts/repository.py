"""User persistence with soft deactivation."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from generation_broker.accounts.models import Tier, UserCreate, UserView
from generation_broker.errors import UserNotFoundError
from generation_broker.storage.alembic_runner import upgrade_head
from generation_broker.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_utc_aware_datetime,
    utc_now,
)
from generation_broker.storage.sqlmodel_models import AppUser


class UserRepository:
    """User registry backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def add_user(self, payload: UserCreate) -> UserView:
        """Register a user; re-adding an existing id raises ``ValueError``."""

        now = utc_now()
        with Session(self.engine) as session:
            row = AppUser(
                user_id=payload.user_id,
                display_name=payload.display_name,
                tier=payload.tier.value,
                active=payload.active,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(f"User already exists: {payload.user_id}") from error
            session.refresh(row)
            return _to_user_view(row)

    def get_user(self, user_id: str) -> UserView | None:
        with Session(self.engine) as session:
            row = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
        return _to_user_view(row) if row is not None else None

    def list_users(self, *, active_only: bool = False) -> list[UserView]:
        with Session(self.engine) as session:
            statement = select(AppUser).order_by(col(AppUser.user_id).asc())
            if active_only:
                statement = statement.where(col(AppUser.active).is_(True))
            rows = session.exec(statement).all()
        return [_to_user_view(row) for row in rows]

    def set_tier(self, *, user_id: str, tier: Tier) -> None:
        """Change subscription tier; takes effect at the next allocation pass."""

        self._update_user(user_id=user_id, values={"tier": tier.value})

    def set_active(self, *, user_id: str, active: bool) -> None:
        """Soft-delete or reactivate a user."""

        self._update_user(user_id=user_id, values={"active": active})

    def _update_user(self, *, user_id: str, values: dict[str, object]) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AppUser)
                .where(col(AppUser.user_id) == user_id)
                .values(**values, updated_at=utc_now()),
            )
            if result.rowcount != 1:
                session.rollback()
                raise UserNotFoundError(f"User not found: {user_id}")
            session.commit()


def _to_user_view(row: AppUser) -> UserView:
    return UserView(
        user_id=row.user_id,
        display_name=row.display_name,
        tier=Tier(row.tier),
        active=bool(row.active),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
