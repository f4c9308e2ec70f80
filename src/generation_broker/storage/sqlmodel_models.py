"""SQLModel ORM tables for broker storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    text,
)
from sqlmodel import Field, SQLModel


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    tier: str = Field(default="free", index=True)
    active: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, server_default=text("1"), index=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TokenPool(SQLModel, table=True):
    __tablename__ = "token_pools"  # type: ignore[bad-override]

    day_key: str = Field(primary_key=True)
    free_tokens: int
    paid_tokens: int
    total_tokens: int
    contributed_tokens: int = 0
    contributor_count: int = 0
    free_tokens_rotated: int = 0
    rotated_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UserAllocation(SQLModel, table=True):
    __tablename__ = "user_token_allocations"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "free_used >= 0 AND paid_used >= 0",
            name="ck_allocation_used_non_negative",
        ),
        CheckConstraint("free_used <= free_granted", name="ck_allocation_free_used"),
        CheckConstraint("paid_used <= paid_granted", name="ck_allocation_paid_used"),
        CheckConstraint("total_used <= total_granted", name="ck_allocation_total_used"),
        Index("idx_user_token_allocations_day", "day_key"),
    )

    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    day_key: str = Field(primary_key=True)
    tier: str = Field(default="free", index=True)
    free_granted: int = 0
    paid_granted: int = 0
    total_granted: int = 0
    free_used: int = 0
    paid_used: int = 0
    total_used: int = 0
    rotation_bonus: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generation_jobs_queue", "status", "priority", "run_after", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(unique=True, index=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    day_key: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=3, index=True)
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    timeout_seconds: int = Field(default=120)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failure_class: str | None = Field(default=None, index=True)
    dead_letter_reason: str | None = Field(default=None, index=True)
    worker_id: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationJobEvent(SQLModel, table=True):
    __tablename__ = "generation_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueControl(SQLModel, table=True):
    __tablename__ = "queue_controls"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    paused: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    paused_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
