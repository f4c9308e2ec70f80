"""Initial broker schema: users, token pools, allocations, generation jobs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_users_user_id", "users", ["user_id"])
    op.create_index("ix_users_display_name", "users", ["display_name"])
    op.create_index("ix_users_tier", "users", ["tier"])
    op.create_index("ix_users_active", "users", ["active"])

    op.create_table(
        "token_pools",
        sa.Column("day_key", sa.String(), primary_key=True),
        sa.Column("free_tokens", sa.Integer(), nullable=False),
        sa.Column("paid_tokens", sa.Integer(), nullable=False),
        sa.Column("total_tokens", sa.Integer(), nullable=False),
        sa.Column("contributed_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("contributor_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_tokens_rotated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rotated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "user_token_allocations",
        sa.Column(
            "user_id",
            sa.String(),
            sa.ForeignKey("users.user_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("day_key", sa.String(), primary_key=True),
        sa.Column("tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("free_granted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_granted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_granted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rotation_bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "free_used >= 0 AND paid_used >= 0",
            name="ck_allocation_used_non_negative",
        ),
        sa.CheckConstraint("free_used <= free_granted", name="ck_allocation_free_used"),
        sa.CheckConstraint("paid_used <= paid_granted", name="ck_allocation_paid_used"),
        sa.CheckConstraint("total_used <= total_granted", name="ck_allocation_total_used"),
    )
    op.create_index("idx_user_token_allocations_day", "user_token_allocations", ["day_key"])
    op.create_index("ix_user_token_allocations_tier", "user_token_allocations", ["tier"])

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column(
            "user_id",
            sa.String(),
            sa.ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("day_key", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="120"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("dead_letter_reason", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_generation_jobs_job_id", "generation_jobs", ["job_id"], unique=True)
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"])
    op.create_index("ix_generation_jobs_day_key", "generation_jobs", ["day_key"])
    op.create_index("ix_generation_jobs_priority", "generation_jobs", ["priority"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])
    op.create_index("ix_generation_jobs_failure_class", "generation_jobs", ["failure_class"])
    op.create_index(
        "ix_generation_jobs_dead_letter_reason",
        "generation_jobs",
        ["dead_letter_reason"],
    )
    op.create_index("ix_generation_jobs_worker_id", "generation_jobs", ["worker_id"])
    op.create_index(
        "idx_generation_jobs_queue",
        "generation_jobs",
        ["status", "priority", "run_after", "created_at"],
    )

    op.create_table(
        "generation_job_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "job_id",
            sa.String(),
            sa.ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_generation_job_events_job_id", "generation_job_events", ["job_id"])
    op.create_index(
        "ix_generation_job_events_event_type",
        "generation_job_events",
        ["event_type"],
    )
    op.create_index(
        "idx_generation_job_events_job_time",
        "generation_job_events",
        ["job_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("generation_job_events")
    op.drop_table("generation_jobs")
    op.drop_table("user_token_allocations")
    op.drop_table("token_pools")
    op.drop_table("users")
