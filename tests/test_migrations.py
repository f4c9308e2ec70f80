from pathlib import Path

import allure
from sqlalchemy import text

from generation_broker.accounts.repository import UserRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = UserRepository(tmp_path / "migrations.db")
    repository.init_schema()
    # Second run is a no-op.
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name != 'alembic_version'
                  AND name NOT LIKE 'sqlite_%'
                ORDER BY name
                """,
            ),
        ).scalars().all()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    repository.close()

    assert version == "20261019_0002"
    assert list(tables) == [
        "generation_job_events",
        "generation_jobs",
        "queue_controls",
        "token_pools",
        "user_token_allocations",
        "users",
    ]
    assert str(journal_mode).lower() == "wal"
