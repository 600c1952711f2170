from pathlib import Path

import allure
from sqlalchemy import text

from agentdesk.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    assert repository.schema_revision() is None

    repository.init_schema()

    with repository.engine.connect() as connection:
        tables = connection.execute(
            text(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name IN ('jobs', 'job_events', 'pending_actions') ORDER BY name",
            ),
        ).scalars()
        table_names = list(tables)
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar()

    assert repository.schema_revision() == "20261016_0001"
    assert table_names == ["job_events", "jobs", "pending_actions"]
    assert str(journal_mode).lower() == "wal"
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "twice.db")
    repository.init_schema()
    repository.init_schema()

    assert repository.schema_revision() == "20261016_0001"
    assert repository.list_jobs() == []
    repository.close()
