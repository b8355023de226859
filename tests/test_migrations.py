from pathlib import Path

import allure
from sqlalchemy import inspect, text

from overseer.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
    assert version == "20261019_0001"

    tables = set(inspect(repository.engine).get_table_names())
    assert {
        "outcomes",
        "tasks",
        "task_events",
        "workers",
        "escalations",
        "escalation_task_blocks",
        "observations",
        "review_cycles",
    } <= tables
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    worker_indexes = {
        index["name"] for index in inspect(repository.engine).get_indexes("workers")
    }
    assert "ix_workers_task_id" in worker_indexes
    repository.close()
