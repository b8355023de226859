"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from overseer.orchestrator.models import OutcomeCreate, OutcomeView
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.escalator import EscalationEngine
from overseer.oversight.repository import OversightRepository

ECHO_AGENT_MODULE = "overseer.orchestrator.backend.echo_agent"


@pytest.fixture()
def echo_agent_template() -> str:
    """Command template running the bundled echo agent under this interpreter."""

    return f"{sys.executable} -m {ECHO_AGENT_MODULE} --task-file {{task_file}}"


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "overseer.db"


@pytest.fixture()
def tasks_repo(db_path: Path) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def oversight_repo(
    db_path: Path,
    tasks_repo: OrchestratorRepository,
) -> Iterator[OversightRepository]:
    repository = OversightRepository(db_path)
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def engine(
    oversight_repo: OversightRepository,
    tasks_repo: OrchestratorRepository,
) -> EscalationEngine:
    return EscalationEngine(oversight_repo, tasks_repo)


@pytest.fixture()
def outcome(tasks_repo: OrchestratorRepository) -> OutcomeView:
    return tasks_repo.create_outcome(
        OutcomeCreate(
            name="Ship billing export",
            brief="Export invoices as CSV for finance.",
            completion_criteria=("CSV export endpoint works", "Finance sign-off received"),
        ),
    )
