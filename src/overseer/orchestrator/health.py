"""Outcome health reporting and infrastructure checks."""

from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass, field

from overseer.orchestrator.models import (
    PhaseCounts,
    TaskPhase,
    TaskStatus,
    TaskView,
    WorkerStatus,
    WorkerView,
)
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.models import EscalationStatus, Severity
from overseer.oversight.repository import OversightRepository


@dataclass(slots=True)
class OutcomeHealth:
    outcome_id: str
    phase_counts: dict[TaskPhase, PhaseCounts]
    failed_tasks: list[TaskView]
    pending_escalations: int
    pending_by_severity: dict[Severity, int] = field(default_factory=dict)
    active_workers: list[WorkerView] = field(default_factory=list)
    total_cost: float = 0.0

    @property
    def healthy(self) -> bool:
        return not self.failed_tasks and not self.pending_by_severity.get(Severity.CRITICAL)


def outcome_health(
    tasks: OrchestratorRepository,
    oversight: OversightRepository,
    outcome_id: str,
) -> OutcomeHealth:
    """Aggregate task, escalation and worker state of one outcome."""

    tasks.get_outcome(outcome_id)
    pending = oversight.list_escalations(outcome_id=outcome_id, status=EscalationStatus.PENDING)
    by_severity: dict[Severity, int] = {}
    for escalation in pending:
        by_severity[escalation.severity] = by_severity.get(escalation.severity, 0) + 1
    return OutcomeHealth(
        outcome_id=outcome_id,
        phase_counts=tasks.phase_counts(outcome_id),
        failed_tasks=tasks.list_tasks(outcome_id, status=TaskStatus.FAILED),
        pending_escalations=len(pending),
        pending_by_severity=by_severity,
        active_workers=tasks.list_workers(outcome_id, status=WorkerStatus.RUNNING),
        total_cost=tasks.total_worker_cost(outcome_id),
    )


def executable_capability_validator(
    tasks: OrchestratorRepository,
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> Callable[[str], list[str]]:
    """Build a validator requiring every task capability to resolve to an executable."""

    def validate(outcome_id: str) -> list[str]:
        required: set[str] = set()
        for task in tasks.list_tasks(outcome_id):
            required.update(task.required_capabilities)
        return [
            f"missing capability: {capability}"
            for capability in sorted(required)
            if which(capability) is None
        ]

    return validate
