"""Domain models for outcomes, tasks, workers and orchestration runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from overseer.oversight.models import AutoResolveMode


class OutcomeStatus(str, Enum):
    """Outcome lifecycle states."""

    DRAFT = "draft"
    ACTIVE = "active"
    DORMANT = "dormant"
    ACHIEVED = "achieved"
    ARCHIVED = "archived"


class TaskPhase(str, Enum):
    """Ordered stages; infrastructure always precedes execution."""

    INFRASTRUCTURE = "infrastructure"
    EXECUTION = "execution"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    MISSING_CAPABILITY = "missing_capability"
    ACCESS_OR_AUTH = "access_or_auth"


class OrchestrationPhase(str, Enum):
    INFRASTRUCTURE = "infrastructure"
    EXECUTION = "execution"
    COMPLETE = "complete"


@dataclass(slots=True)
class OutcomeCreate:
    """Input payload for creating an outcome."""

    name: str
    brief: str = ""
    outcome_id: str | None = None
    parent_id: str | None = None
    completion_criteria: tuple[str, ...] = ()
    auto_resolve_mode: AutoResolveMode | str = AutoResolveMode.MANUAL
    auto_resolve_threshold: float = 0.8


@dataclass(slots=True)
class OutcomeView:
    outcome_id: str
    name: str
    brief: str
    status: OutcomeStatus
    parent_id: str | None
    infrastructure_ready: bool
    auto_resolve_mode: AutoResolveMode
    auto_resolve_threshold: float
    completion_criteria: list[str]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    outcome_id: str
    title: str
    description: str = ""
    phase: TaskPhase = TaskPhase.EXECUTION
    priority: int = 0
    required_capabilities: tuple[str, ...] = ()
    max_attempts: int = 3
    task_id: str | None = None
    from_review: bool = False


@dataclass(slots=True)
class TaskView:
    """Readable task view for orchestrator, backends and CLI."""

    task_id: str
    outcome_id: str
    title: str
    description: str
    phase: TaskPhase
    status: TaskStatus
    priority: int
    required_capabilities: list[str]
    attempts: int
    max_attempts: int
    worker_id: str | None
    failure_class: FailureClass | None
    error_summary: str | None
    from_review: bool
    claimed_at: datetime | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime
    heartbeat_at: datetime | None = None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkerView:
    worker_id: str
    outcome_id: str
    task_id: str | None
    phase: TaskPhase
    status: WorkerStatus
    cost: float
    error_summary: str | None
    started_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class PhaseCounts:
    """Task counts per status within one phase."""

    pending: int = 0
    claimed: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def in_flight(self) -> int:
        return self.claimed + self.running

    @property
    def unfinished(self) -> int:
        return self.pending + self.claimed + self.running

    @property
    def total(self) -> int:
        return self.unfinished + self.completed + self.failed


@dataclass(slots=True)
class OrchestrationOptions:
    max_infrastructure_workers: int = 3
    max_execution_workers: int = 1
    skip_validation: bool = False
    auto_resolve: bool = True
    wait_for_escalations: bool = False
    poll_interval_seconds: float = 0.5
    max_iterations: int | None = None
    max_run_seconds: float | None = None
    stale_task_seconds: float | None = 600.0


@dataclass(slots=True)
class OrchestrationResult:
    success: bool
    phase: OrchestrationPhase
    message: str
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class OrchestrationState:
    outcome_id: str
    current_phase: OrchestrationPhase
    infrastructure_workers: list[WorkerView]
    execution_workers: list[WorkerView]
