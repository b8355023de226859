"""Controllers for outcome, task and orchestration CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from overseer.config import Settings
from overseer.errors import ValidationError
from overseer.orchestrator.backend import CommandWorkerBackend
from overseer.orchestrator.health import executable_capability_validator, outcome_health
from overseer.orchestrator.models import (
    OrchestrationOptions,
    OutcomeCreate,
    OutcomeStatus,
    OutcomeView,
    TaskCreate,
    TaskPhase,
    TaskStatus,
    TaskView,
)
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.orchestrator.runner import TaskOrchestrator, current_phase
from overseer.oversight.auto_resolver import AutoResolver
from overseer.oversight.capabilities import HeuristicConfidenceScorer
from overseer.oversight.escalator import EscalationEngine
from overseer.oversight.observer import ObservationCollector
from overseer.oversight.repository import OversightRepository

_OUTCOME_ACTIONS = ("activate", "pause", "achieve", "archive")


@dataclass(slots=True)
class OutcomeCreateCommand:
    """CLI input for outcome creation."""

    db_path: Path | None
    name: str
    brief: str
    parent_id: str | None
    criteria: tuple[str, ...]
    auto_resolve_mode: str | None
    auto_resolve_threshold: float | None


@dataclass(slots=True)
class OutcomeListCommand:
    """CLI input for outcome listing."""

    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class OutcomeTransitionCommand:
    """CLI input for activate/pause/achieve/archive operations."""

    db_path: Path | None
    outcome_id: str
    action: str


@dataclass(slots=True)
class OutcomeParentCommand:
    """CLI input for re-parenting an outcome."""

    db_path: Path | None
    outcome_id: str
    parent_id: str | None


@dataclass(slots=True)
class OutcomeInspectCommand:
    """CLI input for outcome health inspection."""

    db_path: Path | None
    outcome_id: str


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for task creation."""

    db_path: Path | None
    outcome_id: str
    title: str
    description: str
    phase: str
    priority: int
    capabilities: tuple[str, ...]
    max_attempts: int | None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    outcome_id: str
    phase: str | None
    status: str | None


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskRequeueCommand:
    """CLI input for re-queueing a permanently failed task."""

    db_path: Path | None
    task_id: str
    extra_attempts: int


@dataclass(slots=True)
class OrchestrateRunCommand:
    """CLI input for a foreground orchestration run."""

    db_path: Path | None
    outcome_id: str
    skip_validation: bool
    auto_resolve: bool
    wait_for_escalations: bool
    max_iterations: int | None
    max_run_seconds: float | None


@dataclass(slots=True)
class OrchestrateStateCommand:
    """CLI input for orchestration state inspection."""

    db_path: Path | None
    outcome_id: str


class OrchestratorCliController:
    """Coordinates outcome, task and orchestration CLI operations."""

    def create_outcome(self, command: OutcomeCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            outcome = repository.create_outcome(
                OutcomeCreate(
                    name=command.name,
                    brief=command.brief,
                    parent_id=command.parent_id,
                    completion_criteria=command.criteria,
                    auto_resolve_mode=(
                        command.auto_resolve_mode or settings.auto_resolve.default_mode
                    ),
                    auto_resolve_threshold=(
                        command.auto_resolve_threshold
                        if command.auto_resolve_threshold is not None
                        else settings.auto_resolve.default_threshold
                    ),
                ),
            )
        return [f"Outcome created: {_outcome_line(outcome)}"]

    def list_outcomes(self, command: OutcomeListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_enum(OutcomeStatus, command.status, "outcome status")
        with _repository(settings) as repository:
            outcomes = repository.list_outcomes(status=status)
        if not outcomes:
            return ["No outcomes found."]
        return [_outcome_line(outcome) for outcome in outcomes]

    def transition_outcome(self, command: OutcomeTransitionCommand) -> list[str]:
        if command.action not in _OUTCOME_ACTIONS:
            raise ValidationError(f"Unsupported outcome action: {command.action!r}")
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            transition = getattr(repository, f"{command.action}_outcome")
            outcome = transition(command.outcome_id)
        return [f"Outcome updated: {_outcome_line(outcome)}"]

    def set_parent(self, command: OutcomeParentCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            outcome = repository.set_parent(command.outcome_id, command.parent_id)
        return [f"Outcome updated: {_outcome_line(outcome)}"]

    def inspect_outcome(self, command: OutcomeInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repositories(settings) as (repository, oversight):
            outcome = repository.get_outcome(command.outcome_id)
            health = outcome_health(repository, oversight, command.outcome_id)

        lines = [
            _outcome_line(outcome),
            f"Brief: {outcome.brief or '-'}",
            f"Auto-resolve: mode={outcome.auto_resolve_mode.value} "
            f"threshold={outcome.auto_resolve_threshold:.2f}",
            f"Infrastructure ready: {outcome.infrastructure_ready}",
        ]
        lines.extend(f"Criterion: {criterion}" for criterion in outcome.completion_criteria)
        for phase, counts in health.phase_counts.items():
            lines.append(
                f"Tasks[{phase.value}]: pending={counts.pending} claimed={counts.claimed} "
                f"running={counts.running} completed={counts.completed} failed={counts.failed}",
            )
        severity_summary = ", ".join(
            f"{severity.value}={count}"
            for severity, count in sorted(
                health.pending_by_severity.items(),
                key=lambda item: item[0].rank,
            )
        )
        lines.append(
            f"Pending escalations: {health.pending_escalations}"
            + (f" ({severity_summary})" if severity_summary else ""),
        )
        lines.append(
            f"Active workers: {len(health.active_workers)} "
            f"total_cost={health.total_cost:.4f} healthy={health.healthy}",
        )
        lines.extend(
            f"Failed task: {task.task_id} {task.title!r} "
            f"class={task.failure_class.value if task.failure_class else '-'}"
            for task in health.failed_tasks
        )
        return lines

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        phase = _parse_enum(TaskPhase, command.phase, "task phase")
        with _repository(settings) as repository:
            task = repository.create_task(
                TaskCreate(
                    outcome_id=command.outcome_id,
                    title=command.title,
                    description=command.description,
                    phase=phase or TaskPhase.EXECUTION,
                    priority=command.priority,
                    required_capabilities=command.capabilities,
                    max_attempts=(
                        command.max_attempts
                        if command.max_attempts is not None
                        else settings.orchestrator.default_max_attempts
                    ),
                ),
            )
        return [f"Task created: {_task_line(task)}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        phase = _parse_enum(TaskPhase, command.phase, "task phase")
        status = _parse_enum(TaskStatus, command.status, "task status")
        with _repository(settings) as repository:
            repository.get_outcome(command.outcome_id)
            tasks = repository.list_tasks(command.outcome_id, phase=phase, status=status)
        if not tasks:
            return ["No tasks found."]
        return [_task_line(task) for task in tasks]

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(command.task_id)
            events = repository.task_events(command.task_id)

        lines = [
            _task_line(task),
            f"Description: {task.description or '-'}",
            f"Capabilities: {', '.join(task.required_capabilities) or '-'}",
            f"Worker: {task.worker_id or '-'}",
        ]
        if task.error_summary:
            lines.append(f"Error: {task.error_summary}")
        for event in events:
            transition = ""
            if event.status_from or event.status_to:
                source = event.status_from.value if event.status_from else "-"
                target = event.status_to.value if event.status_to else "-"
                transition = f" {source}->{target}"
            lines.append(
                f"Event: {event.created_at.isoformat()} {event.event_type}{transition}",
            )
        return lines

    def requeue_task(self, command: TaskRequeueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.requeue_task(
                command.task_id,
                extra_attempts=command.extra_attempts,
            )
        return [f"Task re-queued: {_task_line(task)}"]

    def run_orchestration(self, command: OrchestrateRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        if not settings.orchestrator.worker_command_template.strip():
            raise ValidationError(
                "OVERSEER_WORKER_COMMAND_TEMPLATE must be set to run orchestration.",
            )
        backend = CommandWorkerBackend(
            command_template=settings.orchestrator.worker_command_template,
            workdir_root=settings.orchestrator.workdir_root,
            timeout_seconds=settings.orchestrator.worker_timeout_seconds,
        )
        options = OrchestrationOptions(
            max_infrastructure_workers=settings.orchestrator.max_infrastructure_workers,
            max_execution_workers=settings.orchestrator.max_execution_workers,
            skip_validation=command.skip_validation,
            auto_resolve=command.auto_resolve and settings.auto_resolve.during_orchestration,
            wait_for_escalations=command.wait_for_escalations,
            poll_interval_seconds=settings.orchestrator.poll_interval_seconds,
            max_iterations=(
                command.max_iterations
                if command.max_iterations is not None
                else settings.orchestrator.max_iterations or None
            ),
            max_run_seconds=(
                command.max_run_seconds
                if command.max_run_seconds is not None
                else settings.orchestrator.max_run_seconds or None
            ),
            stale_task_seconds=settings.orchestrator.stale_task_seconds,
        )

        with open_repositories(settings) as (repository, oversight):
            escalations = EscalationEngine(oversight, repository)
            orchestrator = TaskOrchestrator(
                repository,
                backend,
                collector=ObservationCollector(oversight, escalations, repository),
                auto_resolver=AutoResolver(
                    escalations,
                    HeuristicConfidenceScorer(
                        attempts_lookup=lambda task_id: repository.get_task(task_id).attempts,
                    ),
                    repository,
                ),
                infrastructure_validator=executable_capability_validator(repository),
                transient_exit_codes=settings.orchestrator.transient_exit_codes,
            )
            result = orchestrator.run_orchestrated(command.outcome_id, options)
            total_cost = repository.total_worker_cost(command.outcome_id)

        lines = [
            "Orchestration finished: "
            f"success={result.success} phase={result.phase.value} cost={total_cost:.4f}",
            f"Message: {result.message}",
        ]
        lines.extend(f"Error: {error}" for error in result.errors)
        return lines

    def orchestration_state(self, command: OrchestrateStateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            outcome = repository.get_outcome(command.outcome_id)
            counts = repository.phase_counts(command.outcome_id)
            workers = repository.list_workers(command.outcome_id)

        infrastructure = counts[TaskPhase.INFRASTRUCTURE]
        execution = counts[TaskPhase.EXECUTION]
        phase = current_phase(outcome.infrastructure_ready, counts).value
        lines = [
            f"Outcome: {outcome.outcome_id} status={outcome.status.value} phase={phase}",
            f"Infrastructure: done={infrastructure.completed}/{infrastructure.total} "
            f"failed={infrastructure.failed}",
            f"Execution: done={execution.completed}/{execution.total} failed={execution.failed}",
        ]
        lines.extend(
            f"Worker: {worker.worker_id} phase={worker.phase.value} "
            f"status={worker.status.value} task={worker.task_id or '-'} cost={worker.cost:.4f}"
            for worker in workers
        )
        return lines


def _outcome_line(outcome: OutcomeView) -> str:
    return (
        f"outcome_id={outcome.outcome_id} name={outcome.name!r} "
        f"status={outcome.status.value} parent={outcome.parent_id or '-'}"
    )


def _task_line(task: TaskView) -> str:
    return (
        f"task_id={task.task_id} phase={task.phase.value} status={task.status.value} "
        f"priority={task.priority} attempts={task.attempts}/{task.max_attempts} "
        f"title={task.title!r}"
    )


def _parse_enum(enum_type, raw: str | None, label: str):
    if raw is None:
        return None
    try:
        return enum_type(raw.strip().lower())
    except ValueError as error:
        raise ValidationError(f"Unsupported {label}: {raw!r}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def open_repositories(
    settings: Settings,
) -> Iterator[tuple[OrchestratorRepository, OversightRepository]]:
    oversight = OversightRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        with _repository(settings) as repository:
            yield repository, oversight
    finally:
        oversight.close()
