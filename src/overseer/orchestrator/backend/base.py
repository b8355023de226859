"""Backend interface for worker execution."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from overseer.errors import ValidationError
from overseer.orchestrator.models import TaskView
from overseer.oversight.models import ObservationKind, ObservationSignal, QuestionOption


class WorkerRunState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerBackendError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class WorkerHandle:
    """Backend-side reference to one spawned worker.

    Failure details are filled in by the backend once the worker stops.
    """

    worker_id: str
    task_id: str
    outcome_id: str
    exit_code: int | None = None
    timed_out: bool = False
    error_summary: str | None = None
    transient_hint: bool | None = None
    cost: float = 0.0


class WorkerBackend(Protocol):
    """Protocol implemented by worker execution backends."""

    def spawn_worker(self, task: TaskView, *, worker_id: str) -> WorkerHandle:
        """Start executing a task; raise WorkerBackendError if it cannot start."""

    def worker_status(self, handle: WorkerHandle) -> WorkerRunState:
        """Return current state without blocking."""

    def terminate_worker(self, handle: WorkerHandle) -> None:
        """Stop a running worker; no-op if it already finished."""

    def observations(self, handle: WorkerHandle) -> list[ObservationSignal]:
        """Drain observations emitted since the previous call.

        Draining a stopped worker is its final call; backends may forget the handle.
        """


def signal_from_payload(payload: Mapping[str, Any]) -> ObservationSignal:
    """Build an observation signal from a decoded JSON object."""

    raw_kind = payload.get("kind", ObservationKind.PROGRESS.value)
    try:
        kind = ObservationKind(str(raw_kind).strip().lower())
    except ValueError as error:
        raise ValidationError(f"Unknown observation kind: {raw_kind!r}") from error

    message = str(payload.get("message", "")).strip()
    if not message:
        raise ValidationError("Observation message must not be empty.")

    evidence = payload.get("evidence") or []
    if not isinstance(evidence, list):
        raise ValidationError("Observation evidence must be a list.")

    raw_options = payload.get("options") or []
    if not isinstance(raw_options, list):
        raise ValidationError("Observation options must be a list.")
    options: list[QuestionOption] = []
    for item in raw_options:
        if not isinstance(item, Mapping) or "id" not in item:
            raise ValidationError("Observation option must be an object with an id.")
        options.append(
            QuestionOption(
                id=str(item["id"]),
                label=str(item.get("label", item["id"])),
                description=str(item.get("description", "")),
                implications=str(item.get("implications", "")),
            ),
        )

    trigger_type = payload.get("trigger_type")
    return ObservationSignal(
        kind=kind,
        message=message,
        evidence=tuple(str(item) for item in evidence),
        options=tuple(options),
        trigger_type=str(trigger_type) if trigger_type else None,
    )
