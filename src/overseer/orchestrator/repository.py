"""Persistent outcome, task and worker repository."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from overseer.errors import ConcurrencyConflict, NotFoundError, ValidationError
from overseer.orchestrator.models import (
    FailureClass,
    OutcomeCreate,
    OutcomeStatus,
    OutcomeView,
    PhaseCounts,
    TaskCreate,
    TaskEventView,
    TaskPhase,
    TaskStatus,
    TaskView,
    WorkerStatus,
    WorkerView,
)
from overseer.oversight.models import AutoResolveConfig, AutoResolveMode, EscalationStatus
from overseer.storage.alembic_runner import upgrade_head
from overseer.storage.codec import dump_json, dump_str_list, load_mapping, load_str_list
from overseer.storage.common import (
    build_sqlite_engine,
    optional_utc,
    persistence_errors,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from overseer.storage.sqlmodel_models import (
    Escalation,
    EscalationTaskBlock,
    Outcome,
    Task,
    TaskEvent,
    Worker,
)

logger = logging.getLogger(__name__)

_OUTCOME_TRANSITIONS: dict[OutcomeStatus, frozenset[OutcomeStatus]] = {
    OutcomeStatus.ACTIVE: frozenset({OutcomeStatus.DRAFT, OutcomeStatus.DORMANT}),
    OutcomeStatus.DORMANT: frozenset({OutcomeStatus.ACTIVE}),
    OutcomeStatus.ACHIEVED: frozenset({OutcomeStatus.ACTIVE}),
    OutcomeStatus.ARCHIVED: frozenset(
        {
            OutcomeStatus.DRAFT,
            OutcomeStatus.ACTIVE,
            OutcomeStatus.DORMANT,
            OutcomeStatus.ACHIEVED,
        },
    ),
}


class OrchestratorRepository:
    """Outcome, task and worker persistence backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- outcomes -------------------------------------------------------------

    def create_outcome(self, payload: OutcomeCreate) -> OutcomeView:
        """Create a draft outcome."""

        outcome, _ = self.create_outcome_with_tasks(payload, ())
        return outcome

    def create_outcome_with_tasks(
        self,
        payload: OutcomeCreate,
        tasks: Sequence[TaskCreate],
        *,
        incorporate_escalation_ids: Sequence[str] = (),
    ) -> tuple[OutcomeView, int]:
        """Create a draft outcome with its tasks in a single transaction.

        Escalations in ``incorporate_escalation_ids`` are tagged as absorbed by
        the new outcome in the same transaction; the count tagged is returned
        with the outcome. Nothing is written when any step fails.
        """

        row = _new_outcome_row(payload)
        task_rows = [_new_task_row(task) for task in tasks]
        for task_row in task_rows:
            if task_row.outcome_id != row.outcome_id:
                raise ValidationError(
                    f"Task {task_row.title!r} belongs to outcome {task_row.outcome_id}, "
                    f"not {row.outcome_id}.",
                )

        with persistence_errors("create_outcome"), Session(self.engine) as session:
            if payload.parent_id is not None:
                _require_outcome(session, payload.parent_id)
            session.add(row)
            session.flush()
            for task_row in task_rows:
                self._add_task(session, task_row)
            incorporated = 0
            if incorporate_escalation_ids:
                result = session.exec(
                    sa_update(Escalation)
                    .where(
                        col(Escalation.escalation_id).in_(list(incorporate_escalation_ids)),
                        col(Escalation.incorporated_into_outcome_id).is_(None),
                    )
                    .values(incorporated_into_outcome_id=row.outcome_id)
                    .execution_options(synchronize_session=False),
                )
                incorporated = int(result.rowcount or 0)
            session.commit()
            session.refresh(row)
            outcome = _to_outcome_view(row)
        logger.info(
            "Outcome created: outcome_id=%s name=%r tasks=%d",
            outcome.outcome_id,
            outcome.name,
            len(task_rows),
        )
        return outcome, incorporated

    def get_outcome(self, outcome_id: str) -> OutcomeView:
        with persistence_errors("get_outcome"), Session(self.engine) as session:
            return _to_outcome_view(_require_outcome(session, outcome_id))

    def list_outcomes(
        self,
        *,
        status: OutcomeStatus | None = None,
        parent_id: str | None = None,
    ) -> list[OutcomeView]:
        with persistence_errors("list_outcomes"), Session(self.engine) as session:
            statement = select(Outcome).order_by(col(Outcome.created_at).asc())
            if status is not None:
                statement = statement.where(col(Outcome.status) == status.value)
            if parent_id is not None:
                statement = statement.where(col(Outcome.parent_id) == parent_id)
            rows = session.exec(statement).all()
        return [_to_outcome_view(row) for row in rows]

    def activate_outcome(self, outcome_id: str) -> OutcomeView:
        return self._transition_outcome(outcome_id, OutcomeStatus.ACTIVE)

    def pause_outcome(self, outcome_id: str) -> OutcomeView:
        return self._transition_outcome(outcome_id, OutcomeStatus.DORMANT)

    def achieve_outcome(self, outcome_id: str) -> OutcomeView:
        return self._transition_outcome(outcome_id, OutcomeStatus.ACHIEVED)

    def archive_outcome(self, outcome_id: str) -> OutcomeView:
        return self._transition_outcome(outcome_id, OutcomeStatus.ARCHIVED)

    def would_create_cycle(self, outcome_id: str, parent_id: str) -> bool:
        """Whether making ``parent_id`` the parent of ``outcome_id`` forms a loop."""

        with persistence_errors("would_create_cycle"), Session(self.engine) as session:
            return _ancestry_contains(session, start_id=parent_id, target_id=outcome_id)

    def set_parent(self, outcome_id: str, parent_id: str | None) -> OutcomeView:
        """Move an outcome under a new parent, or detach it with ``None``."""

        now = to_db_datetime(utc_now())
        with persistence_errors("set_parent"), Session(self.engine) as session:
            row = _require_outcome(session, outcome_id)
            if parent_id is not None:
                _require_outcome(session, parent_id)
                if _ancestry_contains(session, start_id=parent_id, target_id=outcome_id):
                    raise ValidationError(
                        f"Parent {parent_id} for outcome {outcome_id} would create a cycle.",
                    )
            row.parent_id = parent_id
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_outcome_view(row)

    def update_auto_resolve_config(
        self,
        outcome_id: str,
        *,
        mode: AutoResolveMode | str,
        threshold: float,
    ) -> OutcomeView:
        """Persist a validated auto-resolve policy for an outcome."""

        config = AutoResolveConfig(
            mode=AutoResolveMode.parse(mode),
            confidence_threshold=threshold,
        )
        now = to_db_datetime(utc_now())
        with persistence_errors("update_auto_resolve_config"), Session(self.engine) as session:
            row = _require_outcome(session, outcome_id)
            row.auto_resolve_mode = config.mode.value
            row.auto_resolve_threshold = config.confidence_threshold
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_outcome_view(row)

    def set_completion_criteria(self, outcome_id: str, criteria: Sequence[str]) -> OutcomeView:
        cleaned = _clean_criteria(criteria)
        now = to_db_datetime(utc_now())
        with persistence_errors("set_completion_criteria"), Session(self.engine) as session:
            row = _require_outcome(session, outcome_id)
            row.completion_criteria_json = dump_str_list(cleaned) if cleaned else None
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_outcome_view(row)

    def mark_infrastructure_ready(self, outcome_id: str) -> bool:
        """Unlock execution-phase claims; returns False if already unlocked."""

        now = to_db_datetime(utc_now())
        with persistence_errors("mark_infrastructure_ready"), Session(self.engine) as session:
            _require_outcome(session, outcome_id)
            result = session.exec(
                sa_update(Outcome)
                .where(
                    col(Outcome.outcome_id) == outcome_id,
                    col(Outcome.infrastructure_ready).is_(False),
                )
                .values(infrastructure_ready=True, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.info("Infrastructure ready: outcome_id=%s", outcome_id)
        return True

    def _transition_outcome(self, outcome_id: str, target: OutcomeStatus) -> OutcomeView:
        allowed = _OUTCOME_TRANSITIONS[target]
        now = to_db_datetime(utc_now())
        with persistence_errors("transition_outcome"), Session(self.engine) as session:
            row = _require_outcome(session, outcome_id)
            current = OutcomeStatus(row.status)
            if current not in allowed:
                raise ValidationError(
                    f"Outcome {outcome_id} cannot move from {current.value} to {target.value}.",
                )
            result = session.exec(
                sa_update(Outcome)
                .where(
                    col(Outcome.outcome_id) == outcome_id,
                    col(Outcome.status) == current.value,
                )
                .values(status=target.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConcurrencyConflict(
                    f"Outcome {outcome_id} changed concurrently; retry the transition.",
                )
            session.commit()
        logger.info(
            "Outcome transition: outcome_id=%s %s -> %s",
            outcome_id,
            current.value,
            target.value,
        )
        return self.get_outcome(outcome_id)

    # -- tasks ----------------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task."""

        row = _new_task_row(payload)
        with persistence_errors("create_task"), Session(self.engine) as session:
            _require_outcome(session, payload.outcome_id)
            self._add_task(session, row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView:
        with persistence_errors("get_task"), Session(self.engine) as session:
            return _to_task_view(_require_task(session, task_id))

    def list_tasks(
        self,
        outcome_id: str,
        *,
        phase: TaskPhase | None = None,
        status: TaskStatus | None = None,
    ) -> list[TaskView]:
        """List tasks of an outcome in claim order."""

        with persistence_errors("list_tasks"), Session(self.engine) as session:
            statement = (
                select(Task)
                .where(col(Task.outcome_id) == outcome_id)
                .order_by(
                    col(Task.priority).desc(),
                    col(Task.created_at).asc(),
                    col(Task.task_id).asc(),
                )
            )
            if phase is not None:
                statement = statement.where(col(Task.phase) == phase.value)
            if status is not None:
                statement = statement.where(col(Task.status) == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def claim_next_task(
        self,
        outcome_id: str,
        phase: TaskPhase,
        *,
        worker_id: str | None = None,
    ) -> TaskView | None:
        """Atomically claim the most urgent claimable task of one phase."""

        phase = TaskPhase(phase)
        while True:
            now = to_db_datetime(utc_now())
            with persistence_errors("claim_next_task"), Session(self.engine) as session:
                statement = (
                    select(Task)
                    .where(
                        col(Task.outcome_id) == outcome_id,
                        col(Task.phase) == phase.value,
                        *_claimable_conditions(outcome_id=outcome_id, phase=phase),
                    )
                    .order_by(
                        col(Task.priority).desc(),
                        col(Task.created_at).asc(),
                        col(Task.task_id).asc(),
                    )
                    .limit(1)
                )
                candidate = session.exec(statement).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    _claim_statement(
                        task_id=candidate.task_id,
                        outcome_id=outcome_id,
                        phase=phase,
                        worker_id=worker_id,
                        now=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = _reload_task(session, candidate.task_id)
                self._add_event(
                    session=session,
                    task_id=claimed.task_id,
                    event_type="claimed",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.CLAIMED,
                    details={"worker_id": worker_id, "phase": phase.value},
                )
                session.commit()
                return _to_task_view(claimed)

    def claim_task(self, task_id: str, *, worker_id: str | None = None) -> TaskView:
        """Claim one specific task or raise ConcurrencyConflict."""

        now = to_db_datetime(utc_now())
        with persistence_errors("claim_task"), Session(self.engine) as session:
            row = _require_task(session, task_id)
            phase = TaskPhase(row.phase)
            result = session.exec(
                _claim_statement(
                    task_id=task_id,
                    outcome_id=row.outcome_id,
                    phase=phase,
                    worker_id=worker_id,
                    now=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                current = _reload_task(session, task_id)
                raise ConcurrencyConflict(
                    f"Task {task_id} is not claimable (status={current.status}); "
                    "claim a different task.",
                )
            claimed = _reload_task(session, task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="claimed",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.CLAIMED,
                details={"worker_id": worker_id, "phase": phase.value},
            )
            session.commit()
            return _to_task_view(claimed)

    def start_task(self, task_id: str, *, worker_id: str) -> TaskView | None:
        """Move a claimed task to running and consume one attempt."""

        now = to_db_datetime(utc_now())
        with persistence_errors("start_task"), Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.CLAIMED.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    attempts=col(Task.attempts) + 1,
                    worker_id=worker_id,
                    started_at=now,
                    heartbeat_at=now,
                    finished_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            started = _reload_task(session, task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="started",
                status_from=TaskStatus.CLAIMED,
                status_to=TaskStatus.RUNNING,
                details={"worker_id": worker_id, "attempt": started.attempts},
            )
            session.commit()
            return _to_task_view(started)

    def complete_task(self, task_id: str) -> bool:
        """Mark a running task as completed."""

        now = to_db_datetime(utc_now())
        with persistence_errors("complete_task"), Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={},
            )
            session.commit()
            return True

    def fail_task(
        self,
        task_id: str,
        *,
        failure_class: FailureClass,
        error_summary: str,
        retryable: bool,
    ) -> TaskStatus | None:
        """Record a failed attempt; requeue while the retry budget lasts.

        Returns the resulting status, or ``None`` if the task was not running.
        """

        now = to_db_datetime(utc_now())
        with persistence_errors("fail_task"), Session(self.engine) as session:
            row = _require_task(session, task_id)
            if row.status != TaskStatus.RUNNING.value:
                return None
            attempts = row.attempts
            max_attempts = row.max_attempts
            requeue = retryable and attempts < max_attempts
            target = TaskStatus.PENDING if requeue else TaskStatus.FAILED
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=target.value,
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    worker_id=None if requeue else row.worker_id,
                    finished_at=None if requeue else now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retry_scheduled" if requeue else "failed",
                status_from=TaskStatus.RUNNING,
                status_to=target,
                details={
                    "failure_class": failure_class.value,
                    "attempt": attempts,
                    "max_attempts": max_attempts,
                    "error_summary": error_summary,
                },
            )
            session.commit()
        if target == TaskStatus.FAILED:
            logger.warning(
                "Task failed permanently: task_id=%s attempts=%d class=%s",
                task_id,
                attempts,
                failure_class.value,
            )
        return target

    def release_task(self, task_id: str, *, reason: str) -> bool:
        """Return a claimed or running task to the pending queue."""

        now = to_db_datetime(utc_now())
        with persistence_errors("release_task"), Session(self.engine) as session:
            row = _require_task(session, task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.CLAIMED, TaskStatus.RUNNING}:
                return False
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == previous.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    worker_id=None,
                    claimed_at=None,
                    started_at=None,
                    heartbeat_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="released",
                status_from=previous,
                status_to=TaskStatus.PENDING,
                details={"reason": reason},
            )
            session.commit()
            return True

    def requeue_task(self, task_id: str, *, extra_attempts: int = 1) -> TaskView:
        """Return a permanently failed task to pending on explicit request."""

        if extra_attempts < 1:
            raise ValidationError("extra_attempts must be >= 1.")
        now = to_db_datetime(utc_now())
        with persistence_errors("requeue_task"), Session(self.engine) as session:
            row = _require_task(session, task_id)
            if row.status != TaskStatus.FAILED.value:
                raise ValidationError(
                    f"Task {task_id} is {row.status}; only failed tasks can be requeued.",
                )
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.FAILED.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    max_attempts=col(Task.attempts) + extra_attempts,
                    worker_id=None,
                    finished_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConcurrencyConflict(f"Task {task_id} changed concurrently.")
            requeued = _reload_task(session, task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="requeued",
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.PENDING,
                details={"max_attempts": requeued.max_attempts},
            )
            session.commit()
            return _to_task_view(requeued)

    def touch_tasks(self, task_ids: Sequence[str]) -> int:
        """Refresh the heartbeat of tasks whose workers are still alive."""

        if not task_ids:
            return 0
        now = to_db_datetime(utc_now())
        with persistence_errors("touch_tasks"), Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id).in_(list(task_ids)),
                    col(Task.status).in_([TaskStatus.CLAIMED.value, TaskStatus.RUNNING.value]),
                )
                .values(heartbeat_at=now)
                .execution_options(synchronize_session=False),
            )
            session.commit()
            return int(result.rowcount or 0)

    def recover_stale_tasks(
        self,
        outcome_id: str,
        *,
        stale_after: timedelta,
        exclude_task_ids: Sequence[str] = (),
    ) -> int:
        """Return claimed or running tasks with a silent heartbeat to pending.

        Their running worker rows are stopped in the same transaction.
        """

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        stale_statuses = [TaskStatus.CLAIMED.value, TaskStatus.RUNNING.value]
        with persistence_errors("recover_stale_tasks"), Session(self.engine) as session:
            statement = select(Task).where(
                col(Task.outcome_id) == outcome_id,
                col(Task.status).in_(stale_statuses),
                func.coalesce(col(Task.heartbeat_at), col(Task.updated_at)) < cutoff,
            )
            if exclude_task_ids:
                statement = statement.where(col(Task.task_id).not_in(list(exclude_task_ids)))
            recovered = 0
            for row in session.exec(statement).all():
                previous = TaskStatus(row.status)
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == row.task_id,
                        col(Task.status) == previous.value,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        worker_id=None,
                        claimed_at=None,
                        started_at=None,
                        heartbeat_at=None,
                        updated_at=to_db_datetime(now),
                    )
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    continue
                session.exec(
                    sa_update(Worker)
                    .where(
                        col(Worker.task_id) == row.task_id,
                        col(Worker.status) == WorkerStatus.RUNNING.value,
                    )
                    .values(
                        status=WorkerStatus.STOPPED.value,
                        error_summary="stale worker recovered",
                        finished_at=to_db_datetime(now),
                    )
                    .execution_options(synchronize_session=False),
                )
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="stale_recovered",
                    status_from=previous,
                    status_to=TaskStatus.PENDING,
                    details={
                        "worker_id": row.worker_id,
                        "stale_after_seconds": stale_after.total_seconds(),
                    },
                )
                recovered += 1
            session.commit()
        if recovered:
            logger.warning(
                "Recovered stale tasks: outcome_id=%s count=%d",
                outcome_id,
                recovered,
            )
        return recovered

    def task_events(self, task_id: str) -> list[TaskEventView]:
        """Return the task's audit trail, oldest first."""

        with persistence_errors("task_events"), Session(self.engine) as session:
            _require_task(session, task_id)
            rows = session.exec(
                select(TaskEvent)
                .where(col(TaskEvent.task_id) == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
        return [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                event_type=row.event_type,
                status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
                status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_mapping(row.details_json, field_name="task_events.details"),
            )
            for row in rows
        ]

    def phase_counts(self, outcome_id: str) -> dict[TaskPhase, PhaseCounts]:
        """Task counts per status for both phases."""

        counts = {phase: PhaseCounts() for phase in TaskPhase}
        with persistence_errors("phase_counts"), Session(self.engine) as session:
            rows = session.exec(
                select(Task.phase, Task.status, func.count(col(Task.task_id)))
                .where(col(Task.outcome_id) == outcome_id)
                .group_by(col(Task.phase), col(Task.status)),
            ).all()
        for phase_value, status_value, count in rows:
            setattr(counts[TaskPhase(phase_value)], TaskStatus(status_value).value, int(count))
        return counts

    def unresolved_failed_tasks(self, outcome_id: str, phase: TaskPhase) -> list[TaskView]:
        """Failed tasks without an answered or dismissed escalation about them."""

        resolved_refs = sa_select(col(Escalation.trigger_task_id)).where(
            col(Escalation.status).in_(
                [EscalationStatus.ANSWERED.value, EscalationStatus.DISMISSED.value],
            ),
            col(Escalation.trigger_task_id).is_not(None),
        )
        with persistence_errors("unresolved_failed_tasks"), Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(
                    col(Task.outcome_id) == outcome_id,
                    col(Task.phase) == phase.value,
                    col(Task.status) == TaskStatus.FAILED.value,
                    col(Task.task_id).not_in(resolved_refs),
                )
                .order_by(col(Task.created_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def count_claimable(self, outcome_id: str, phase: TaskPhase) -> int:
        """Pending tasks of one phase that a claim could pick up right now."""

        phase = TaskPhase(phase)
        with persistence_errors("count_claimable"), Session(self.engine) as session:
            total = session.exec(
                select(func.count(col(Task.task_id))).where(
                    col(Task.outcome_id) == outcome_id,
                    col(Task.phase) == phase.value,
                    *_claimable_conditions(outcome_id=outcome_id, phase=phase),
                ),
            ).one()
        return int(total)

    # -- workers --------------------------------------------------------------

    def register_worker(
        self,
        *,
        outcome_id: str,
        task_id: str,
        phase: TaskPhase,
        worker_id: str | None = None,
    ) -> WorkerView:
        """Record a running worker; at most one may reference a task at a time."""

        now = to_db_datetime(utc_now())
        worker_id = worker_id or f"worker-{uuid4().hex[:12]}"
        with persistence_errors("register_worker"), Session(self.engine) as session:
            row = Worker(
                worker_id=worker_id,
                outcome_id=outcome_id,
                task_id=task_id,
                phase=TaskPhase(phase).value,
                status=WorkerStatus.RUNNING.value,
                cost=0.0,
                started_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConcurrencyConflict(
                    f"Task {task_id} already has a running worker.",
                ) from error
            session.refresh(row)
            return _to_worker_view(row)

    def finish_worker(
        self,
        worker_id: str,
        *,
        status: WorkerStatus,
        cost: float = 0.0,
        error_summary: str | None = None,
    ) -> bool:
        if status == WorkerStatus.RUNNING:
            raise ValidationError("Worker cannot finish in running state.")
        now = to_db_datetime(utc_now())
        with persistence_errors("finish_worker"), Session(self.engine) as session:
            result = session.exec(
                sa_update(Worker)
                .where(
                    col(Worker.worker_id) == worker_id,
                    col(Worker.status) == WorkerStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    cost=col(Worker.cost) + cost,
                    error_summary=error_summary,
                    finished_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_workers(
        self,
        outcome_id: str,
        *,
        status: WorkerStatus | None = None,
        phase: TaskPhase | None = None,
    ) -> list[WorkerView]:
        with persistence_errors("list_workers"), Session(self.engine) as session:
            statement = (
                select(Worker)
                .where(col(Worker.outcome_id) == outcome_id)
                .order_by(col(Worker.started_at).asc(), col(Worker.worker_id).asc())
            )
            if status is not None:
                statement = statement.where(col(Worker.status) == status.value)
            if phase is not None:
                statement = statement.where(col(Worker.phase) == phase.value)
            rows = session.exec(statement).all()
        return [_to_worker_view(row) for row in rows]

    def total_worker_cost(self, outcome_id: str) -> float:
        with persistence_errors("total_worker_cost"), Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(col(Worker.cost)), 0.0)).where(
                    col(Worker.outcome_id) == outcome_id,
                ),
            ).one()
        return float(total)

    def _add_task(self, session: Session, row: Task) -> None:
        session.add(row)
        self._add_event(
            session=session,
            task_id=row.task_id,
            event_type="enqueued",
            status_from=None,
            status_to=TaskStatus.PENDING,
            details={
                "phase": row.phase,
                "priority": row.priority,
                "max_attempts": row.max_attempts,
            },
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _blocked_task_ids():
    return (
        sa_select(col(EscalationTaskBlock.task_id))
        .join(
            Escalation,
            col(Escalation.escalation_id) == col(EscalationTaskBlock.escalation_id),
        )
        .where(
            or_(
                col(Escalation.status) == EscalationStatus.PENDING.value,
                col(Escalation.hold_active).is_(True),
            ),
        )
    )


def _claimable_conditions(*, outcome_id: str, phase: TaskPhase) -> list:
    conditions = [
        col(Task.status) == TaskStatus.PENDING.value,
        col(Task.task_id).not_in(_blocked_task_ids()),
    ]
    if phase == TaskPhase.EXECUTION:
        ready_outcomes = sa_select(col(Outcome.outcome_id)).where(
            col(Outcome.outcome_id) == outcome_id,
            col(Outcome.infrastructure_ready).is_(True),
        )
        conditions.append(col(Task.outcome_id).in_(ready_outcomes))
    return conditions


def _claim_statement(
    *,
    task_id: str,
    outcome_id: str,
    phase: TaskPhase,
    worker_id: str | None,
    now,
):
    return (
        sa_update(Task)
        .where(
            col(Task.task_id) == task_id,
            *_claimable_conditions(outcome_id=outcome_id, phase=phase),
        )
        .values(
            status=TaskStatus.CLAIMED.value,
            worker_id=worker_id,
            claimed_at=now,
            heartbeat_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


def _new_outcome_row(payload: OutcomeCreate) -> Outcome:
    name = payload.name.strip()
    if not name:
        raise ValidationError("Outcome name must not be empty.")
    config = AutoResolveConfig(
        mode=AutoResolveMode.parse(payload.auto_resolve_mode),
        confidence_threshold=payload.auto_resolve_threshold,
    )
    criteria = _clean_criteria(payload.completion_criteria)
    now = to_db_datetime(utc_now())
    return Outcome(
        outcome_id=payload.outcome_id or str(uuid4()),
        name=name,
        brief=payload.brief,
        status=OutcomeStatus.DRAFT.value,
        parent_id=payload.parent_id,
        infrastructure_ready=False,
        auto_resolve_mode=config.mode.value,
        auto_resolve_threshold=config.confidence_threshold,
        completion_criteria_json=dump_str_list(criteria) if criteria else None,
        created_at=now,
        updated_at=now,
    )


def _new_task_row(payload: TaskCreate) -> Task:
    title = payload.title.strip()
    if not title:
        raise ValidationError("Task title must not be empty.")
    if payload.max_attempts < 1:
        raise ValidationError("Task max_attempts must be >= 1.")
    now = to_db_datetime(utc_now())
    return Task(
        task_id=payload.task_id or str(uuid4()),
        outcome_id=payload.outcome_id,
        title=title,
        description=payload.description,
        phase=TaskPhase(payload.phase).value,
        status=TaskStatus.PENDING.value,
        priority=payload.priority,
        required_capabilities_json=(
            dump_str_list(payload.required_capabilities)
            if payload.required_capabilities
            else None
        ),
        attempts=0,
        max_attempts=payload.max_attempts,
        from_review=payload.from_review,
        created_at=now,
        updated_at=now,
    )


def _require_outcome(session: Session, outcome_id: str) -> Outcome:
    row = session.exec(select(Outcome).where(col(Outcome.outcome_id) == outcome_id)).one_or_none()
    if row is None:
        raise NotFoundError("Outcome", outcome_id)
    return row


def _require_task(session: Session, task_id: str) -> Task:
    row = session.exec(select(Task).where(col(Task.task_id) == task_id)).one_or_none()
    if row is None:
        raise NotFoundError("Task", task_id)
    return row


def _reload_task(session: Session, task_id: str) -> Task:
    return session.exec(
        select(Task)
        .where(col(Task.task_id) == task_id)
        .execution_options(populate_existing=True),
    ).one()


def _ancestry_contains(session: Session, *, start_id: str, target_id: str) -> bool:
    current: str | None = start_id
    seen: set[str] = set()
    while current is not None and current not in seen:
        if current == target_id:
            return True
        seen.add(current)
        current = session.exec(
            select(Outcome.parent_id).where(col(Outcome.outcome_id) == current),
        ).one_or_none()
    return False


def _clean_criteria(criteria: Sequence[str]) -> list[str]:
    return [item.strip() for item in criteria if item.strip()]


def _to_outcome_view(row: Outcome) -> OutcomeView:
    return OutcomeView(
        outcome_id=row.outcome_id,
        name=row.name,
        brief=row.brief,
        status=OutcomeStatus(row.status),
        parent_id=row.parent_id,
        infrastructure_ready=bool(row.infrastructure_ready),
        auto_resolve_mode=AutoResolveMode(row.auto_resolve_mode),
        auto_resolve_threshold=float(row.auto_resolve_threshold),
        completion_criteria=load_str_list(
            row.completion_criteria_json,
            field_name="outcomes.completion_criteria",
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        outcome_id=row.outcome_id,
        title=row.title,
        description=row.description,
        phase=TaskPhase(row.phase),
        status=TaskStatus(row.status),
        priority=row.priority,
        required_capabilities=load_str_list(
            row.required_capabilities_json,
            field_name="tasks.required_capabilities",
        ),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        worker_id=row.worker_id,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        from_review=bool(row.from_review),
        claimed_at=optional_utc(row.claimed_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
    )


def _to_worker_view(row: Worker) -> WorkerView:
    return WorkerView(
        worker_id=row.worker_id,
        outcome_id=row.outcome_id,
        task_id=row.task_id,
        phase=TaskPhase(row.phase),
        status=WorkerStatus(row.status),
        cost=float(row.cost),
        error_summary=row.error_summary,
        started_at=to_utc_aware_datetime(row.started_at),
        finished_at=optional_utc(row.finished_at),
    )
