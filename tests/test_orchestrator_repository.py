from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from overseer.errors import ConcurrencyConflict, NotFoundError, ValidationError
from overseer.orchestrator.models import (
    FailureClass,
    OutcomeCreate,
    OutcomeStatus,
    OutcomeView,
    TaskCreate,
    TaskPhase,
    TaskStatus,
    WorkerStatus,
)
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.escalator import EscalationEngine
from overseer.oversight.models import EscalationQuestion, EscalationTrigger, TriggerType

pytestmark = [
    allure.epic("Task Orchestrator"),
    allure.feature("Outcome and Task Persistence"),
]


def _task(
    repository: OrchestratorRepository,
    outcome_id: str,
    title: str,
    *,
    phase: TaskPhase = TaskPhase.EXECUTION,
    priority: int = 0,
    max_attempts: int = 3,
):
    return repository.create_task(
        TaskCreate(
            outcome_id=outcome_id,
            title=title,
            phase=phase,
            priority=priority,
            max_attempts=max_attempts,
        ),
    )


def _run_to_running(repository: OrchestratorRepository, task_id: str) -> None:
    repository.claim_task(task_id, worker_id="worker-a")
    assert repository.start_task(task_id, worker_id="worker-a") is not None


def test_outcome_lifecycle_transitions(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    assert outcome.status == OutcomeStatus.DRAFT
    assert outcome.completion_criteria == [
        "CSV export endpoint works",
        "Finance sign-off received",
    ]

    assert tasks_repo.activate_outcome(outcome.outcome_id).status == OutcomeStatus.ACTIVE
    assert tasks_repo.pause_outcome(outcome.outcome_id).status == OutcomeStatus.DORMANT
    assert tasks_repo.activate_outcome(outcome.outcome_id).status == OutcomeStatus.ACTIVE
    assert tasks_repo.achieve_outcome(outcome.outcome_id).status == OutcomeStatus.ACHIEVED
    assert tasks_repo.archive_outcome(outcome.outcome_id).status == OutcomeStatus.ARCHIVED

    with pytest.raises(ValidationError, match="cannot move from archived"):
        tasks_repo.activate_outcome(outcome.outcome_id)


def test_draft_outcome_cannot_be_achieved(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    with pytest.raises(ValidationError):
        tasks_repo.achieve_outcome(outcome.outcome_id)
    assert tasks_repo.get_outcome(outcome.outcome_id).status == OutcomeStatus.DRAFT


def test_create_outcome_rejects_blank_name_and_bad_policy(
    tasks_repo: OrchestratorRepository,
) -> None:
    with pytest.raises(ValidationError):
        tasks_repo.create_outcome(OutcomeCreate(name="   "))
    with pytest.raises(ValidationError):
        tasks_repo.create_outcome(OutcomeCreate(name="x", auto_resolve_mode="sometimes"))
    with pytest.raises(ValidationError):
        tasks_repo.create_outcome(OutcomeCreate(name="x", auto_resolve_threshold=1.5))
    assert tasks_repo.list_outcomes() == []


def test_unknown_ids_raise_not_found(tasks_repo: OrchestratorRepository) -> None:
    with pytest.raises(NotFoundError):
        tasks_repo.get_outcome("missing")
    with pytest.raises(NotFoundError):
        tasks_repo.get_task("missing")
    with pytest.raises(NotFoundError):
        tasks_repo.create_task(TaskCreate(outcome_id="missing", title="orphan"))


def test_set_parent_rejects_cycles(tasks_repo: OrchestratorRepository) -> None:
    root = tasks_repo.create_outcome(OutcomeCreate(name="root"))
    child = tasks_repo.create_outcome(OutcomeCreate(name="child", parent_id=root.outcome_id))
    grandchild = tasks_repo.create_outcome(
        OutcomeCreate(name="grandchild", parent_id=child.outcome_id),
    )

    assert tasks_repo.would_create_cycle(root.outcome_id, grandchild.outcome_id)
    assert not tasks_repo.would_create_cycle(grandchild.outcome_id, root.outcome_id)
    with pytest.raises(ValidationError, match="cycle"):
        tasks_repo.set_parent(root.outcome_id, grandchild.outcome_id)
    with pytest.raises(ValidationError, match="cycle"):
        tasks_repo.set_parent(root.outcome_id, root.outcome_id)

    detached = tasks_repo.set_parent(grandchild.outcome_id, None)
    assert detached.parent_id is None
    assert [item.outcome_id for item in tasks_repo.list_outcomes(parent_id=root.outcome_id)] == [
        child.outcome_id,
    ]


def test_claim_next_task_orders_by_priority_then_age(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    low = _task(tasks_repo, outcome.outcome_id, "low", phase=TaskPhase.INFRASTRUCTURE)
    high = _task(
        tasks_repo,
        outcome.outcome_id,
        "high",
        phase=TaskPhase.INFRASTRUCTURE,
        priority=5,
    )
    second_low = _task(tasks_repo, outcome.outcome_id, "low-2", phase=TaskPhase.INFRASTRUCTURE)

    claimed = [
        tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE)
        for _ in range(4)
    ]

    assert [task.task_id if task else None for task in claimed] == [
        high.task_id,
        low.task_id,
        second_low.task_id,
        None,
    ]
    assert all(task.status == TaskStatus.CLAIMED for task in claimed if task is not None)


def test_execution_tasks_are_not_claimable_before_infrastructure_ready(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    execution = _task(tasks_repo, outcome.outcome_id, "write exporter")

    assert tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.EXECUTION) is None
    with pytest.raises(ConcurrencyConflict):
        tasks_repo.claim_task(execution.task_id)

    assert tasks_repo.mark_infrastructure_ready(outcome.outcome_id) is True
    assert tasks_repo.mark_infrastructure_ready(outcome.outcome_id) is False

    claimed = tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.EXECUTION)
    assert claimed is not None
    assert claimed.task_id == execution.task_id


def test_claim_task_conflicts_when_already_claimed(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    task = _task(tasks_repo, outcome.outcome_id, "provision db", phase=TaskPhase.INFRASTRUCTURE)
    tasks_repo.claim_task(task.task_id, worker_id="w1")

    with pytest.raises(ConcurrencyConflict):
        tasks_repo.claim_task(task.task_id, worker_id="w2")
    assert tasks_repo.get_task(task.task_id).worker_id == "w1"


def test_concurrent_claims_never_hand_out_a_task_twice(
    db_path: Path,
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    created = {
        _task(
            tasks_repo,
            outcome.outcome_id,
            f"infra-{index}",
            phase=TaskPhase.INFRASTRUCTURE,
        ).task_id
        for index in range(12)
    }
    start = threading.Event()
    claimed: list[str] = []
    claimed_lock = threading.Lock()
    errors: list[BaseException] = []

    def claimer(name: str) -> None:
        repository = OrchestratorRepository(db_path, sqlite_busy_timeout_ms=10_000)
        try:
            start.wait(timeout=5)
            while True:
                task = repository.claim_next_task(
                    outcome.outcome_id,
                    TaskPhase.INFRASTRUCTURE,
                    worker_id=name,
                )
                if task is None:
                    return
                with claimed_lock:
                    claimed.append(task.task_id)
        except BaseException as error:  # noqa: BLE001
            errors.append(error)
        finally:
            repository.close()

    threads = [threading.Thread(target=claimer, args=(f"w{index}",)) for index in range(6)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(claimed) == len(set(claimed))
    assert set(claimed) == created


def test_fail_task_requeues_retryable_until_attempts_exhausted(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    task = _task(
        tasks_repo,
        outcome.outcome_id,
        "flaky",
        phase=TaskPhase.INFRASTRUCTURE,
        max_attempts=2,
    )

    _run_to_running(tasks_repo, task.task_id)
    assert (
        tasks_repo.fail_task(
            task.task_id,
            failure_class=FailureClass.TRANSIENT,
            error_summary="connection reset",
            retryable=True,
        )
        == TaskStatus.PENDING
    )

    _run_to_running(tasks_repo, task.task_id)
    assert (
        tasks_repo.fail_task(
            task.task_id,
            failure_class=FailureClass.TRANSIENT,
            error_summary="connection reset",
            retryable=True,
        )
        == TaskStatus.FAILED
    )

    failed = tasks_repo.get_task(task.task_id)
    assert failed.attempts == 2
    assert failed.failure_class == FailureClass.TRANSIENT
    assert [event.event_type for event in tasks_repo.task_events(task.task_id)] == [
        "enqueued",
        "claimed",
        "started",
        "retry_scheduled",
        "claimed",
        "started",
        "failed",
    ]


def test_non_retryable_failure_is_permanent_on_first_attempt(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    task = _task(tasks_repo, outcome.outcome_id, "broken", phase=TaskPhase.INFRASTRUCTURE)
    _run_to_running(tasks_repo, task.task_id)

    status = tasks_repo.fail_task(
        task.task_id,
        failure_class=FailureClass.NON_RETRYABLE,
        error_summary="bad input",
        retryable=False,
    )

    assert status == TaskStatus.FAILED
    assert tasks_repo.fail_task(
        task.task_id,
        failure_class=FailureClass.NON_RETRYABLE,
        error_summary="bad input",
        retryable=False,
    ) is None


def test_complete_task_requires_running_status(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    task = _task(tasks_repo, outcome.outcome_id, "setup", phase=TaskPhase.INFRASTRUCTURE)

    assert tasks_repo.complete_task(task.task_id) is False
    _run_to_running(tasks_repo, task.task_id)
    assert tasks_repo.complete_task(task.task_id) is True
    assert tasks_repo.complete_task(task.task_id) is False
    assert tasks_repo.get_task(task.task_id).status == TaskStatus.COMPLETED


def test_release_and_requeue(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    task = _task(
        tasks_repo,
        outcome.outcome_id,
        "setup",
        phase=TaskPhase.INFRASTRUCTURE,
        max_attempts=1,
    )
    _run_to_running(tasks_repo, task.task_id)
    assert tasks_repo.release_task(task.task_id, reason="shutdown") is True
    released = tasks_repo.get_task(task.task_id)
    assert released.status == TaskStatus.PENDING
    assert released.worker_id is None
    assert tasks_repo.release_task(task.task_id, reason="again") is False

    with pytest.raises(ValidationError, match="only failed tasks"):
        tasks_repo.requeue_task(task.task_id)

    _run_to_running(tasks_repo, task.task_id)
    tasks_repo.fail_task(
        task.task_id,
        failure_class=FailureClass.NON_RETRYABLE,
        error_summary="boom",
        retryable=False,
    )
    requeued = tasks_repo.requeue_task(task.task_id, extra_attempts=2)
    assert requeued.status == TaskStatus.PENDING
    assert requeued.max_attempts == requeued.attempts + 2


def test_pending_escalation_blocks_affected_tasks_until_answered(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    blocked = _task(tasks_repo, outcome.outcome_id, "blocked", phase=TaskPhase.INFRASTRUCTURE)
    free = _task(tasks_repo, outcome.outcome_id, "free", phase=TaskPhase.INFRASTRUCTURE)
    escalation = engine.create_escalation(
        outcome.outcome_id,
        EscalationTrigger(type=TriggerType.BLOCKING_DECISION),
        EscalationQuestion(text="Which region should the database live in?"),
        affected_task_ids=[blocked.task_id],
    )

    first = tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE)
    assert first is not None
    assert first.task_id == free.task_id
    assert tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE) is None

    engine.dismiss_escalation(escalation.escalation_id, "use default region")
    second = tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE)
    assert second is not None
    assert second.task_id == blocked.task_id


def test_register_worker_rejects_second_running_worker_for_task(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    task = _task(tasks_repo, outcome.outcome_id, "setup", phase=TaskPhase.INFRASTRUCTURE)
    worker = tasks_repo.register_worker(
        outcome_id=outcome.outcome_id,
        task_id=task.task_id,
        phase=TaskPhase.INFRASTRUCTURE,
        worker_id="worker-1",
    )
    assert worker.status == WorkerStatus.RUNNING

    with pytest.raises(ConcurrencyConflict):
        tasks_repo.register_worker(
            outcome_id=outcome.outcome_id,
            task_id=task.task_id,
            phase=TaskPhase.INFRASTRUCTURE,
            worker_id="worker-2",
        )

    assert tasks_repo.finish_worker("worker-1", status=WorkerStatus.COMPLETED, cost=0.25)
    assert not tasks_repo.finish_worker("worker-1", status=WorkerStatus.FAILED)
    assert tasks_repo.total_worker_cost(outcome.outcome_id) == pytest.approx(0.25)
    assert [item.worker_id for item in tasks_repo.list_workers(outcome.outcome_id)] == [
        "worker-1",
    ]


def test_phase_counts_cover_both_phases(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    _task(tasks_repo, outcome.outcome_id, "infra", phase=TaskPhase.INFRASTRUCTURE)
    _task(tasks_repo, outcome.outcome_id, "exec-1")
    _task(tasks_repo, outcome.outcome_id, "exec-2")

    counts = tasks_repo.phase_counts(outcome.outcome_id)

    assert counts[TaskPhase.INFRASTRUCTURE].pending == 1
    assert counts[TaskPhase.EXECUTION].pending == 2
    assert counts[TaskPhase.EXECUTION].total == 2


def test_outcome_with_tasks_is_written_in_one_transaction(
    tasks_repo: OrchestratorRepository,
) -> None:
    outcome, incorporated = tasks_repo.create_outcome_with_tasks(
        OutcomeCreate(name="Stabilize exports", outcome_id="outcome-fix"),
        [
            TaskCreate(outcome_id="outcome-fix", title="Diagnose", priority=2),
            TaskCreate(outcome_id="outcome-fix", title="Repair", priority=1),
        ],
    )

    assert incorporated == 0
    assert outcome.status == OutcomeStatus.DRAFT
    assert [task.title for task in tasks_repo.list_tasks("outcome-fix")] == [
        "Diagnose",
        "Repair",
    ]

    with pytest.raises(ValidationError, match="belongs to outcome"):
        tasks_repo.create_outcome_with_tasks(
            OutcomeCreate(name="Second", outcome_id="outcome-second"),
            [TaskCreate(outcome_id="outcome-fix", title="Misplaced")],
        )
    with pytest.raises(ValidationError):
        tasks_repo.create_outcome_with_tasks(
            OutcomeCreate(name="Third", outcome_id="outcome-third"),
            [TaskCreate(outcome_id="outcome-third", title="  ")],
        )
    assert [item.outcome_id for item in tasks_repo.list_outcomes()] == ["outcome-fix"]


def test_recover_stale_tasks_skips_fresh_and_excluded_tasks(
    tasks_repo: OrchestratorRepository,
    outcome: OutcomeView,
) -> None:
    stale = _task(tasks_repo, outcome.outcome_id, "stale", phase=TaskPhase.INFRASTRUCTURE)
    mine = _task(tasks_repo, outcome.outcome_id, "mine", phase=TaskPhase.INFRASTRUCTURE)
    for task in (stale, mine):
        tasks_repo.claim_task(task.task_id, worker_id=f"worker-{task.title}")
    tasks_repo.register_worker(
        outcome_id=outcome.outcome_id,
        task_id=stale.task_id,
        phase=TaskPhase.INFRASTRUCTURE,
        worker_id="worker-stale",
    )
    tasks_repo.start_task(stale.task_id, worker_id="worker-stale")

    assert tasks_repo.recover_stale_tasks(outcome.outcome_id, stale_after=timedelta(hours=1)) == 0

    recovered = tasks_repo.recover_stale_tasks(
        outcome.outcome_id,
        stale_after=timedelta(0),
        exclude_task_ids=[mine.task_id],
    )

    assert recovered == 1
    restored = tasks_repo.get_task(stale.task_id)
    assert restored.status == TaskStatus.PENDING
    assert restored.worker_id is None
    assert restored.heartbeat_at is None
    assert tasks_repo.get_task(mine.task_id).status == TaskStatus.CLAIMED
    [worker] = tasks_repo.list_workers(outcome.outcome_id)
    assert worker.status == WorkerStatus.STOPPED
    assert worker.error_summary == "stale worker recovered"
