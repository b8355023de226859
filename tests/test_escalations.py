from __future__ import annotations

import allure
import pytest
from sqlalchemy import text

from overseer.errors import (
    AlreadyResolvedError,
    InvalidOptionError,
    NotFoundError,
    ValidationError,
)
from overseer.orchestrator.models import (
    FailureClass,
    OutcomeCreate,
    OutcomeView,
    TaskCreate,
    TaskPhase,
    TaskStatus,
)
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.escalator import EscalationEngine, OptionAction, option_action
from overseer.oversight.models import (
    AnsweredBy,
    EscalationQuestion,
    EscalationStatus,
    EscalationTrigger,
    QuestionOption,
    Severity,
    TriggerType,
)
from overseer.oversight.repository import OversightRepository

pytestmark = [
    allure.epic("Escalation Engine"),
    allure.feature("Escalation Lifecycle"),
]

_OPTIONS = [
    QuestionOption(id="csv", label="CSV", description="Plain CSV", implications="Fast"),
    QuestionOption(id="xlsx", label="Excel workbook"),
]


def _raise(
    engine: EscalationEngine,
    outcome_id: str,
    *,
    trigger_type: TriggerType = TriggerType.MULTIPLE_APPROACHES,
    text_: str = "Which export format should finance receive?",
    **kwargs,
):
    return engine.create_escalation(
        outcome_id,
        EscalationTrigger(type=trigger_type, evidence=["format unspecified in brief"]),
        EscalationQuestion(text=text_, context="Brief only says 'export'.", options=_OPTIONS),
        **kwargs,
    )


def test_create_escalation_persists_trigger_question_and_options(
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    created = _raise(engine, outcome.outcome_id)

    loaded = engine.get_escalation(created.escalation_id)
    assert loaded.status == EscalationStatus.PENDING
    assert loaded.severity == Severity.LOW
    assert loaded.trigger.type == TriggerType.MULTIPLE_APPROACHES
    assert loaded.trigger.evidence == ["format unspecified in brief"]
    assert loaded.question.text == "Which export format should finance receive?"
    assert loaded.question.context == "Brief only says 'export'."
    assert loaded.question.options == _OPTIONS
    assert loaded.answer is None
    assert loaded.resolution_time() is None
    assert [item.escalation_id for item in engine.list_pending_escalations()] == [
        created.escalation_id,
    ]


def test_answer_records_choice_and_resolution_time(
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    created = _raise(engine, outcome.outcome_id)

    answered = engine.answer_escalation(created.escalation_id, "csv", "Finance uses Sheets")

    assert answered.status == EscalationStatus.ANSWERED
    assert answered.answer is not None
    assert answered.answer.option == "csv"
    assert answered.answer.context == "Finance uses Sheets"
    assert answered.answer.answered_by == AnsweredBy.HUMAN
    assert answered.answer.confidence is None
    elapsed = engine.resolution_time(answered)
    assert elapsed is not None
    assert elapsed.total_seconds() >= 0
    assert engine.list_pending_escalations(outcome.outcome_id) == []


def test_answer_rejects_unknown_option_and_second_answer(
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    created = _raise(engine, outcome.outcome_id)

    with pytest.raises(InvalidOptionError) as excinfo:
        engine.answer_escalation(created.escalation_id, "pdf")
    assert excinfo.value.allowed == ["csv", "xlsx"]
    assert engine.get_escalation(created.escalation_id).is_pending

    engine.answer_escalation(created.escalation_id, "xlsx")
    with pytest.raises(AlreadyResolvedError):
        engine.answer_escalation(created.escalation_id, "csv")
    with pytest.raises(AlreadyResolvedError):
        engine.dismiss_escalation(created.escalation_id, "too late")
    assert engine.get_escalation(created.escalation_id).answer.option == "xlsx"


def test_answer_confidence_must_be_a_probability(
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    created = _raise(engine, outcome.outcome_id)

    with pytest.raises(ValidationError):
        engine.answer_escalation(created.escalation_id, "csv", confidence=1.5)

    answered = engine.answer_escalation(
        created.escalation_id,
        "csv",
        answered_by=AnsweredBy.AUTO,
        confidence=0.9,
    )
    assert answered.answer.answered_by == AnsweredBy.AUTO
    assert answered.answer.confidence == pytest.approx(0.9)


def test_dismiss_unblocks_affected_tasks(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    task = tasks_repo.create_task(
        TaskCreate(
            outcome_id=outcome.outcome_id,
            title="write exporter",
            phase=TaskPhase.INFRASTRUCTURE,
        ),
    )
    created = _raise(engine, outcome.outcome_id, affected_task_ids=[task.task_id, task.task_id])
    assert created.affected_task_ids == [task.task_id]
    assert tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE) is None

    dismissed = engine.dismiss_escalation(created.escalation_id, "format decided offline")

    assert dismissed.status == EscalationStatus.DISMISSED
    assert dismissed.dismiss_reason == "format decided offline"
    assert dismissed.dismissed_at is not None
    assert dismissed.answer is None
    claimed = tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE)
    assert claimed is not None
    assert claimed.task_id == task.task_id


def test_create_escalation_validates_input(
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    with pytest.raises(ValidationError):
        _raise(engine, outcome.outcome_id, trigger_type=TriggerType.UNKNOWN)
    with pytest.raises(ValidationError):
        _raise(engine, outcome.outcome_id, text_="   ")
    with pytest.raises(ValidationError):
        engine.create_escalation(
            outcome.outcome_id,
            EscalationTrigger(type=TriggerType.COMPLEXITY),
            EscalationQuestion(
                text="Split the exporter?",
                options=[
                    QuestionOption(id="yes", label="Yes"),
                    QuestionOption(id="yes", label="Y"),
                ],
            ),
        )
    with pytest.raises(NotFoundError):
        _raise(engine, "missing-outcome")
    with pytest.raises(NotFoundError):
        _raise(engine, outcome.outcome_id, affected_task_ids=["missing-task"])
    with pytest.raises(NotFoundError):
        engine.get_escalation("missing-escalation")


def test_trigger_type_parsing() -> None:
    assert TriggerType.parse(" Missing_Capability ") == TriggerType.MISSING_CAPABILITY
    with pytest.raises(ValidationError):
        TriggerType.parse("quantum")
    with pytest.raises(ValidationError):
        TriggerType.parse("unknown")
    assert TriggerType.decode("quantum") == TriggerType.UNKNOWN


def test_stored_unrecognized_trigger_reads_back_as_unknown(
    oversight_repo: OversightRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    created = _raise(engine, outcome.outcome_id)
    with oversight_repo.engine.begin() as connection:
        connection.execute(
            text(
                "UPDATE escalations SET trigger_type = 'from-the-future' "
                "WHERE escalation_id = :id",
            ),
            {"id": created.escalation_id},
        )

    loaded = engine.get_escalation(created.escalation_id)

    assert loaded.trigger.type == TriggerType.UNKNOWN
    assert loaded.question.option_ids() == ["csv", "xlsx"]


def test_severity_follows_risk_rules(
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    security = _raise(
        engine,
        outcome.outcome_id,
        text_="Should the exporter store the finance API key in the repo?",
    )
    destructive = _raise(
        engine,
        outcome.outcome_id,
        text_="Can we delete last year's exports?",
    )
    failure = _raise(engine, outcome.outcome_id, trigger_type=TriggerType.TASK_FAILURE)

    assert security.severity == Severity.CRITICAL
    assert destructive.severity == Severity.HIGH
    assert failure.severity == Severity.HIGH


def test_answer_patterns_count_chosen_options(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    for option in ("csv", "csv", "xlsx"):
        created = _raise(engine, outcome.outcome_id)
        engine.answer_escalation(created.escalation_id, option)
    _raise(engine, outcome.outcome_id)
    dismissed = _raise(engine, outcome.outcome_id, trigger_type=TriggerType.COMPLEXITY)
    engine.dismiss_escalation(dismissed.escalation_id)

    assert engine.answer_patterns(outcome.outcome_id) == {
        "multiple-approaches": {"csv": 2, "xlsx": 1},
    }
    assert engine.answer_patterns("other-outcome") == {}


_FAILURE_OPTIONS = [
    QuestionOption(id="retry", label="Retry"),
    QuestionOption(id="skip", label="Skip"),
    QuestionOption(id="abort", label="Abort"),
]
_GATE_OPTIONS = [
    QuestionOption(id="proceed", label="Proceed"),
    QuestionOption(id="stop", label="Stop"),
    QuestionOption(id="abort", label="Abort"),
]


def _failed_infrastructure_task(tasks_repo: OrchestratorRepository, outcome_id: str) -> str:
    task = tasks_repo.create_task(
        TaskCreate(
            outcome_id=outcome_id,
            title="provision bucket",
            phase=TaskPhase.INFRASTRUCTURE,
            max_attempts=1,
        ),
    )
    tasks_repo.claim_task(task.task_id, worker_id="worker-1")
    tasks_repo.start_task(task.task_id, worker_id="worker-1")
    tasks_repo.fail_task(
        task.task_id,
        failure_class=FailureClass.NON_RETRYABLE,
        error_summary="bucket quota exceeded",
        retryable=False,
    )
    return task.task_id


def _failure_escalation(engine: EscalationEngine, outcome_id: str, task_id: str):
    return engine.create_escalation(
        outcome_id,
        EscalationTrigger(type=TriggerType.TASK_FAILURE, task_id=task_id),
        EscalationQuestion(text="Provisioning failed permanently.", options=_FAILURE_OPTIONS),
        affected_task_ids=[task_id],
    )


def _gate(engine: EscalationEngine, outcome_id: str, affected_task_ids=()):
    return engine.create_escalation(
        outcome_id,
        EscalationTrigger(type=TriggerType.BLOCKING_DECISION),
        EscalationQuestion(text="Can provisioning go ahead?", options=_GATE_OPTIONS),
        affected_task_ids=affected_task_ids,
    )


def _pending_task(tasks_repo: OrchestratorRepository, outcome_id: str, title: str) -> str:
    return tasks_repo.create_task(
        TaskCreate(outcome_id=outcome_id, title=title, phase=TaskPhase.INFRASTRUCTURE),
    ).task_id


@pytest.mark.parametrize(
    ("option_id", "action"),
    [
        ("retry", OptionAction.REQUEUE),
        ("increase-attempts", OptionAction.REQUEUE),
        ("skip", OptionAction.ACCEPT_FAILURE),
        ("stop", OptionAction.HOLD),
        ("abort", OptionAction.HOLD_OUTCOME),
        ("proceed", OptionAction.PROCEED),
        ("csv", OptionAction.PROCEED),
    ],
)
def test_option_ids_map_to_task_actions(option_id: str, action: OptionAction) -> None:
    assert option_action(option_id) == action


def test_retry_answer_requeues_failed_task(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    task_id = _failed_infrastructure_task(tasks_repo, outcome.outcome_id)
    escalation = _failure_escalation(engine, outcome.outcome_id, task_id)

    answered = engine.answer_escalation(escalation.escalation_id, "retry")

    assert answered.hold_active is False
    task = tasks_repo.get_task(task_id)
    assert task.status == TaskStatus.PENDING
    assert task.max_attempts == 2
    assert tasks_repo.get_outcome(outcome.outcome_id).infrastructure_ready is False
    assert tasks_repo.phase_counts(outcome.outcome_id)[TaskPhase.INFRASTRUCTURE].failed == 0
    claimed = tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE)
    assert claimed is not None
    assert claimed.task_id == task_id


def test_skip_answer_accepts_the_failure(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    task_id = _failed_infrastructure_task(tasks_repo, outcome.outcome_id)
    escalation = _failure_escalation(engine, outcome.outcome_id, task_id)
    assert tasks_repo.unresolved_failed_tasks(outcome.outcome_id, TaskPhase.INFRASTRUCTURE)

    engine.answer_escalation(escalation.escalation_id, "skip")

    assert tasks_repo.get_task(task_id).status == TaskStatus.FAILED
    assert tasks_repo.unresolved_failed_tasks(outcome.outcome_id, TaskPhase.INFRASTRUCTURE) == []


def test_requeue_option_is_reserved_for_humans(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    task_id = _failed_infrastructure_task(tasks_repo, outcome.outcome_id)
    escalation = _failure_escalation(engine, outcome.outcome_id, task_id)

    with pytest.raises(ValidationError, match="only a human"):
        engine.answer_escalation(
            escalation.escalation_id,
            "retry",
            answered_by=AnsweredBy.AUTO,
            confidence=0.99,
        )

    assert engine.get_escalation(escalation.escalation_id).is_pending
    assert tasks_repo.get_task(task_id).status == TaskStatus.FAILED


def test_stop_answer_keeps_affected_tasks_blocked_until_released(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    task_id = _pending_task(tasks_repo, outcome.outcome_id, "provision bucket")
    escalation = _gate(engine, outcome.outcome_id, [task_id])

    answered = engine.answer_escalation(escalation.escalation_id, "stop")

    assert answered.status == EscalationStatus.ANSWERED
    assert answered.hold_active is True
    assert tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE) is None
    assert [item.escalation_id for item in engine.list_held_escalations()] == [
        escalation.escalation_id,
    ]

    released = engine.release_hold(escalation.escalation_id)

    assert released.hold_active is False
    assert engine.list_held_escalations() == []
    claimed = tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE)
    assert claimed is not None
    assert claimed.task_id == task_id
    with pytest.raises(ValidationError, match="not holding"):
        engine.release_hold(escalation.escalation_id)


def test_proceed_answer_releases_affected_tasks(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    task_id = _pending_task(tasks_repo, outcome.outcome_id, "provision bucket")
    escalation = _gate(engine, outcome.outcome_id, [task_id])
    assert tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE) is None

    answered = engine.answer_escalation(escalation.escalation_id, "proceed")

    assert answered.hold_active is False
    claimed = tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE)
    assert claimed is not None
    assert claimed.task_id == task_id


def test_abort_answer_holds_all_pending_work_of_the_outcome(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    _pending_task(tasks_repo, outcome.outcome_id, "provision bucket")
    _pending_task(tasks_repo, outcome.outcome_id, "provision queue")
    other = tasks_repo.create_outcome(OutcomeCreate(name="Unrelated outcome"))
    other_task_id = _pending_task(tasks_repo, other.outcome_id, "provision cache")
    escalation = _gate(engine, outcome.outcome_id)

    engine.answer_escalation(escalation.escalation_id, "abort")

    assert tasks_repo.claim_next_task(outcome.outcome_id, TaskPhase.INFRASTRUCTURE) is None
    assert tasks_repo.count_claimable(outcome.outcome_id, TaskPhase.INFRASTRUCTURE) == 0
    claimed = tasks_repo.claim_next_task(other.outcome_id, TaskPhase.INFRASTRUCTURE)
    assert claimed is not None
    assert claimed.task_id == other_task_id

    engine.release_hold(escalation.escalation_id)

    assert tasks_repo.count_claimable(outcome.outcome_id, TaskPhase.INFRASTRUCTURE) == 2


def test_create_escalation_leaves_caller_trigger_untouched(
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    trigger = EscalationTrigger(type="complexity", evidence=["exporter touches 40 files"])

    created = engine.create_escalation(
        outcome.outcome_id,
        trigger,
        EscalationQuestion(text="Split the exporter?", options=_OPTIONS),
    )
    trigger.evidence.append("added later")

    assert trigger.type == "complexity"
    assert created.trigger.type == TriggerType.COMPLEXITY
    stored = engine.get_escalation(created.escalation_id)
    assert stored.trigger.evidence == ["exporter touches 40 files"]
