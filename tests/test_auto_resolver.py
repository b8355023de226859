from __future__ import annotations

import allure
import pytest

from overseer.errors import ExternalCapabilityError, ValidationError
from overseer.orchestrator.models import OutcomeView, TaskCreate, TaskPhase
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.auto_resolver import AUTO_RESOLVED_PREFIX, AutoResolver
from overseer.oversight.capabilities import HeuristicConfidenceScorer, OptionScores
from overseer.oversight.escalator import EscalationEngine
from overseer.oversight.models import (
    AnsweredBy,
    AutoResolveConfig,
    AutoResolveMode,
    AutoResolveStatus,
    EscalationQuestion,
    EscalationStatus,
    EscalationTrigger,
    EscalationView,
    QuestionOption,
    Severity,
    TriggerType,
)

pytestmark = [
    allure.epic("Auto-Resolver"),
    allure.feature("Confidence-Gated Resolution"),
]

_OPTIONS = [QuestionOption(id="A", label="Option A"), QuestionOption(id="B", label="Option B")]


class StubScorer:
    def __init__(self, confidences: dict[str, float], *, fail_for: str | None = None) -> None:
        self.confidences = confidences
        self.fail_for = fail_for
        self.calls: list[str] = []

    def score(self, escalation: EscalationView) -> OptionScores:
        self.calls.append(escalation.escalation_id)
        if self.fail_for is not None and self.fail_for in escalation.question.text:
            raise ExternalCapabilityError("scoring service unavailable")
        return OptionScores(dict(self.confidences), "stubbed reasoning")


def _escalate(
    engine: EscalationEngine,
    outcome_id: str,
    trigger_type: TriggerType,
    question: str,
) -> EscalationView:
    return engine.create_escalation(
        outcome_id,
        EscalationTrigger(type=trigger_type),
        EscalationQuestion(text=question, options=list(_OPTIONS)),
    )


def _resolver(
    engine: EscalationEngine,
    tasks_repo: OrchestratorRepository,
    scorer,
) -> AutoResolver:
    return AutoResolver(engine, scorer, tasks_repo)


def test_semi_auto_resolves_confident_low_risk_escalation(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    resolver = _resolver(engine, tasks_repo, StubScorer({"A": 0.9, "B": 0.5}))
    resolver.update_auto_resolve_config(outcome.outcome_id, "semi-auto", 0.8)
    escalation = _escalate(
        engine,
        outcome.outcome_id,
        TriggerType.UNCLEAR_REQUIREMENT,
        "Should the export include archived invoices?",
    )
    assert escalation.severity == Severity.LOW

    batch = resolver.auto_resolve_all_pending(outcome.outcome_id)

    assert (batch.total, batch.resolved, batch.deferred, batch.failed) == (1, 1, 0, 0)
    [result] = batch.results
    assert result.status == AutoResolveStatus.RESOLVED
    assert result.selected_option == "A"
    assert result.confidence == pytest.approx(0.9)
    answered = engine.get_escalation(escalation.escalation_id)
    assert answered.status == EscalationStatus.ANSWERED
    assert answered.answer.option == "A"
    assert answered.answer.answered_by == AnsweredBy.AUTO
    assert answered.answer.confidence == pytest.approx(0.9)
    assert answered.answer.context.startswith(AUTO_RESOLVED_PREFIX)


def test_manual_mode_never_touches_escalations(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    scorer = StubScorer({"A": 1.0})
    resolver = _resolver(engine, tasks_repo, scorer)
    escalation = _escalate(engine, outcome.outcome_id, TriggerType.UNCLEAR_REQUIREMENT, "Which?")

    batch = resolver.auto_resolve_all_pending(
        outcome.outcome_id,
        AutoResolveConfig(mode=AutoResolveMode.MANUAL),
    )
    single = resolver.auto_resolve(escalation, AutoResolveConfig(mode=AutoResolveMode.MANUAL))

    assert batch.total == 0
    assert single.status == AutoResolveStatus.SKIPPED
    assert scorer.calls == []
    assert engine.get_escalation(escalation.escalation_id).is_pending


def test_low_confidence_is_deferred(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    resolver = _resolver(engine, tasks_repo, StubScorer({"A": 0.4, "B": 0.6}))
    escalation = _escalate(engine, outcome.outcome_id, TriggerType.UNCLEAR_REQUIREMENT, "Which?")

    result = resolver.auto_resolve(
        escalation,
        AutoResolveConfig(mode=AutoResolveMode.FULL_AUTO, confidence_threshold=0.8),
    )

    assert result.status == AutoResolveStatus.DEFERRED
    assert result.selected_option == "B"
    assert "below threshold" in result.reasoning
    assert engine.get_escalation(escalation.escalation_id).is_pending


def test_semi_auto_defers_but_full_auto_resolves_medium_risk(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    resolver = _resolver(engine, tasks_repo, StubScorer({"A": 0.95}))
    escalation = _escalate(
        engine,
        outcome.outcome_id,
        TriggerType.BLOCKING_DECISION,
        "Can the exporter proceed without the finance schema?",
    )
    assert escalation.severity == Severity.MEDIUM

    deferred = resolver.auto_resolve(escalation, AutoResolveConfig(mode=AutoResolveMode.SEMI_AUTO))
    assert deferred.status == AutoResolveStatus.DEFERRED
    assert "severity is medium" in deferred.reasoning
    assert engine.get_escalation(escalation.escalation_id).is_pending

    resolved = resolver.auto_resolve(escalation, AutoResolveConfig(mode=AutoResolveMode.FULL_AUTO))
    assert resolved.status == AutoResolveStatus.RESOLVED
    assert engine.get_escalation(escalation.escalation_id).answer.option == "A"

    again = resolver.auto_resolve(escalation, AutoResolveConfig(mode=AutoResolveMode.FULL_AUTO))
    assert again.status == AutoResolveStatus.SKIPPED


def test_scoring_failure_does_not_stop_the_batch(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    resolver = _resolver(engine, tasks_repo, StubScorer({"A": 0.9}, fail_for="broken"))
    first = _escalate(engine, outcome.outcome_id, TriggerType.UNCLEAR_REQUIREMENT, "broken one")
    second = _escalate(engine, outcome.outcome_id, TriggerType.UNCLEAR_REQUIREMENT, "fine one")

    batch = resolver.auto_resolve_all_pending(
        outcome.outcome_id,
        AutoResolveConfig(mode=AutoResolveMode.FULL_AUTO),
    )

    assert (batch.total, batch.resolved, batch.failed) == (2, 1, 1)
    assert [result.escalation_id for result in batch.results] == [
        first.escalation_id,
        second.escalation_id,
    ]
    assert batch.results[0].status == AutoResolveStatus.FAILED
    assert engine.get_escalation(first.escalation_id).is_pending
    assert engine.get_escalation(second.escalation_id).status == EscalationStatus.ANSWERED


def test_out_of_range_confidence_counts_as_failure(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    resolver = _resolver(engine, tasks_repo, StubScorer({"A": 1.7}))
    escalation = _escalate(engine, outcome.outcome_id, TriggerType.UNCLEAR_REQUIREMENT, "Which?")

    result = resolver.auto_resolve(escalation, AutoResolveConfig(mode=AutoResolveMode.FULL_AUTO))

    assert result.status == AutoResolveStatus.FAILED
    assert engine.get_escalation(escalation.escalation_id).is_pending


def test_config_validation(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    resolver = _resolver(engine, tasks_repo, StubScorer({}))

    with pytest.raises(ValidationError):
        resolver.update_auto_resolve_config(outcome.outcome_id, "sometimes", 0.5)
    with pytest.raises(ValidationError):
        resolver.update_auto_resolve_config(outcome.outcome_id, "full-auto", 1.5)

    config = resolver.update_auto_resolve_config(outcome.outcome_id, "FULL_AUTO", 0.6)
    assert config == AutoResolveConfig(mode=AutoResolveMode.FULL_AUTO, confidence_threshold=0.6)
    assert resolver.config_for(outcome.outcome_id) == config


def test_heuristic_scorer_shapes(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    task = tasks_repo.create_task(
        TaskCreate(outcome_id=outcome.outcome_id, title="build", phase=TaskPhase.INFRASTRUCTURE),
    )
    attempts = {task.task_id: 1}
    scorer = HeuristicConfidenceScorer(attempts_lookup=attempts.__getitem__)
    failure = engine.create_escalation(
        outcome.outcome_id,
        EscalationTrigger(type=TriggerType.TASK_FAILURE, task_id=task.task_id),
        EscalationQuestion(
            text="Task 'build' failed permanently. How should we proceed?",
            options=[
                QuestionOption(id="retry", label="Retry"),
                QuestionOption(id="skip", label="Skip"),
            ],
        ),
    )
    complexity = engine.create_escalation(
        outcome.outcome_id,
        EscalationTrigger(type=TriggerType.COMPLEXITY),
        EscalationQuestion(
            text="The exporter is large.",
            options=[
                QuestionOption(id="continue", label="Continue"),
                QuestionOption(id="break-down", label="Break into subtasks"),
            ],
        ),
    )
    security = engine.create_escalation(
        outcome.outcome_id,
        EscalationTrigger(type=TriggerType.SECURITY),
        EscalationQuestion(text="Rotate keys?", options=list(_OPTIONS)),
    )

    first_failure = scorer.score(failure)
    assert first_failure.confidences == {"retry": 0.0, "skip": 0.0}
    assert first_failure.reasoning == "Failed tasks are only requeued by a human"
    assert scorer.score(complexity).confidences == {"continue": 0.0, "break-down": 0.9}
    assert set(scorer.score(security).confidences.values()) == {0.0}

    attempts[task.task_id] = 2
    assert set(scorer.score(failure).confidences.values()) == {0.0}


class _TimesOutOnceScorer:
    def __init__(self, confidences: dict[str, float]) -> None:
        self.confidences = confidences
        self.calls = 0

    def score(self, escalation: EscalationView) -> OptionScores:
        self.calls += 1
        if self.calls == 1:
            raise TimeoutError("scoring service timed out")
        return OptionScores(dict(self.confidences), "stubbed reasoning")


def test_unexpected_scorer_exception_fails_only_that_escalation(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    scorer = _TimesOutOnceScorer({"A": 0.9})
    resolver = _resolver(engine, tasks_repo, scorer)
    first = _escalate(engine, outcome.outcome_id, TriggerType.BLOCKING_DECISION, "First gate?")
    second = _escalate(engine, outcome.outcome_id, TriggerType.BLOCKING_DECISION, "Second gate?")

    batch = resolver.auto_resolve_all_pending(
        outcome.outcome_id,
        AutoResolveConfig(mode=AutoResolveMode.FULL_AUTO, confidence_threshold=0.5),
    )

    assert scorer.calls == 2
    assert (batch.total, batch.resolved, batch.failed) == (2, 1, 1)
    assert batch.results[0].status == AutoResolveStatus.FAILED
    assert "TimeoutError" in batch.results[0].reasoning
    assert engine.get_escalation(first.escalation_id).is_pending
    assert engine.get_escalation(second.escalation_id).answer.option == "A"


def test_full_auto_never_chooses_to_requeue_failed_work(
    tasks_repo: OrchestratorRepository,
    engine: EscalationEngine,
    outcome: OutcomeView,
) -> None:
    resolver = _resolver(engine, tasks_repo, StubScorer({"retry": 0.99, "skip": 0.6}))
    config = AutoResolveConfig(mode=AutoResolveMode.FULL_AUTO, confidence_threshold=0.5)
    both = engine.create_escalation(
        outcome.outcome_id,
        EscalationTrigger(type=TriggerType.TASK_FAILURE),
        EscalationQuestion(
            text="Export failed permanently. How should we proceed?",
            options=[
                QuestionOption(id="retry", label="Retry"),
                QuestionOption(id="skip", label="Skip"),
            ],
        ),
    )
    retry_only = engine.create_escalation(
        outcome.outcome_id,
        EscalationTrigger(type=TriggerType.TASK_FAILURE),
        EscalationQuestion(
            text="Import failed permanently. Retry?",
            options=[QuestionOption(id="retry", label="Retry")],
        ),
    )

    chosen = resolver.auto_resolve(both, config)
    deferred = resolver.auto_resolve(retry_only, config)

    assert chosen.status == AutoResolveStatus.RESOLVED
    assert chosen.selected_option == "skip"
    assert deferred.status == AutoResolveStatus.DEFERRED
    assert deferred.reasoning == "Only a human may requeue failed tasks"
    assert engine.get_escalation(retry_only.escalation_id).is_pending
