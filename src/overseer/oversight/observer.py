"""Observation collector: persist worker signals and raise escalations from them."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field

from overseer.orchestrator.failure_classifier import WorkerFailureClassification
from overseer.orchestrator.models import TaskStatus, TaskView
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.escalator import EscalationEngine
from overseer.oversight.models import (
    EscalationQuestion,
    EscalationTrigger,
    EscalationView,
    ObservationKind,
    ObservationSignal,
    ObservationView,
    QuestionOption,
    TriggerType,
)
from overseer.oversight.repository import OversightRepository

logger = logging.getLogger(__name__)

EVIDENCE_CONTEXT_CHARS = 50

_AMBIGUITY_PATTERNS: tuple[tuple[re.Pattern[str], TriggerType, str], ...] = (
    (
        re.compile(r"I('m| am) (not sure|unsure|uncertain)", re.IGNORECASE),
        TriggerType.UNCLEAR_REQUIREMENT,
        "Worker expressed uncertainty",
    ),
    (
        re.compile(r"assuming (that|this)", re.IGNORECASE),
        TriggerType.UNCLEAR_REQUIREMENT,
        "Worker made assumptions",
    ),
    (
        re.compile(r"need(s)? clarification", re.IGNORECASE),
        TriggerType.UNCLEAR_REQUIREMENT,
        "Worker requested clarification",
    ),
    (
        re.compile(r"could (go either|be done|approach)", re.IGNORECASE),
        TriggerType.MULTIPLE_APPROACHES,
        "Multiple valid approaches identified",
    ),
    (
        re.compile(r"which (approach|method|way)", re.IGNORECASE),
        TriggerType.MULTIPLE_APPROACHES,
        "Decision needed between approaches",
    ),
    (
        re.compile(r"Option (A|B|1|2)", re.IGNORECASE),
        TriggerType.MULTIPLE_APPROACHES,
        "Options listed without resolution",
    ),
    (
        re.compile(r"blocked (by|on|waiting)", re.IGNORECASE),
        TriggerType.BLOCKING_DECISION,
        "Work is blocked",
    ),
    (
        re.compile(r"can('t| not) proceed", re.IGNORECASE),
        TriggerType.BLOCKING_DECISION,
        "Cannot proceed without decision",
    ),
    (
        re.compile(r"need(s)? (a |to )?(decision|input)", re.IGNORECASE),
        TriggerType.BLOCKING_DECISION,
        "Decision needed to proceed",
    ),
    (
        re.compile(r"contradict(s|ing)?", re.IGNORECASE),
        TriggerType.CONTRADICTING_INFO,
        "Contradiction detected",
    ),
    (
        re.compile(r"conflict(s|ing)? with", re.IGNORECASE),
        TriggerType.CONTRADICTING_INFO,
        "Conflicting information",
    ),
    (
        re.compile(r"inconsistent", re.IGNORECASE),
        TriggerType.CONTRADICTING_INFO,
        "Inconsistent requirements",
    ),
)

_SUGGESTED_QUESTIONS: dict[TriggerType, str] = {
    TriggerType.UNCLEAR_REQUIREMENT: "What is the expected behavior for this requirement?",
    TriggerType.MULTIPLE_APPROACHES: "Which approach should be used?",
    TriggerType.BLOCKING_DECISION: "How should we proceed with this blocking issue?",
    TriggerType.CONTRADICTING_INFO: "Which information should take precedence?",
}

DEFAULT_OPTIONS: tuple[QuestionOption, ...] = (
    QuestionOption(
        id="proceed",
        label="Proceed",
        description="Continue with the worker's current approach.",
        implications="Work resumes immediately; the assumption may need revisiting later.",
    ),
    QuestionOption(
        id="stop",
        label="Stop",
        description="Hold the affected work until the requirement is clarified.",
        implications="Affected tasks stay idle until a follow-up decision.",
    ),
)

FAILURE_OPTIONS: tuple[QuestionOption, ...] = (
    QuestionOption(
        id="retry",
        label="Retry",
        description="Requeue the task after fixing its environment or inputs.",
    ),
    QuestionOption(
        id="skip",
        label="Skip",
        description="Accept the failure and continue without this task.",
    ),
    QuestionOption(
        id="abort",
        label="Abort",
        description="Stop work on the outcome until the root cause is addressed.",
    ),
)


@dataclass(slots=True)
class AmbiguityMatch:
    trigger_type: TriggerType
    description: str
    evidence: str


@dataclass(slots=True)
class AmbiguityDetection:
    matches: list[AmbiguityMatch] = field(default_factory=list)

    @property
    def detected(self) -> bool:
        return bool(self.matches)

    @property
    def primary_type(self) -> TriggerType | None:
        """Most frequent matched type; ties go to the earliest pattern."""

        if not self.matches:
            return None
        counts = Counter(match.trigger_type for match in self.matches)
        return max(counts, key=lambda trigger_type: counts[trigger_type])

    @property
    def suggested_question(self) -> str:
        primary = self.primary_type
        if primary is None:
            return "How should we proceed?"
        return _SUGGESTED_QUESTIONS.get(primary, "How should we proceed?")

    @property
    def evidence(self) -> list[str]:
        return [match.evidence for match in self.matches]


def detect_ambiguity(text: str) -> AmbiguityDetection:
    """Find uncertainty, multiple-approach, blocking and contradiction phrases."""

    detection = AmbiguityDetection()
    for pattern, trigger_type, description in _AMBIGUITY_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        start = max(0, match.start() - EVIDENCE_CONTEXT_CHARS)
        end = min(len(text), match.end() + EVIDENCE_CONTEXT_CHARS)
        detection.matches.append(
            AmbiguityMatch(
                trigger_type=trigger_type,
                description=description,
                evidence=text[start:end].strip(),
            ),
        )
    return detection


class ObservationCollector:
    """Persist observations and turn ambiguity or permanent failure into escalations."""

    def __init__(
        self,
        repository: OversightRepository,
        escalations: EscalationEngine,
        tasks: OrchestratorRepository,
    ) -> None:
        self.repository = repository
        self.escalations = escalations
        self.tasks = tasks

    def record(
        self,
        outcome_id: str,
        task_id: str | None,
        signal: ObservationSignal,
    ) -> ObservationView:
        """Store one observation, raising an escalation when it signals ambiguity."""

        escalation = None
        detection = detect_ambiguity(signal.message)

        if signal.kind == ObservationKind.AMBIGUITY:
            if signal.trigger_type:
                trigger_type = TriggerType.parse(signal.trigger_type)
            else:
                trigger_type = detection.primary_type or TriggerType.UNCLEAR_REQUIREMENT
            escalation = self._raise_ambiguity(
                outcome_id=outcome_id,
                task_id=task_id,
                trigger_type=trigger_type,
                question_text=signal.message,
                context=f"Raised by worker while executing task {task_id}" if task_id else "",
                evidence=[*signal.evidence, *detection.evidence],
                options=signal.options,
            )
        elif signal.kind == ObservationKind.PROGRESS and detection.detected:
            trigger_type = detection.primary_type or TriggerType.UNCLEAR_REQUIREMENT
            escalation = self._raise_ambiguity(
                outcome_id=outcome_id,
                task_id=task_id,
                trigger_type=trigger_type,
                question_text=detection.suggested_question,
                context=signal.message,
                evidence=[*signal.evidence, *detection.evidence],
                options=signal.options,
            )

        observation = self.repository.insert_observation(
            outcome_id=outcome_id,
            task_id=task_id,
            signal=signal,
            escalation_id=escalation.escalation_id if escalation is not None else None,
        )
        logger.debug(
            "Observation recorded: outcome_id=%s task_id=%s kind=%s escalation=%s",
            outcome_id,
            task_id,
            signal.kind.value,
            observation.escalation_id,
        )
        return observation

    def record_failure(
        self,
        task: TaskView,
        classification: WorkerFailureClassification,
    ) -> EscalationView:
        """Raise the escalation for a permanently failed task."""

        error_summary = (task.error_summary or "").strip()
        escalation = self.escalations.create_escalation(
            task.outcome_id,
            EscalationTrigger(
                type=classification.trigger_type,
                task_id=task.task_id,
                evidence=[
                    f"task:{task.task_id}",
                    f"failure_class:{classification.failure_class.value}",
                    *([error_summary[-500:]] if error_summary else []),
                ],
            ),
            EscalationQuestion(
                text=(
                    f"Task '{task.title}' failed permanently after {task.attempts} "
                    "attempt(s). How should we proceed?"
                ),
                context=error_summary,
                options=list(FAILURE_OPTIONS),
            ),
        )
        self.repository.insert_observation(
            outcome_id=task.outcome_id,
            task_id=task.task_id,
            signal=ObservationSignal(
                kind=ObservationKind.FAILURE,
                message=f"Task failed permanently: {classification.failure_class.value}",
                evidence=(error_summary[-500:],) if error_summary else (),
            ),
            escalation_id=escalation.escalation_id,
        )
        return escalation

    def _raise_ambiguity(  # noqa: PLR0913
        self,
        *,
        outcome_id: str,
        task_id: str | None,
        trigger_type: TriggerType,
        question_text: str,
        context: str,
        evidence: list[str],
        options: tuple[QuestionOption, ...],
    ) -> EscalationView:
        affected: list[str] = [task_id] if task_id else []
        if trigger_type == TriggerType.BLOCKING_DECISION:
            pending = self.tasks.list_tasks(outcome_id, status=TaskStatus.PENDING)
            affected.extend(task.task_id for task in pending if task.task_id != task_id)

        return self.escalations.create_escalation(
            outcome_id,
            EscalationTrigger(type=trigger_type, task_id=task_id, evidence=evidence),
            EscalationQuestion(
                text=question_text,
                context=context,
                options=list(options) if len(options) >= 2 else list(DEFAULT_OPTIONS),
            ),
            affected_task_ids=affected,
        )
