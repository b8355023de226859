"""Escalation engine: raise, answer and dismiss decision points."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta
from enum import Enum

from overseer.errors import (
    AlreadyResolvedError,
    ConcurrencyConflict,
    InvalidOptionError,
    ValidationError,
)
from overseer.orchestrator.models import TaskStatus
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.models import (
    AnsweredBy,
    EscalationAnswer,
    EscalationCreate,
    EscalationQuestion,
    EscalationStatus,
    EscalationTrigger,
    EscalationView,
    TriggerType,
)
from overseer.oversight.repository import OversightRepository
from overseer.oversight.risk import assess_escalation_risk
from overseer.storage.common import utc_now

logger = logging.getLogger(__name__)


class OptionAction(str, Enum):
    """Effect an answer has on the tasks behind an escalation."""

    PROCEED = "proceed"
    REQUEUE = "requeue"
    ACCEPT_FAILURE = "accept_failure"
    HOLD = "hold"
    HOLD_OUTCOME = "hold_outcome"


_ACTION_KEYWORDS: tuple[tuple[OptionAction, tuple[str, ...]], ...] = (
    (OptionAction.HOLD_OUTCOME, ("abort", "cancel", "halt")),
    (OptionAction.HOLD, ("stop", "pause", "wait")),
    (OptionAction.REQUEUE, ("retry", "requeue", "increase", "more_attempts", "extend")),
    (OptionAction.ACCEPT_FAILURE, ("skip", "abandon", "accept")),
)


def option_action(option_id: str) -> OptionAction:
    """Map an option id to its task effect by keyword; unknown ids proceed."""

    lowered = option_id.strip().lower()
    for action, keywords in _ACTION_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return action
    return OptionAction.PROCEED


class EscalationEngine:
    """State machine ``pending -> answered | dismissed`` over stored escalations.

    Answers apply their option to the tasks involved: ``retry`` requeues a
    failed task, ``skip`` accepts the failure, ``stop`` keeps the affected
    tasks blocked and ``abort`` blocks all pending work of the outcome until
    :meth:`release_hold`. Any other option releases the blocked tasks.
    """

    def __init__(self, repository: OversightRepository, tasks: OrchestratorRepository) -> None:
        self.repository = repository
        self.tasks = tasks

    def create_escalation(
        self,
        outcome_id: str,
        trigger: EscalationTrigger,
        question: EscalationQuestion,
        affected_task_ids: Sequence[str] = (),
    ) -> EscalationView:
        """Persist a pending escalation with severity from the risk classifier."""

        trigger_type = trigger.type
        if not isinstance(trigger_type, TriggerType):
            trigger_type = TriggerType.parse(str(trigger_type))
        elif trigger_type is TriggerType.UNKNOWN:
            raise ValidationError("Trigger type 'unknown' cannot be used for new escalations.")
        trigger = EscalationTrigger(
            type=trigger_type,
            task_id=trigger.task_id,
            evidence=list(trigger.evidence),
        )
        if not question.text.strip():
            raise ValidationError("Escalation question text must not be empty.")
        option_ids = question.option_ids()
        if len(option_ids) != len(set(option_ids)):
            raise ValidationError("Escalation option ids must be unique.")

        risk = assess_escalation_risk(
            trigger_type=trigger.type,
            question_text=question.text,
            context=question.context,
            evidence=trigger.evidence,
        )
        created = self.repository.insert_escalation(
            EscalationCreate(
                outcome_id=outcome_id,
                trigger=trigger,
                question=question,
                affected_task_ids=tuple(affected_task_ids),
            ),
            severity=risk.severity,
        )
        logger.info(
            "Escalation created: escalation_id=%s outcome_id=%s trigger=%s severity=%s rule=%s",
            created.escalation_id,
            outcome_id,
            trigger.type.value,
            risk.severity.value,
            risk.matched_rule,
        )
        return created

    def answer_escalation(
        self,
        escalation_id: str,
        selected_option: str,
        additional_context: str = "",
        *,
        answered_by: AnsweredBy = AnsweredBy.HUMAN,
        confidence: float | None = None,
    ) -> EscalationView:
        """Answer a pending escalation and apply the chosen option to its tasks."""

        if confidence is not None and not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"Answer confidence must be within [0, 1], got {confidence}")
        escalation = self.repository.get_escalation(escalation_id)
        allowed = escalation.question.option_ids()
        if allowed and selected_option not in allowed:
            raise InvalidOptionError(escalation_id, selected_option, allowed)
        if not escalation.is_pending:
            raise AlreadyResolvedError(escalation_id, escalation.status.value)
        action = option_action(selected_option)
        if action == OptionAction.REQUEUE and answered_by != AnsweredBy.HUMAN:
            raise ValidationError(
                f"Option {selected_option!r} requeues failed tasks; only a human may choose it.",
            )

        answer = EscalationAnswer(
            option=selected_option,
            context=additional_context,
            answered_at=utc_now(),
            answered_by=answered_by,
            confidence=confidence,
        )
        hold_task_ids = self._hold_targets(escalation, action)
        if not self.repository.record_answer(escalation_id, answer, hold_task_ids=hold_task_ids):
            current = self.repository.get_escalation(escalation_id)
            raise AlreadyResolvedError(escalation_id, current.status.value)
        if action == OptionAction.REQUEUE:
            self._requeue_failed(escalation)

        logger.info(
            "Escalation answered: escalation_id=%s option=%s action=%s by=%s",
            escalation_id,
            selected_option,
            action.value,
            answered_by.value,
        )
        return self.repository.get_escalation(escalation_id)

    def release_hold(self, escalation_id: str) -> EscalationView:
        """Unblock the tasks an answered ``stop`` or ``abort`` decision held back."""

        escalation = self.repository.get_escalation(escalation_id)
        if not escalation.hold_active or not self.repository.release_hold(escalation_id):
            raise ValidationError(f"Escalation {escalation_id} is not holding any work.")
        logger.info("Escalation hold released: escalation_id=%s", escalation_id)
        return self.repository.get_escalation(escalation_id)

    def dismiss_escalation(self, escalation_id: str, reason: str = "") -> EscalationView:
        escalation = self.repository.get_escalation(escalation_id)
        if not escalation.is_pending:
            raise AlreadyResolvedError(escalation_id, escalation.status.value)
        if not self.repository.record_dismissal(
            escalation_id,
            reason=reason,
            dismissed_at=utc_now(),
        ):
            current = self.repository.get_escalation(escalation_id)
            raise AlreadyResolvedError(escalation_id, current.status.value)
        logger.info("Escalation dismissed: escalation_id=%s", escalation_id)
        return self.repository.get_escalation(escalation_id)

    def get_escalation(self, escalation_id: str) -> EscalationView:
        return self.repository.get_escalation(escalation_id)

    def list_pending_escalations(self, outcome_id: str | None = None) -> list[EscalationView]:
        return self.repository.list_escalations(
            outcome_id=outcome_id,
            status=EscalationStatus.PENDING,
        )

    def list_held_escalations(self, outcome_id: str | None = None) -> list[EscalationView]:
        return self.repository.list_escalations(
            outcome_id=outcome_id,
            status=EscalationStatus.ANSWERED,
            held=True,
        )

    def answer_patterns(self, outcome_id: str | None = None) -> dict[str, dict[str, int]]:
        return self.repository.answer_patterns(outcome_id)

    @staticmethod
    def resolution_time(escalation: EscalationView) -> timedelta | None:
        return escalation.resolution_time()

    def _involved_task_ids(self, escalation: EscalationView) -> list[str]:
        task_ids = list(escalation.affected_task_ids)
        if escalation.trigger.task_id is not None:
            task_ids.insert(0, escalation.trigger.task_id)
        return list(dict.fromkeys(task_ids))

    def _hold_targets(
        self,
        escalation: EscalationView,
        action: OptionAction,
    ) -> list[str] | None:
        if action == OptionAction.HOLD:
            involved = self._involved_task_ids(escalation)
            if involved:
                return involved
        elif action != OptionAction.HOLD_OUTCOME:
            return None
        pending = self.tasks.list_tasks(escalation.outcome_id, status=TaskStatus.PENDING)
        return [*self._involved_task_ids(escalation), *(task.task_id for task in pending)]

    def _requeue_failed(self, escalation: EscalationView) -> None:
        for task_id in self._involved_task_ids(escalation):
            if self.tasks.get_task(task_id).status != TaskStatus.FAILED:
                continue
            try:
                self.tasks.requeue_task(task_id)
            except (ValidationError, ConcurrencyConflict) as error:
                logger.warning("Requeue after answer skipped: task_id=%s error=%s", task_id, error)
