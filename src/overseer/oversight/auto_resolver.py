"""Auto-resolution of pending escalations under a per-outcome policy."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from overseer.errors import AlreadyResolvedError, ExternalCapabilityError
from overseer.orchestrator.models import OutcomeView
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.capabilities import ConfidenceScorer, OptionScores
from overseer.oversight.escalator import EscalationEngine, OptionAction, option_action
from overseer.oversight.models import (
    AnsweredBy,
    AutoResolveBatchResult,
    AutoResolveConfig,
    AutoResolveMode,
    AutoResolveResult,
    AutoResolveStatus,
    EscalationView,
    QuestionOption,
    Severity,
)

logger = logging.getLogger(__name__)

AUTO_RESOLVED_PREFIX = "[AUTO-RESOLVED]"


def config_for_outcome(outcome: OutcomeView) -> AutoResolveConfig:
    return AutoResolveConfig(
        mode=outcome.auto_resolve_mode,
        confidence_threshold=outcome.auto_resolve_threshold,
    )


class AutoResolver:
    """Answer escalations whose best option clears the confidence policy."""

    def __init__(
        self,
        escalations: EscalationEngine,
        scorer: ConfidenceScorer,
        outcomes: OrchestratorRepository,
    ) -> None:
        self.escalations = escalations
        self.scorer = scorer
        self.outcomes = outcomes

    def config_for(self, outcome_id: str) -> AutoResolveConfig:
        return config_for_outcome(self.outcomes.get_outcome(outcome_id))

    def update_auto_resolve_config(
        self,
        outcome_id: str,
        mode: AutoResolveMode | str,
        threshold: float,
    ) -> AutoResolveConfig:
        outcome = self.outcomes.update_auto_resolve_config(
            outcome_id,
            mode=mode,
            threshold=threshold,
        )
        logger.info(
            "Auto-resolve config updated: outcome_id=%s mode=%s threshold=%.2f",
            outcome_id,
            outcome.auto_resolve_mode.value,
            outcome.auto_resolve_threshold,
        )
        return config_for_outcome(outcome)

    def auto_resolve(
        self,
        escalation: EscalationView,
        config: AutoResolveConfig,
    ) -> AutoResolveResult:
        """Try to answer one escalation; never mutates unless resolving."""

        escalation_id = escalation.escalation_id
        if config.mode == AutoResolveMode.MANUAL:
            return AutoResolveResult(
                escalation_id,
                AutoResolveStatus.SKIPPED,
                reasoning="Auto-resolve disabled (manual mode)",
            )
        if not escalation.is_pending:
            return AutoResolveResult(
                escalation_id,
                AutoResolveStatus.SKIPPED,
                reasoning=f"Escalation already {escalation.status.value}",
            )
        if not escalation.question.options:
            return AutoResolveResult(
                escalation_id,
                AutoResolveStatus.DEFERRED,
                reasoning="Escalation has no options to choose from",
            )

        eligible = [
            option
            for option in escalation.question.options
            if option_action(option.id) != OptionAction.REQUEUE
        ]
        if not eligible:
            return AutoResolveResult(
                escalation_id,
                AutoResolveStatus.DEFERRED,
                reasoning="Only a human may requeue failed tasks",
            )

        try:
            scores = self._score(escalation)
            selected, confidence = _best_option(eligible, scores)
        except ExternalCapabilityError as error:
            logger.warning(
                "Confidence scoring failed: escalation_id=%s",
                escalation_id,
                exc_info=True,
            )
            return AutoResolveResult(
                escalation_id,
                AutoResolveStatus.FAILED,
                reasoning=f"Scoring failed: {error}",
            )

        if confidence < config.confidence_threshold:
            return AutoResolveResult(
                escalation_id,
                AutoResolveStatus.DEFERRED,
                selected_option=selected,
                confidence=confidence,
                reasoning=(
                    f"Confidence {confidence:.2f} below threshold "
                    f"{config.confidence_threshold:.2f}; deferred to human"
                ),
            )
        if config.mode == AutoResolveMode.SEMI_AUTO and escalation.severity != Severity.LOW:
            return AutoResolveResult(
                escalation_id,
                AutoResolveStatus.DEFERRED,
                selected_option=selected,
                confidence=confidence,
                reasoning=(
                    f"Semi-auto mode resolves only low-risk escalations; "
                    f"severity is {escalation.severity.value}"
                ),
            )

        context = f"{AUTO_RESOLVED_PREFIX} {scores.reasoning}".strip()
        try:
            self.escalations.answer_escalation(
                escalation_id,
                selected,
                context,
                answered_by=AnsweredBy.AUTO,
                confidence=confidence,
            )
        except AlreadyResolvedError as error:
            return AutoResolveResult(
                escalation_id,
                AutoResolveStatus.SKIPPED,
                reasoning=str(error),
            )
        logger.info(
            "Escalation auto-resolved: escalation_id=%s option=%s confidence=%.2f",
            escalation_id,
            selected,
            confidence,
        )
        return AutoResolveResult(
            escalation_id,
            AutoResolveStatus.RESOLVED,
            selected_option=selected,
            confidence=confidence,
            reasoning=scores.reasoning,
        )

    def _score(self, escalation: EscalationView) -> OptionScores:
        try:
            return self.scorer.score(escalation)
        except ExternalCapabilityError:
            raise
        except Exception as error:  # noqa: BLE001
            raise ExternalCapabilityError(
                f"Confidence scorer failed: {type(error).__name__}: {error}",
            ) from error

    def auto_resolve_all_pending(
        self,
        outcome_id: str,
        config: AutoResolveConfig | None = None,
    ) -> AutoResolveBatchResult:
        """Process pending escalations oldest first; one failure never stops the batch."""

        config = config or self.config_for(outcome_id)
        batch = AutoResolveBatchResult()
        if config.mode == AutoResolveMode.MANUAL:
            return batch

        for escalation in self.escalations.list_pending_escalations(outcome_id):
            batch.total += 1
            try:
                result = self.auto_resolve(escalation, config)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Auto-resolve failed: escalation_id=%s",
                    escalation.escalation_id,
                    exc_info=True,
                )
                result = AutoResolveResult(
                    escalation.escalation_id,
                    AutoResolveStatus.FAILED,
                    reasoning=str(error),
                )
            batch.results.append(result)
            if result.status == AutoResolveStatus.RESOLVED:
                batch.resolved += 1
            elif result.status == AutoResolveStatus.DEFERRED:
                batch.deferred += 1
            elif result.status == AutoResolveStatus.FAILED:
                batch.failed += 1
            else:
                batch.skipped += 1
        return batch


def _best_option(
    options: Sequence[QuestionOption],
    scores: OptionScores,
) -> tuple[str, float]:
    """Highest-confidence option; ties go to the first option in question order."""

    best_id = options[0].id
    best_confidence = -1.0
    for option in options:
        confidence = float(scores.confidences.get(option.id, 0.0))
        if not 0.0 <= confidence <= 1.0:
            raise ExternalCapabilityError(
                f"Confidence for option {option.id!r} out of range: {confidence}",
            )
        if confidence > best_confidence:
            best_id, best_confidence = option.id, confidence
    return best_id, best_confidence
