"""Pluggable judgment capabilities and their deterministic defaults.

Confidence scoring, text similarity and completion-criteria judgment are
external reasoning concerns. Implementations signal failure by raising
:class:`~overseer.errors.ExternalCapabilityError`; callers treat that as a
per-item failure and keep going.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from overseer.errors import ExternalCapabilityError
from overseer.orchestrator.models import OutcomeView, TaskStatus, TaskView
from overseer.oversight.models import CriterionVerdict, EscalationView, TriggerType

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    {
        "a",
        "an",
        "and",
        "are",
        "be",
        "for",
        "from",
        "has",
        "in",
        "is",
        "it",
        "of",
        "on",
        "or",
        "the",
        "this",
        "to",
        "was",
        "with",
    },
)


@dataclass(slots=True)
class OptionScores:
    """Per-option confidence in [0, 1] keyed by option id."""

    confidences: dict[str, float] = field(default_factory=dict)
    reasoning: str = ""


class ConfidenceScorer(Protocol):
    def score(self, escalation: EscalationView) -> OptionScores:
        """Score every option of a pending escalation."""


class SimilarityJudge(Protocol):
    def similarity(self, left: str, right: str) -> float:
        """Return similarity in [0, 1] between two escalation texts."""


class CriteriaJudge(Protocol):
    def evaluate(
        self,
        outcome: OutcomeView,
        criterion: str,
        tasks: Sequence[TaskView],
    ) -> CriterionVerdict:
        """Judge one completion criterion against the outcome's current tasks."""


def tokenize(text: str) -> set[str]:
    return {token for token in _TOKEN_RE.findall(text.lower()) if token not in _STOPWORDS}


class HeuristicConfidenceScorer:
    """Rule-based scorer for common escalation shapes.

    Security questions are never scored above zero. Complexity escalations
    favor decomposition, a first task failure favors continuing when that is
    offered, and anything ambiguous is left for a human. Retrying a failed
    task is never scored.
    """

    def __init__(self, attempts_lookup: Callable[[str], int] | None = None) -> None:
        self._attempts_lookup = attempts_lookup

    def score(self, escalation: EscalationView) -> OptionScores:
        zero = {option.id: 0.0 for option in escalation.question.options}
        kind = _heuristic_kind(escalation)

        if kind == "security":
            return OptionScores(zero, "Security-related escalations require human review")

        if kind == "complexity":
            option_id = _find_option(escalation, ("break", "subtask", "decompose"))
            if option_id is not None:
                return OptionScores(
                    {**zero, option_id: 0.9},
                    "Decomposing complex work into subtasks is the safest path forward",
                )

        if kind == "failure":
            task_id = escalation.trigger.task_id
            if task_id is not None and self._attempts_lookup is not None:
                if self._attempts_lookup(task_id) > 1:
                    return OptionScores(zero, "Task failed multiple times; human should review")
            option_id = _find_option(escalation, ("proceed", "continue"))
            if option_id is not None:
                return OptionScores(
                    {**zero, option_id: 0.75},
                    "First failure; continuing is reasonable before involving a human",
                )
            return OptionScores(zero, "Failed tasks are only requeued by a human")

        if kind == "ambiguity":
            return OptionScores(zero, "Ambiguous requirements need human domain knowledge")

        return OptionScores(zero, "No heuristic applies")


class TokenOverlapSimilarity:
    """Jaccard similarity over lowercase word tokens."""

    def similarity(self, left: str, right: str) -> float:
        left_tokens = tokenize(left)
        right_tokens = tokenize(right)
        if not left_tokens or not right_tokens:
            return 0.0
        return len(left_tokens & right_tokens) / len(left_tokens | right_tokens)


class TaskCoverageCriteriaJudge:
    """Treat a criterion as met once the tasks addressing it are all done.

    A task addresses a criterion when its title and description cover at
    least ``coverage`` of the criterion's tokens.
    """

    def __init__(self, coverage: float = 0.5) -> None:
        if not 0.0 < coverage <= 1.0:
            raise ValueError("coverage must be within (0, 1].")
        self.coverage = coverage

    def evaluate(
        self,
        outcome: OutcomeView,
        criterion: str,
        tasks: Sequence[TaskView],
    ) -> CriterionVerdict:
        criterion_tokens = tokenize(criterion)
        if not criterion_tokens:
            raise ExternalCapabilityError(f"Criterion has no content: {criterion!r}")

        related = [
            task
            for task in tasks
            if len(criterion_tokens & tokenize(f"{task.title} {task.description}"))
            / len(criterion_tokens)
            >= self.coverage
        ]
        if not related:
            return CriterionVerdict(criterion, False, "No task addresses this criterion")

        unfinished = [
            task
            for task in related
            if task.status in {TaskStatus.PENDING, TaskStatus.CLAIMED, TaskStatus.RUNNING}
        ]
        completed = [task for task in related if task.status == TaskStatus.COMPLETED]
        if unfinished:
            return CriterionVerdict(
                criterion,
                False,
                f"{len(unfinished)} related task(s) still in progress",
            )
        if not completed:
            return CriterionVerdict(criterion, False, "All related tasks failed")
        return CriterionVerdict(criterion, True, f"Covered by {len(completed)} completed task(s)")


def _heuristic_kind(escalation: EscalationView) -> str | None:
    question = escalation.question.text.lower()
    trigger = escalation.trigger.type

    if (
        trigger == TriggerType.SECURITY
        or "security" in question
        or "dangerous" in question
        or "destructive" in question
    ):
        return "security"
    if trigger == TriggerType.COMPLEXITY or "complex" in question or "turn limit" in question:
        return "complexity"
    if trigger in {TriggerType.TASK_FAILURE, TriggerType.MISSING_CAPABILITY} or "fail" in question:
        return "failure"
    if trigger in {
        TriggerType.UNCLEAR_REQUIREMENT,
        TriggerType.MULTIPLE_APPROACHES,
        TriggerType.CONTRADICTING_INFO,
        TriggerType.BLOCKING_DECISION,
    }:
        return "ambiguity"
    if "ambig" in question or "unclear" in question or "clarif" in question:
        return "ambiguity"
    return None


def _find_option(escalation: EscalationView, keywords: tuple[str, ...]) -> str | None:
    for option in escalation.question.options:
        option_id = option.id.lower()
        if any(keyword in option_id for keyword in keywords):
            return option.id
    return None
