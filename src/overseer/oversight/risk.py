"""Deterministic escalation risk classification.

Severity starts from a per-trigger baseline and is overridden by keyword
rules over the question text, context and evidence. Only ``low`` severity
counts as low-risk, the tier semi-auto resolution is allowed to act on.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from overseer.oversight.models import Severity, TriggerType

_SECURITY_PATTERNS: tuple[str, ...] = (
    "security",
    "credential",
    "secret",
    "password",
    "private key",
    "api key",
    "vulnerab",
    "permission",
    "encryption",
)
_DESTRUCTIVE_PATTERNS: tuple[str, ...] = (
    "delete",
    "drop table",
    "destroy",
    "irreversible",
    "data loss",
    "production",
    "rm -rf",
    "force push",
)

_BASELINE: dict[TriggerType, Severity] = {
    TriggerType.UNCLEAR_REQUIREMENT: Severity.LOW,
    TriggerType.MULTIPLE_APPROACHES: Severity.LOW,
    TriggerType.CONTRADICTING_INFO: Severity.MEDIUM,
    TriggerType.BLOCKING_DECISION: Severity.MEDIUM,
    TriggerType.COMPLEXITY: Severity.MEDIUM,
    TriggerType.MISSING_CAPABILITY: Severity.MEDIUM,
    TriggerType.TASK_FAILURE: Severity.HIGH,
    TriggerType.SECURITY: Severity.CRITICAL,
    TriggerType.UNKNOWN: Severity.MEDIUM,
}


@dataclass(slots=True)
class RiskAssessment:
    """Normalized risk classification result."""

    severity: Severity
    matched_rule: str
    matched_pattern: str | None

    @property
    def low_risk(self) -> bool:
        return self.severity == Severity.LOW


def assess_escalation_risk(
    *,
    trigger_type: TriggerType,
    question_text: str,
    context: str = "",
    evidence: Sequence[str] = (),
) -> RiskAssessment:
    """Classify an escalation into a severity tier."""

    baseline = _BASELINE[trigger_type]
    if trigger_type == TriggerType.SECURITY:
        return RiskAssessment(
            severity=baseline,
            matched_rule="security_trigger",
            matched_pattern=None,
        )

    haystack = " ".join([question_text, context, *evidence]).lower()

    pattern = _first_match(haystack, _SECURITY_PATTERNS)
    if pattern is not None:
        return RiskAssessment(
            severity=Severity.CRITICAL,
            matched_rule="security_keyword",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _DESTRUCTIVE_PATTERNS)
    if pattern is not None:
        return RiskAssessment(
            severity=max(baseline, Severity.HIGH, key=lambda item: item.rank),
            matched_rule="destructive_keyword",
            matched_pattern=pattern,
        )

    return RiskAssessment(
        severity=baseline,
        matched_rule="trigger_baseline",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
