"""Deterministic worker failure classification for task retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from overseer.orchestrator.models import FailureClass
from overseer.oversight.models import TriggerType

WORKER_FAILURE_CLASSIFIER_VERSION = 1

_MISSING_CAPABILITY_PATTERNS: tuple[str, ...] = (
    "command not found",
    "no such file or directory",
    "no module named",
    "not installed",
    "missing capability",
    "missing tool",
    "unsupported operation",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "access denied",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "try again later",
    "database is locked",
)
_RETRYABLE_CLASSES = frozenset({FailureClass.TIMEOUT, FailureClass.TRANSIENT})


@dataclass(slots=True)
class WorkerFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in _RETRYABLE_CLASSES

    @property
    def trigger_type(self) -> TriggerType:
        """Escalation trigger raised when this failure becomes permanent."""

        if self.failure_class == FailureClass.MISSING_CAPABILITY:
            return TriggerType.MISSING_CAPABILITY
        return TriggerType.TASK_FAILURE

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": WORKER_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_worker_failure(
    *,
    error_summary: str,
    exit_code: int | None = None,
    timed_out: bool = False,
    transient_hint: bool | None = None,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> WorkerFailureClassification:
    """Classify a failed worker attempt into a deterministic retry class."""

    if timed_out:
        return WorkerFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timeout",
            matched_pattern=None,
        )

    haystack = error_summary.lower()

    pattern = _first_match(haystack, _MISSING_CAPABILITY_PATTERNS)
    if pattern is not None:
        return WorkerFailureClassification(
            failure_class=FailureClass.MISSING_CAPABILITY,
            matched_rule="missing_capability",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return WorkerFailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    if transient_hint is not None:
        return WorkerFailureClassification(
            failure_class=FailureClass.TRANSIENT if transient_hint else FailureClass.NON_RETRYABLE,
            matched_rule="backend_hint",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None or (exit_code is not None and exit_code in transient_exit_codes):
        return WorkerFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            matched_rule="transient_exit_code" if pattern is None else "generic_transient",
            matched_pattern=pattern,
        )

    return WorkerFailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
