"""Domain models for escalations, observations and improvement analysis."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from overseer.errors import ValidationError

logger = logging.getLogger(__name__)


class TriggerType(str, Enum):
    """Closed set of escalation triggers.

    ``UNKNOWN`` is only produced when decoding a stored tag this version does
    not recognize; creating an escalation with an unknown tag is rejected.
    """

    UNCLEAR_REQUIREMENT = "unclear-requirement"
    MULTIPLE_APPROACHES = "multiple-approaches"
    BLOCKING_DECISION = "blocking-decision"
    CONTRADICTING_INFO = "contradicting-info"
    TASK_FAILURE = "task-failure"
    MISSING_CAPABILITY = "missing-capability"
    COMPLEXITY = "complexity"
    SECURITY = "security"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> TriggerType:
        """Strict parse used on input paths."""

        normalized = value.strip().lower().replace("_", "-")
        try:
            parsed = cls(normalized)
        except ValueError as error:
            raise ValidationError(f"Unknown trigger type: {value!r}") from error
        if parsed is cls.UNKNOWN:
            raise ValidationError("Trigger type 'unknown' cannot be used for new escalations.")
        return parsed

    @classmethod
    def decode(cls, value: str) -> TriggerType:
        """Lenient parse used when reading stored rows."""

        try:
            return cls(value)
        except ValueError:
            logger.warning("Unrecognized stored trigger type %r; treating as unknown", value)
            return cls.UNKNOWN


class EscalationStatus(str, Enum):
    PENDING = "pending"
    ANSWERED = "answered"
    DISMISSED = "dismissed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def raised(self) -> Severity:
        """One tier up, capped at critical."""

        return _SEVERITY_ORDER[min(self.rank + 1, len(_SEVERITY_ORDER) - 1)]


_SEVERITY_ORDER: tuple[Severity, ...] = (
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
)


class AutoResolveMode(str, Enum):
    MANUAL = "manual"
    SEMI_AUTO = "semi-auto"
    FULL_AUTO = "full-auto"

    @classmethod
    def parse(cls, value: str | AutoResolveMode) -> AutoResolveMode:
        if isinstance(value, AutoResolveMode):
            return value
        normalized = value.strip().lower().replace("_", "-")
        try:
            return cls(normalized)
        except ValueError as error:
            raise ValidationError(
                f"Unknown auto-resolve mode: {value!r}; "
                "expected one of: manual, semi-auto, full-auto",
            ) from error


class AnsweredBy(str, Enum):
    HUMAN = "human"
    AUTO = "auto"


class ObservationKind(str, Enum):
    PROGRESS = "progress"
    DISCOVERY = "discovery"
    AMBIGUITY = "ambiguity"
    FAILURE = "failure"


@dataclass(slots=True, frozen=True)
class QuestionOption:
    """One selectable answer of an escalation question."""

    id: str
    label: str
    description: str = ""
    implications: str = ""


@dataclass(slots=True)
class EscalationTrigger:
    type: TriggerType
    task_id: str | None = None
    evidence: list[str] = field(default_factory=list)


@dataclass(slots=True)
class EscalationQuestion:
    text: str
    context: str = ""
    options: list[QuestionOption] = field(default_factory=list)

    def option_ids(self) -> list[str]:
        return [option.id for option in self.options]


@dataclass(slots=True)
class EscalationAnswer:
    option: str
    context: str
    answered_at: datetime
    answered_by: AnsweredBy = AnsweredBy.HUMAN
    confidence: float | None = None


@dataclass(slots=True)
class EscalationCreate:
    """Input payload for raising an escalation."""

    outcome_id: str
    trigger: EscalationTrigger
    question: EscalationQuestion
    affected_task_ids: tuple[str, ...] = ()
    escalation_id: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class EscalationView:
    """Readable escalation view for engine, CLI and analysis."""

    escalation_id: str
    outcome_id: str
    status: EscalationStatus
    severity: Severity
    trigger: EscalationTrigger
    question: EscalationQuestion
    answer: EscalationAnswer | None
    dismiss_reason: str | None
    dismissed_at: datetime | None
    affected_task_ids: list[str]
    incorporated_into: str | None
    created_at: datetime
    hold_active: bool = False

    @property
    def is_pending(self) -> bool:
        return self.status == EscalationStatus.PENDING

    def resolution_time(self) -> timedelta | None:
        """Elapsed time from creation to answer; ``None`` unless answered."""

        if self.answer is None:
            return None
        return self.answer.answered_at - self.created_at


@dataclass(slots=True)
class AutoResolveConfig:
    """Per-outcome auto-resolution policy."""

    mode: AutoResolveMode = AutoResolveMode.MANUAL
    confidence_threshold: float = 0.8

    def __post_init__(self) -> None:
        self.mode = AutoResolveMode.parse(self.mode)
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValidationError(
                f"Confidence threshold must be within [0, 1], got {self.confidence_threshold}",
            )


class AutoResolveStatus(str, Enum):
    SKIPPED = "skipped"
    RESOLVED = "resolved"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass(slots=True)
class AutoResolveResult:
    escalation_id: str
    status: AutoResolveStatus
    selected_option: str | None = None
    confidence: float | None = None
    reasoning: str = ""


@dataclass(slots=True)
class AutoResolveBatchResult:
    """Aggregate counters of one auto-resolve pass over pending escalations."""

    total: int = 0
    resolved: int = 0
    deferred: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[AutoResolveResult] = field(default_factory=list)


@dataclass(slots=True)
class ObservationSignal:
    """Structured signal emitted by a worker while executing a task."""

    kind: ObservationKind
    message: str
    evidence: tuple[str, ...] = ()
    options: tuple[QuestionOption, ...] = ()
    trigger_type: str | None = None


@dataclass(slots=True)
class ObservationView:
    observation_id: str
    outcome_id: str
    task_id: str | None
    kind: ObservationKind
    message: str
    evidence: list[str]
    escalation_id: str | None
    created_at: datetime


@dataclass(slots=True)
class EscalationCluster:
    """Group of escalations sharing a root cause."""

    cluster_id: str
    trigger_type: TriggerType
    root_cause: str
    pattern_description: str
    problem_statement: str
    severity: Severity
    escalations: list[EscalationView]

    @property
    def size(self) -> int:
        return len(self.escalations)


@dataclass(slots=True)
class ProposedTask:
    title: str
    description: str
    priority: int


@dataclass(slots=True)
class ProposalIntent:
    summary: str
    items: list[str]
    success_criteria: list[str]


@dataclass(slots=True)
class ProposalApproach:
    summary: str
    steps: list[str]
    risks: list[str]


@dataclass(slots=True)
class ImprovementProposal:
    cluster: EscalationCluster
    outcome_name: str
    tasks: list[ProposedTask]
    intent: ProposalIntent
    approach: ProposalApproach


@dataclass(slots=True)
class ImprovementReport:
    escalations_analyzed: int = 0
    unclassified: int = 0
    clusters: list[EscalationCluster] = field(default_factory=list)
    proposals: list[ImprovementProposal] = field(default_factory=list)
    outcomes_created: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReviewCycleView:
    review_id: str
    outcome_id: str
    cycle_number: int
    issues_found: int
    tasks_created: int
    converged: bool
    unevaluated: list[str]
    created_at: datetime


@dataclass(slots=True)
class CriterionVerdict:
    criterion: str
    satisfied: bool | None
    detail: str = ""


@dataclass(slots=True)
class ReviewResult:
    cycle: ReviewCycleView
    verdicts: list[CriterionVerdict]
    created_task_ids: list[str]


class ConvergenceTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    WORSENING = "worsening"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class ConvergenceStatus:
    outcome_id: str
    converged: bool
    total_cycles: int
    consecutive_zero_issue_cycles: int
    last_issues_found: int | None
    trend: ConvergenceTrend
    blocking_escalations: int
