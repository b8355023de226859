"""Controllers for escalation, improvement and review CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from overseer.config import Settings
from overseer.errors import ValidationError
from overseer.orchestrator.controllers import open_repositories
from overseer.oversight.auto_resolver import AutoResolver
from overseer.oversight.capabilities import (
    HeuristicConfidenceScorer,
    TaskCoverageCriteriaJudge,
    TokenOverlapSimilarity,
)
from overseer.oversight.convergence import ConvergenceTracker
from overseer.oversight.escalator import EscalationEngine
from overseer.oversight.improvements import ImprovementAnalyzer
from overseer.oversight.models import (
    EscalationQuestion,
    EscalationStatus,
    EscalationTrigger,
    EscalationView,
    QuestionOption,
    TriggerType,
)


@dataclass(slots=True)
class EscalationListCommand:
    """CLI input for escalation listing."""

    db_path: Path | None
    outcome_id: str | None
    status: str | None


@dataclass(slots=True)
class EscalationInspectCommand:
    """CLI input for escalation inspection."""

    db_path: Path | None
    escalation_id: str


@dataclass(slots=True)
class EscalationRaiseCommand:
    """CLI input for raising an escalation by hand."""

    db_path: Path | None
    outcome_id: str
    trigger_type: str
    question: str
    context: str
    options: tuple[str, ...]
    task_id: str | None
    affected_task_ids: tuple[str, ...]


@dataclass(slots=True)
class EscalationAnswerCommand:
    """CLI input for answering a pending escalation."""

    db_path: Path | None
    escalation_id: str
    option: str
    context: str


@dataclass(slots=True)
class EscalationDismissCommand:
    """CLI input for dismissing a pending escalation."""

    db_path: Path | None
    escalation_id: str
    reason: str


@dataclass(slots=True)
class EscalationReleaseCommand:
    """CLI input for releasing a held decision."""

    db_path: Path | None
    escalation_id: str


@dataclass(slots=True)
class EscalationPatternsCommand:
    """CLI input for answer pattern report."""

    db_path: Path | None
    outcome_id: str | None


@dataclass(slots=True)
class AutoResolveConfigCommand:
    """CLI input for per-outcome auto-resolve policy update."""

    db_path: Path | None
    outcome_id: str
    mode: str
    threshold: float


@dataclass(slots=True)
class AutoResolveRunCommand:
    """CLI input for one auto-resolve pass."""

    db_path: Path | None
    outcome_id: str


@dataclass(slots=True)
class ImproveAnalyzeCommand:
    """CLI input for improvement analysis."""

    db_path: Path | None
    outcome_id: str | None
    lookback_days: int | None
    max_proposals: int | None
    create_outcomes: bool


@dataclass(slots=True)
class ReviewCommand:
    """CLI input for convergence review and status."""

    db_path: Path | None
    outcome_id: str


class OversightCliController:
    """Coordinates escalation, improvement and convergence CLI operations."""

    def list_escalations(self, command: EscalationListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = None
        if command.status is not None:
            try:
                status = EscalationStatus(command.status.strip().lower())
            except ValueError as error:
                raise ValidationError(
                    f"Unsupported escalation status: {command.status!r}",
                ) from error
        with open_repositories(settings) as (_, oversight):
            escalations = oversight.list_escalations(
                outcome_id=command.outcome_id,
                status=status,
            )
        if not escalations:
            return ["No escalations found."]
        return [_escalation_line(escalation) for escalation in escalations]

    def inspect_escalation(self, command: EscalationInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repositories(settings) as (repository, oversight):
            engine = EscalationEngine(oversight, repository)
            escalation = engine.get_escalation(command.escalation_id)

        lines = [
            _escalation_line(escalation),
            f"Question: {escalation.question.text}",
        ]
        if escalation.question.context:
            lines.append(f"Context: {escalation.question.context}")
        lines.extend(
            f"Option: {option.id} - {option.label}"
            + (f" ({option.description})" if option.description else "")
            for option in escalation.question.options
        )
        lines.extend(f"Evidence: {item}" for item in escalation.trigger.evidence)
        if escalation.affected_task_ids:
            lines.append(f"Blocks tasks: {', '.join(escalation.affected_task_ids)}")
        if escalation.answer is not None:
            lines.append(
                f"Answer: option={escalation.answer.option} "
                f"by={escalation.answer.answered_by.value} "
                f"context={escalation.answer.context!r}",
            )
            elapsed = escalation.resolution_time()
            if elapsed is not None:
                lines.append(f"Resolution time: {elapsed.total_seconds():.0f}s")
        if escalation.hold_active:
            lines.append("Hold: active (release with `overseer escalation release`)")
        if escalation.status == EscalationStatus.DISMISSED:
            lines.append(f"Dismissed: {escalation.dismiss_reason or '-'}")
        if escalation.incorporated_into:
            lines.append(f"Incorporated into: {escalation.incorporated_into}")
        return lines

    def raise_escalation(self, command: EscalationRaiseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        trigger_type = TriggerType.parse(command.trigger_type)
        options = [parse_option(raw) for raw in command.options]
        with open_repositories(settings) as (repository, oversight):
            escalation = EscalationEngine(oversight, repository).create_escalation(
                command.outcome_id,
                EscalationTrigger(type=trigger_type, task_id=command.task_id),
                EscalationQuestion(
                    text=command.question,
                    context=command.context,
                    options=options,
                ),
                affected_task_ids=command.affected_task_ids,
            )
        return [f"Escalation raised: {_escalation_line(escalation)}"]

    def answer_escalation(self, command: EscalationAnswerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repositories(settings) as (repository, oversight):
            escalation = EscalationEngine(oversight, repository).answer_escalation(
                command.escalation_id,
                command.option,
                command.context,
            )
        return [f"Escalation answered: {_escalation_line(escalation)}"]

    def dismiss_escalation(self, command: EscalationDismissCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repositories(settings) as (repository, oversight):
            escalation = EscalationEngine(oversight, repository).dismiss_escalation(
                command.escalation_id,
                command.reason,
            )
        return [f"Escalation dismissed: {_escalation_line(escalation)}"]

    def release_hold(self, command: EscalationReleaseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repositories(settings) as (repository, oversight):
            escalation = EscalationEngine(oversight, repository).release_hold(
                command.escalation_id,
            )
        return [f"Escalation hold released: {_escalation_line(escalation)}"]

    def answer_patterns(self, command: EscalationPatternsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repositories(settings) as (repository, oversight):
            engine = EscalationEngine(oversight, repository)
            patterns = engine.answer_patterns(command.outcome_id)
        if not patterns:
            return ["No answered escalations."]
        return [
            f"{trigger_type}: "
            + ", ".join(f"{option}={count}" for option, count in sorted(counts.items()))
            for trigger_type, counts in sorted(patterns.items())
        ]

    def configure_auto_resolve(self, command: AutoResolveConfigCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repositories(settings) as (repository, oversight):
            config = _auto_resolver(repository, oversight).update_auto_resolve_config(
                command.outcome_id,
                command.mode,
                command.threshold,
            )
        return [
            f"Auto-resolve updated: outcome_id={command.outcome_id} "
            f"mode={config.mode.value} threshold={config.confidence_threshold:.2f}",
        ]

    def run_auto_resolve(self, command: AutoResolveRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repositories(settings) as (repository, oversight):
            batch = _auto_resolver(repository, oversight).auto_resolve_all_pending(
                command.outcome_id,
            )
        lines = [
            "Auto-resolve summary: "
            f"total={batch.total} resolved={batch.resolved} deferred={batch.deferred} "
            f"skipped={batch.skipped} failed={batch.failed}",
        ]
        for result in batch.results:
            confidence = "-" if result.confidence is None else f"{result.confidence:.2f}"
            lines.append(
                f"{result.escalation_id}: {result.status.value} "
                f"option={result.selected_option or '-'} confidence={confidence} "
                f"reason={result.reasoning!r}",
            )
        return lines

    def analyze_improvements(self, command: ImproveAnalyzeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with open_repositories(settings) as (repository, oversight):
            analyzer = ImprovementAnalyzer(
                oversight,
                repository,
                TokenOverlapSimilarity(),
                settings.improvements,
            )
            report = analyzer.analyze_for_improvements(
                lookback_days=command.lookback_days,
                outcome_id=command.outcome_id,
                max_proposals=command.max_proposals,
                auto_create_outcomes=command.create_outcomes,
            )

        lines = [
            "Improvement analysis: "
            f"escalations={report.escalations_analyzed} clusters={len(report.clusters)} "
            f"proposals={len(report.proposals)} unclassified={report.unclassified}",
        ]
        for cluster in report.clusters:
            lines.append(
                f"Cluster {cluster.cluster_id}: trigger={cluster.trigger_type.value} "
                f"size={cluster.size} severity={cluster.severity.value} "
                f"root_cause={cluster.root_cause}",
            )
            lines.append(f"  Pattern: {cluster.pattern_description}")
        for proposal in report.proposals:
            lines.append(f"Proposal: {proposal.outcome_name}")
            lines.extend(
                f"  Task[{task.priority}]: {task.title}" for task in proposal.tasks
            )
        lines.extend(f"Outcome created: {outcome_id}" for outcome_id in report.outcomes_created)
        return lines

    def review_outcome(self, command: ReviewCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repositories(settings) as (repository, oversight):
            result = _tracker(repository, oversight).review_outcome(command.outcome_id)

        lines = [
            f"Review cycle {result.cycle.cycle_number}: "
            f"issues={result.cycle.issues_found} tasks_created={result.cycle.tasks_created} "
            f"converged={result.cycle.converged}",
        ]
        for verdict in result.verdicts:
            state = {True: "met", False: "unmet", None: "unevaluated"}[verdict.satisfied]
            lines.append(f"  [{state}] {verdict.criterion}")
        lines.extend(f"Task created: {task_id}" for task_id in result.created_task_ids)
        return lines

    def convergence_status(self, command: ReviewCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repositories(settings) as (repository, oversight):
            status = _tracker(repository, oversight).convergence_status(command.outcome_id)

        last = "-" if status.last_issues_found is None else str(status.last_issues_found)
        return [
            f"Convergence: outcome_id={status.outcome_id} converged={status.converged}",
            f"Cycles: total={status.total_cycles} "
            f"zero_issue_streak={status.consecutive_zero_issue_cycles} last_issues={last}",
            f"Trend: {status.trend.value} blocking_escalations={status.blocking_escalations}",
        ]


def parse_option(raw: str) -> QuestionOption:
    """Parse ``id=label`` (label defaults to the id)."""

    option_id, separator, label = raw.partition("=")
    option_id = option_id.strip()
    if not option_id:
        raise ValidationError(f"Invalid option {raw!r}; expected id=label.")
    return QuestionOption(id=option_id, label=label.strip() if separator else option_id)


def _escalation_line(escalation: EscalationView) -> str:
    return (
        f"escalation_id={escalation.escalation_id} outcome_id={escalation.outcome_id} "
        f"status={escalation.status.value} severity={escalation.severity.value} "
        f"trigger={escalation.trigger.type.value}"
    )


def _auto_resolver(repository, oversight) -> AutoResolver:
    return AutoResolver(
        EscalationEngine(oversight, repository),
        HeuristicConfidenceScorer(
            attempts_lookup=lambda task_id: repository.get_task(task_id).attempts,
        ),
        repository,
    )


def _tracker(repository, oversight) -> ConvergenceTracker:
    return ConvergenceTracker(oversight, repository, TaskCoverageCriteriaJudge())
