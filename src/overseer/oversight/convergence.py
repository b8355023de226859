"""Convergence tracker: review outcomes against their completion criteria."""

from __future__ import annotations

import logging

from overseer.errors import ExternalCapabilityError
from overseer.orchestrator.models import OutcomeView, TaskCreate, TaskPhase, TaskStatus, TaskView
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.capabilities import CriteriaJudge
from overseer.oversight.models import (
    ConvergenceStatus,
    ConvergenceTrend,
    CriterionVerdict,
    ReviewResult,
    Severity,
)
from overseer.oversight.repository import OversightRepository

logger = logging.getLogger(__name__)

BLOCKING_SEVERITIES = (Severity.HIGH, Severity.CRITICAL)
FIX_TASK_PREFIX = "Fix: "
_UNFINISHED = frozenset({TaskStatus.PENDING, TaskStatus.CLAIMED, TaskStatus.RUNNING})


class ConvergenceTracker:
    def __init__(
        self,
        repository: OversightRepository,
        outcomes: OrchestratorRepository,
        judge: CriteriaJudge,
    ) -> None:
        self.repository = repository
        self.outcomes = outcomes
        self.judge = judge

    def review_outcome(self, outcome_id: str) -> ReviewResult:
        """Judge every completion criterion and record one review cycle.

        Each failing criterion gets a follow-up execution task unless one is
        still outstanding from an earlier cycle. A criterion the judge could
        not evaluate counts as an issue without a task.
        """

        outcome = self.outcomes.get_outcome(outcome_id)
        tasks = self.outcomes.list_tasks(outcome_id)
        outstanding_fixes = {
            task.title for task in tasks if task.from_review and task.status in _UNFINISHED
        }

        verdicts: list[CriterionVerdict] = []
        created_task_ids: list[str] = []
        unevaluated: list[str] = []
        for criterion in outcome.completion_criteria:
            try:
                verdict = self._evaluate(outcome, criterion, tasks)
            except ExternalCapabilityError as error:
                logger.warning(
                    "Criterion evaluation failed: outcome_id=%s criterion=%r",
                    outcome_id,
                    criterion,
                    exc_info=True,
                )
                verdict = CriterionVerdict(criterion, None, f"Evaluation failed: {error}")
                unevaluated.append(criterion)
            verdicts.append(verdict)

            if verdict.satisfied is not False:
                continue
            title = f"{FIX_TASK_PREFIX}{criterion}"
            if title in outstanding_fixes:
                continue
            task = self.outcomes.create_task(
                TaskCreate(
                    outcome_id=outcome_id,
                    title=title,
                    description=verdict.detail or f"Completion criterion not met: {criterion}",
                    phase=TaskPhase.EXECUTION,
                    from_review=True,
                ),
            )
            outstanding_fixes.add(title)
            created_task_ids.append(task.task_id)

        issues_found = sum(1 for verdict in verdicts if verdict.satisfied is not True)
        blocking = self.repository.count_pending(outcome_id, severities=BLOCKING_SEVERITIES)
        cycle = self.repository.insert_review_cycle(
            outcome_id=outcome_id,
            issues_found=issues_found,
            tasks_created=len(created_task_ids),
            converged=issues_found == 0 and blocking == 0,
            unevaluated=unevaluated,
        )
        logger.info(
            "Review cycle recorded: outcome_id=%s cycle=%d issues=%d tasks_created=%d",
            outcome_id,
            cycle.cycle_number,
            issues_found,
            len(created_task_ids),
        )
        return ReviewResult(cycle=cycle, verdicts=verdicts, created_task_ids=created_task_ids)

    def _evaluate(
        self,
        outcome: OutcomeView,
        criterion: str,
        tasks: list[TaskView],
    ) -> CriterionVerdict:
        try:
            return self.judge.evaluate(outcome, criterion, tasks)
        except ExternalCapabilityError:
            raise
        except Exception as error:  # noqa: BLE001
            raise ExternalCapabilityError(
                f"Criteria judge failed: {type(error).__name__}: {error}",
            ) from error

    def has_converged(self, outcome_id: str) -> bool:
        cycles = self.repository.list_review_cycles(outcome_id)
        if not cycles or cycles[-1].issues_found != 0:
            return False
        return self.repository.count_pending(outcome_id, severities=BLOCKING_SEVERITIES) == 0

    def convergence_status(self, outcome_id: str) -> ConvergenceStatus:
        self.outcomes.get_outcome(outcome_id)
        cycles = self.repository.list_review_cycles(outcome_id)
        blocking = self.repository.count_pending(outcome_id, severities=BLOCKING_SEVERITIES)

        consecutive = 0
        for cycle in reversed(cycles):
            if cycle.issues_found != 0:
                break
            consecutive += 1

        trend = ConvergenceTrend.UNKNOWN
        if len(cycles) >= 2:
            previous, latest = cycles[-2].issues_found, cycles[-1].issues_found
            if latest < previous:
                trend = ConvergenceTrend.IMPROVING
            elif latest > previous:
                trend = ConvergenceTrend.WORSENING
            else:
                trend = ConvergenceTrend.STABLE

        return ConvergenceStatus(
            outcome_id=outcome_id,
            converged=bool(cycles) and cycles[-1].issues_found == 0 and blocking == 0,
            total_cycles=len(cycles),
            consecutive_zero_issue_cycles=consecutive,
            last_issues_found=cycles[-1].issues_found if cycles else None,
            trend=trend,
            blocking_escalations=blocking,
        )
