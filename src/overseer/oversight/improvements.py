"""Improvement analyzer: cluster recurring escalations into improvement outcomes."""

from __future__ import annotations

import hashlib
import logging
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from overseer.config import ImprovementSettings
from overseer.errors import ExternalCapabilityError, NotFoundError, OverseerError, ValidationError
from overseer.orchestrator.models import OutcomeCreate, TaskCreate, TaskPhase, TaskStatus
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.capabilities import SimilarityJudge, tokenize
from overseer.oversight.models import (
    EscalationCluster,
    EscalationView,
    ImprovementProposal,
    ImprovementReport,
    ProposalApproach,
    ProposalIntent,
    ProposedTask,
    Severity,
    TriggerType,
)
from overseer.oversight.repository import OversightRepository
from overseer.storage.common import utc_now

logger = logging.getLogger(__name__)

_HIGH_SIZE = 6
_MEDIUM_SIZE = 3
_HIGH_RATE_PER_DAY = 2.0
_MEDIUM_RATE_PER_DAY = 1.0
_KEYWORD_LIMIT = 3


@dataclass(slots=True, frozen=True)
class _RootCauseTemplate:
    root_cause: str
    problem: str
    outcome_name: str
    intent_summary: str
    success_criteria: tuple[str, ...]
    approach_summary: str
    steps: tuple[str, ...]
    risks: tuple[str, ...]
    tasks: tuple[tuple[str, str], ...]


_TEMPLATES: dict[TriggerType, _RootCauseTemplate] = {
    TriggerType.UNCLEAR_REQUIREMENT: _RootCauseTemplate(
        root_cause="underspecified_requirements",
        problem="Workers repeatedly stop to ask what a requirement means",
        outcome_name="Clarify task requirements before dispatch",
        intent_summary="Tasks reach workers with unambiguous expected behavior.",
        success_criteria=(
            "Task briefs state expected behavior and acceptance checks",
            "Unclear-requirement escalations drop for affected work",
        ),
        approach_summary="Tighten task briefs and capture recurring answers as defaults.",
        steps=(
            "Collect the answers given to past clarification questions",
            "Add the recurring answers to the task brief template",
            "Require acceptance checks on new tasks",
        ),
        risks=("Briefs become longer and slower to write",),
        tasks=(
            ("Review past clarification answers", "Summarize answers to the clustered questions."),
            ("Update task brief template", "Encode the recurring answers as explicit defaults."),
        ),
    ),
    TriggerType.MULTIPLE_APPROACHES: _RootCauseTemplate(
        root_cause="missing_design_guidance",
        problem="Workers repeatedly ask which of several approaches to take",
        outcome_name="Document preferred implementation approaches",
        intent_summary="Workers can pick an approach without a human decision.",
        success_criteria=(
            "Preferred approaches are documented for the recurring choices",
            "Multiple-approach escalations drop for affected work",
        ),
        approach_summary="Turn repeated approach decisions into written guidance.",
        steps=(
            "List the approach choices that keep recurring",
            "Record the preferred option and its rationale",
            "Reference the guidance from task briefs",
        ),
        risks=("Guidance can go stale as the system evolves",),
        tasks=(
            ("Catalog recurring approach choices", "Group the clustered questions by decision."),
            ("Write approach guidance", "Record the preferred approach for each decision."),
        ),
    ),
    TriggerType.BLOCKING_DECISION: _RootCauseTemplate(
        root_cause="unowned_decisions",
        problem="Work repeatedly blocks on decisions nobody owns",
        outcome_name="Assign owners and defaults for blocking decisions",
        intent_summary="Blocking decisions have an owner or a safe default.",
        success_criteria=(
            "Each recurring blocking decision has an owner or default",
            "Blocking-decision escalations drop for affected work",
        ),
        approach_summary="Give each recurring blocking decision a default and an owner.",
        steps=(
            "Identify the decisions behind the blocked work",
            "Agree a default for each decision",
            "Name an owner for exceptions",
        ),
        risks=("Defaults may be wrong for unusual tasks",),
        tasks=(
            ("Identify blocking decisions", "List the decisions that blocked clustered work."),
            ("Define decision defaults", "Record a default and owner for each decision."),
        ),
    ),
    TriggerType.CONTRADICTING_INFO: _RootCauseTemplate(
        root_cause="inconsistent_sources",
        problem="Workers repeatedly find contradicting information",
        outcome_name="Reconcile contradicting sources of truth",
        intent_summary="Workers see one consistent source of truth.",
        success_criteria=(
            "Contradicting sources are reconciled or ranked by precedence",
            "Contradicting-info escalations drop for affected work",
        ),
        approach_summary="Reconcile the conflicting sources and state precedence rules.",
        steps=(
            "Locate the conflicting documents or data",
            "Reconcile or retire the outdated source",
            "Document precedence for remaining overlaps",
        ),
        risks=("Retiring a source may drop information still in use",),
        tasks=(
            ("Locate conflicting sources", "Trace each clustered contradiction to its sources."),
            ("Reconcile sources", "Fix or retire the outdated source of each contradiction."),
        ),
    ),
    TriggerType.TASK_FAILURE: _RootCauseTemplate(
        root_cause="unstable_task_execution",
        problem="Tasks repeatedly fail permanently in the same way",
        outcome_name="Stabilize recurring task failures",
        intent_summary="The recurring failure mode no longer exhausts retries.",
        success_criteria=(
            "The recurring failure has a documented root cause",
            "Task-failure escalations drop for affected work",
        ),
        approach_summary="Diagnose the shared failure and fix the environment or inputs.",
        steps=(
            "Reproduce the failure from the captured error summaries",
            "Fix the underlying cause",
            "Add a check that catches the failure before dispatch",
        ),
        risks=("The failure may have several independent causes",),
        tasks=(
            ("Diagnose recurring failure", "Reproduce the failure from the clustered evidence."),
            ("Fix failure root cause", "Apply and verify a fix for the diagnosed cause."),
        ),
    ),
    TriggerType.MISSING_CAPABILITY: _RootCauseTemplate(
        root_cause="missing_worker_capability",
        problem="Workers repeatedly lack a tool or capability the tasks require",
        outcome_name="Provide missing worker capabilities",
        intent_summary="Workers have every tool the recurring tasks need.",
        success_criteria=(
            "The missing capability is installed and available to workers",
            "Missing-capability escalations drop for affected work",
        ),
        approach_summary="Install the missing capability and verify it during infrastructure.",
        steps=(
            "Identify the missing tool from the escalation evidence",
            "Provision it in the worker environment",
            "Add an infrastructure task that verifies it",
        ),
        risks=("The capability may need credentials or licenses",),
        tasks=(
            ("Identify missing capability", "Name the tool the clustered escalations lacked."),
            ("Provision capability", "Install the tool and verify workers can use it."),
        ),
    ),
    TriggerType.COMPLEXITY: _RootCauseTemplate(
        root_cause="oversized_tasks",
        problem="Tasks are repeatedly too large for a single worker",
        outcome_name="Decompose oversized tasks",
        intent_summary="Tasks are sized so one worker can finish them.",
        success_criteria=(
            "Oversized task types have a decomposition recipe",
            "Complexity escalations drop for affected work",
        ),
        approach_summary="Split recurring oversized work into smaller tasks.",
        steps=(
            "Find the task types that trigger complexity escalations",
            "Define how each splits into subtasks",
            "Apply the split when planning new work",
        ),
        risks=("More tasks means more coordination overhead",),
        tasks=(
            ("Find oversized task types", "Group clustered escalations by task type."),
            ("Write decomposition recipes", "Describe how each oversized type is split."),
        ),
    ),
    TriggerType.SECURITY: _RootCauseTemplate(
        root_cause="unclear_security_policy",
        problem="Workers repeatedly hit security questions without a policy",
        outcome_name="Define security policy for worker actions",
        intent_summary="Workers know which sensitive actions are allowed.",
        success_criteria=(
            "A written policy covers the recurring security questions",
            "Security escalations are limited to genuinely new cases",
        ),
        approach_summary="Write an explicit policy for the recurring sensitive actions.",
        steps=(
            "List the sensitive actions workers asked about",
            "Decide which are allowed, forbidden or need review",
            "Publish the policy to workers",
        ),
        risks=("An overly permissive policy widens exposure",),
        tasks=(
            ("List sensitive actions", "Collect the actions behind clustered security questions."),
            ("Write security policy", "Decide and document the rule for each action."),
        ),
    ),
}


class ImprovementAnalyzer:
    """Find systemic issues in escalation history and propose improvement outcomes."""

    def __init__(
        self,
        repository: OversightRepository,
        outcomes: OrchestratorRepository,
        similarity: SimilarityJudge,
        settings: ImprovementSettings | None = None,
    ) -> None:
        self.repository = repository
        self.outcomes = outcomes
        self.similarity = similarity
        self.settings = settings or ImprovementSettings()

    def analyze_for_improvements(
        self,
        *,
        lookback_days: int | None = None,
        outcome_id: str | None = None,
        max_proposals: int | None = None,
        auto_create_outcomes: bool = False,
    ) -> ImprovementReport:
        if lookback_days is None:
            lookback_days = self.settings.lookback_days
        if max_proposals is None:
            max_proposals = self.settings.max_proposals
        if lookback_days < 1:
            raise ValidationError(f"lookback_days must be >= 1, got {lookback_days}")
        if max_proposals < 0:
            raise ValidationError(f"max_proposals must be >= 0, got {max_proposals}")
        since = utc_now() - timedelta(days=lookback_days)
        escalations = self.repository.list_escalations(
            outcome_id=outcome_id,
            since=since,
            include_incorporated=False,
        )
        report = ImprovementReport(escalations_analyzed=len(escalations))
        if not escalations:
            return report

        clusters, report.unclassified = self.cluster_escalations(
            escalations,
            lookback_days=lookback_days,
        )
        clusters.sort(key=_cluster_rank)
        report.clusters = clusters
        report.proposals = [build_proposal(cluster) for cluster in clusters[:max_proposals]]
        logger.info(
            "Improvement analysis: escalations=%d clusters=%d proposals=%d",
            len(escalations),
            len(clusters),
            len(report.proposals),
        )

        if auto_create_outcomes:
            for proposal in report.proposals:
                try:
                    report.outcomes_created.append(self.create_improvement_outcome(proposal))
                except OverseerError:
                    logger.warning(
                        "Improvement outcome creation failed: cluster_id=%s",
                        proposal.cluster.cluster_id,
                        exc_info=True,
                    )
        return report

    def cluster_escalations(
        self,
        escalations: list[EscalationView],
        *,
        lookback_days: int,
    ) -> tuple[list[EscalationCluster], int]:
        """Cluster by trigger type then text similarity; returns clusters and skipped count."""

        groups: dict[TriggerType, list[EscalationView]] = defaultdict(list)
        unclassified = 0
        for escalation in escalations:
            if escalation.trigger.type == TriggerType.UNKNOWN:
                logger.warning(
                    "Skipping escalation with unknown trigger type: escalation_id=%s",
                    escalation.escalation_id,
                )
                unclassified += 1
                continue
            groups[escalation.trigger.type].append(escalation)

        clusters: list[EscalationCluster] = []
        for trigger_type in TriggerType:
            members = groups.get(trigger_type)
            if not members or len(members) < 2:
                continue
            for component in self._components(trigger_type, members):
                if len(component) >= 2:
                    clusters.append(
                        self._build_cluster(trigger_type, component, lookback_days=lookback_days),
                    )
        return clusters, unclassified

    def create_improvement_outcome(
        self,
        proposal: ImprovementProposal,
        *,
        parent_id: str | None = None,
    ) -> str:
        """Create a draft outcome with tasks and absorb the cluster's escalations.

        The outcome, its tasks and the incorporation tags are written together;
        a failure leaves no partial outcome behind.
        """

        outcome_id = str(uuid4())
        member_ids = [escalation.escalation_id for escalation in proposal.cluster.escalations]
        outcome, marked = self.outcomes.create_outcome_with_tasks(
            OutcomeCreate(
                name=proposal.outcome_name,
                brief=proposal.cluster.problem_statement,
                outcome_id=outcome_id,
                parent_id=parent_id,
                completion_criteria=tuple(proposal.intent.success_criteria),
            ),
            [
                TaskCreate(
                    outcome_id=outcome_id,
                    title=task.title,
                    description=task.description,
                    phase=TaskPhase.EXECUTION,
                    priority=task.priority,
                )
                for task in proposal.tasks
            ],
            incorporate_escalation_ids=member_ids,
        )
        if marked != len(member_ids):
            logger.warning(
                "Only %d of %d escalations incorporated into outcome %s",
                marked,
                len(member_ids),
                outcome.outcome_id,
            )
        logger.info(
            "Improvement outcome created: outcome_id=%s cluster_id=%s tasks=%d",
            outcome.outcome_id,
            proposal.cluster.cluster_id,
            len(proposal.tasks),
        )
        return outcome.outcome_id

    def _components(
        self,
        trigger_type: TriggerType,
        members: list[EscalationView],
    ) -> list[list[EscalationView]]:
        try:
            adjacency = self._build_adjacency(members)
        except ExternalCapabilityError:
            logger.warning(
                "Similarity judgment failed for %s; treating group as one cluster",
                trigger_type.value,
                exc_info=True,
            )
            return [members]

        by_id = {escalation.escalation_id: escalation for escalation in members}
        visited: set[str] = set()
        components: list[list[EscalationView]] = []
        for escalation in members:
            if escalation.escalation_id in visited:
                continue
            component_ids = _collect_component(escalation.escalation_id, adjacency, visited)
            components.append([by_id[item_id] for item_id in component_ids])
        return components

    def _build_adjacency(self, members: list[EscalationView]) -> dict[str, set[str]]:
        threshold = self.settings.similarity_threshold
        adjacency: dict[str, set[str]] = defaultdict(set)
        texts = {escalation.escalation_id: _escalation_text(escalation) for escalation in members}
        for index, left in enumerate(members):
            for right in members[index + 1 :]:
                score = self._similarity(texts[left.escalation_id], texts[right.escalation_id])
                if score >= threshold:
                    adjacency[left.escalation_id].add(right.escalation_id)
                    adjacency[right.escalation_id].add(left.escalation_id)
        return adjacency

    def _similarity(self, left: str, right: str) -> float:
        try:
            return self.similarity.similarity(left, right)
        except ExternalCapabilityError:
            raise
        except Exception as error:  # noqa: BLE001
            raise ExternalCapabilityError(
                f"Similarity judge failed: {type(error).__name__}: {error}",
            ) from error

    def _build_cluster(
        self,
        trigger_type: TriggerType,
        members: list[EscalationView],
        *,
        lookback_days: int,
    ) -> EscalationCluster:
        members = sorted(members, key=lambda item: (item.created_at, item.escalation_id))
        template = _TEMPLATES[trigger_type]
        keywords = _shared_keywords(members)
        size = len(members)

        severity = _baseline_severity(size, rate_per_day=size / lookback_days)
        if self._references_failed_task(members):
            severity = severity.raised()

        pattern = f"{size} {trigger_type.value} escalations"
        if keywords:
            pattern += f" mentioning {', '.join(keywords)}"
        problem = template.problem
        if keywords:
            problem += f" ({', '.join(keywords)})"

        return EscalationCluster(
            cluster_id=_build_cluster_id([member.escalation_id for member in members]),
            trigger_type=trigger_type,
            root_cause=template.root_cause,
            pattern_description=pattern,
            problem_statement=problem,
            severity=severity,
            escalations=members,
        )

    def _references_failed_task(self, members: list[EscalationView]) -> bool:
        task_ids: set[str] = set()
        for escalation in members:
            if escalation.trigger.task_id:
                task_ids.add(escalation.trigger.task_id)
            for item in escalation.trigger.evidence:
                if item.startswith("task:"):
                    task_ids.add(item.removeprefix("task:"))
        for task_id in sorted(task_ids):
            try:
                if self.outcomes.get_task(task_id).status == TaskStatus.FAILED:
                    return True
            except NotFoundError:
                continue
        return False


def build_proposal(cluster: EscalationCluster) -> ImprovementProposal:
    """Synthesize a proposal from the cluster's root-cause template."""

    template = _TEMPLATES[cluster.trigger_type]
    keywords = _shared_keywords(cluster.escalations)
    name = template.outcome_name
    if keywords:
        name = f"{name}: {', '.join(keywords)}"

    task_count = len(template.tasks)
    tasks = [
        ProposedTask(
            title=title,
            description=f"{description} Pattern: {cluster.pattern_description}.",
            priority=task_count - index,
        )
        for index, (title, description) in enumerate(template.tasks)
    ]
    return ImprovementProposal(
        cluster=cluster,
        outcome_name=name,
        tasks=tasks,
        intent=ProposalIntent(
            summary=template.intent_summary,
            items=[task.title for task in tasks],
            success_criteria=list(template.success_criteria),
        ),
        approach=ProposalApproach(
            summary=template.approach_summary,
            steps=list(template.steps),
            risks=list(template.risks),
        ),
    )


def _cluster_rank(cluster: EscalationCluster) -> tuple[int, int, str]:
    return (-cluster.severity.rank, -cluster.size, cluster.cluster_id)


def _baseline_severity(size: int, *, rate_per_day: float) -> Severity:
    if size >= _HIGH_SIZE or rate_per_day >= _HIGH_RATE_PER_DAY:
        return Severity.HIGH
    if size >= _MEDIUM_SIZE or rate_per_day >= _MEDIUM_RATE_PER_DAY:
        return Severity.MEDIUM
    return Severity.LOW


def _escalation_text(escalation: EscalationView) -> str:
    return f"{escalation.question.text} {escalation.question.context}"


def _shared_keywords(members: list[EscalationView]) -> list[str]:
    """Tokens present in most member texts, most common first."""

    counts: Counter[str] = Counter()
    for escalation in members:
        counts.update(token for token in tokenize(_escalation_text(escalation)) if len(token) > 3)
    quorum = max(2, (len(members) + 1) // 2)
    shared = [(token, count) for token, count in counts.items() if count >= quorum]
    shared.sort(key=lambda item: (-item[1], item[0]))
    return [token for token, _ in shared[:_KEYWORD_LIMIT]]


def _collect_component(
    start_id: str,
    adjacency: dict[str, set[str]],
    visited: set[str],
) -> list[str]:
    queue: deque[str] = deque([start_id])
    component: list[str] = []

    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        component.append(current)
        for neighbor in sorted(adjacency.get(current, set())):
            if neighbor not in visited:
                queue.append(neighbor)

    return component


def _build_cluster_id(escalation_ids: list[str]) -> str:
    joined = "|".join(sorted(escalation_ids))
    digest = hashlib.sha1(joined.encode("utf-8"), usedforsecurity=False).hexdigest()  # noqa: S324
    return f"cluster:{digest}"
