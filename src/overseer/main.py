"""CLI entrypoint for overseer."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from overseer import __version__
from overseer.errors import OverseerError
from overseer.orchestrator.controllers import (
    OrchestrateRunCommand,
    OrchestrateStateCommand,
    OrchestratorCliController,
    OutcomeCreateCommand,
    OutcomeInspectCommand,
    OutcomeListCommand,
    OutcomeParentCommand,
    OutcomeTransitionCommand,
    TaskAddCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskRequeueCommand,
)
from overseer.oversight.controllers import (
    AutoResolveConfigCommand,
    AutoResolveRunCommand,
    EscalationAnswerCommand,
    EscalationDismissCommand,
    EscalationInspectCommand,
    EscalationListCommand,
    EscalationPatternsCommand,
    EscalationRaiseCommand,
    EscalationReleaseCommand,
    ImproveAnalyzeCommand,
    OversightCliController,
    ReviewCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()
OVERSIGHT_CONTROLLER = OversightCliController()

CommandT = TypeVar("CommandT")

_DB_PATH_HELP = "SQLite DB path."


@click.group()
@click.version_option(version=__version__, prog_name="overseer")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def overseer(verbose: bool) -> None:
    """Outcome-driven task orchestration with human oversight."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# -- outcomes -----------------------------------------------------------------


@overseer.group()
def outcome() -> None:
    """Outcome lifecycle commands."""


@outcome.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--name", required=True, help="Outcome name.")
@click.option("--brief", default="", help="Outcome brief.")
@click.option("--parent-id", default=None, help="Parent outcome id.")
@click.option(
    "--criterion",
    "criteria",
    multiple=True,
    help="Completion criterion. Can be repeated.",
)
@click.option(
    "--auto-resolve-mode",
    type=click.Choice(["manual", "semi-auto", "full-auto"]),
    default=None,
    help="Auto-resolve mode (defaults to OVERSEER_AUTO_RESOLVE_MODE).",
)
@click.option(
    "--auto-resolve-threshold",
    type=click.FloatRange(min=0.0, max=1.0),
    default=None,
    help="Auto-resolve confidence threshold.",
)
def outcome_create(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    brief: str,
    parent_id: str | None,
    criteria: tuple[str, ...],
    auto_resolve_mode: str | None,
    auto_resolve_threshold: float | None,
) -> None:
    """Create a draft outcome."""

    _run(
        ORCHESTRATOR_CONTROLLER.create_outcome,
        OutcomeCreateCommand(
            db_path=db_path,
            name=name,
            brief=brief,
            parent_id=parent_id,
            criteria=criteria,
            auto_resolve_mode=auto_resolve_mode,
            auto_resolve_threshold=auto_resolve_threshold,
        ),
    )


@outcome.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice(["draft", "active", "dormant", "achieved", "archived"]),
    default=None,
    help="Filter by status.",
)
def outcome_list(db_path: Path | None, status: str | None) -> None:
    """List outcomes."""

    _run(ORCHESTRATOR_CONTROLLER.list_outcomes, OutcomeListCommand(db_path=db_path, status=status))


@outcome.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
def outcome_show(db_path: Path | None, outcome_id: str) -> None:
    """Show outcome details and health."""

    _run(
        ORCHESTRATOR_CONTROLLER.inspect_outcome,
        OutcomeInspectCommand(db_path=db_path, outcome_id=outcome_id),
    )


def _register_transition(action: str, help_text: str) -> None:
    @outcome.command(action, help=help_text)
    @click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
    @click.option("--outcome-id", required=True, help="Outcome id.")
    def transition(db_path: Path | None, outcome_id: str) -> None:
        _run(
            ORCHESTRATOR_CONTROLLER.transition_outcome,
            OutcomeTransitionCommand(db_path=db_path, outcome_id=outcome_id, action=action),
        )


_register_transition("activate", "Activate a draft or dormant outcome.")
_register_transition("pause", "Pause an active outcome.")
_register_transition("achieve", "Mark an active outcome as achieved.")
_register_transition("archive", "Archive an outcome.")


@outcome.command("set-parent")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
@click.option("--parent-id", default=None, help="New parent id; omit to detach.")
def outcome_set_parent(db_path: Path | None, outcome_id: str, parent_id: str | None) -> None:
    """Re-parent an outcome (cycles are rejected)."""

    _run(
        ORCHESTRATOR_CONTROLLER.set_parent,
        OutcomeParentCommand(db_path=db_path, outcome_id=outcome_id, parent_id=parent_id),
    )


@outcome.command("auto-resolve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
@click.option(
    "--mode",
    type=click.Choice(["manual", "semi-auto", "full-auto"]),
    required=True,
    help="Auto-resolve mode.",
)
@click.option(
    "--threshold",
    type=click.FloatRange(min=0.0, max=1.0),
    default=0.8,
    show_default=True,
    help="Minimum confidence to auto-answer.",
)
def outcome_auto_resolve(
    db_path: Path | None,
    outcome_id: str,
    mode: str,
    threshold: float,
) -> None:
    """Update the auto-resolve policy of an outcome."""

    _run(
        OVERSIGHT_CONTROLLER.configure_auto_resolve,
        AutoResolveConfigCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            mode=mode,
            threshold=threshold,
        ),
    )


# -- tasks --------------------------------------------------------------------


@overseer.group()
def task() -> None:
    """Task commands."""


@task.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description.")
@click.option(
    "--phase",
    type=click.Choice(["infrastructure", "execution"]),
    default="execution",
    show_default=True,
    help="Task phase.",
)
@click.option("--priority", type=int, default=0, show_default=True, help="Claim priority.")
@click.option(
    "--capability",
    "capabilities",
    multiple=True,
    help="Required capability (executable name). Can be repeated.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempt cap (defaults to OVERSEER_TASK_MAX_ATTEMPTS).",
)
def task_add(  # noqa: PLR0913
    db_path: Path | None,
    outcome_id: str,
    title: str,
    description: str,
    phase: str,
    priority: int,
    capabilities: tuple[str, ...],
    max_attempts: int | None,
) -> None:
    """Add a pending task to an outcome."""

    _run(
        ORCHESTRATOR_CONTROLLER.add_task,
        TaskAddCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            title=title,
            description=description,
            phase=phase,
            priority=priority,
            capabilities=capabilities,
            max_attempts=max_attempts,
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
@click.option(
    "--phase",
    type=click.Choice(["infrastructure", "execution"]),
    default=None,
    help="Filter by phase.",
)
@click.option(
    "--status",
    type=click.Choice(["pending", "claimed", "running", "completed", "failed"]),
    default=None,
    help="Filter by status.",
)
def task_list(
    db_path: Path | None,
    outcome_id: str,
    phase: str | None,
    status: str | None,
) -> None:
    """List tasks of an outcome in claim order."""

    _run(
        ORCHESTRATOR_CONTROLLER.list_tasks,
        TaskListCommand(db_path=db_path, outcome_id=outcome_id, phase=phase, status=status),
    )


@task.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Show task details and its event trail."""

    _run(
        ORCHESTRATOR_CONTROLLER.inspect_task,
        TaskInspectCommand(db_path=db_path, task_id=task_id),
    )


@task.command("requeue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--extra-attempts",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Additional attempts granted.",
)
def task_requeue(db_path: Path | None, task_id: str, extra_attempts: int) -> None:
    """Manually re-queue a permanently failed task."""

    _run(
        ORCHESTRATOR_CONTROLLER.requeue_task,
        TaskRequeueCommand(db_path=db_path, task_id=task_id, extra_attempts=extra_attempts),
    )


# -- orchestration ------------------------------------------------------------


@overseer.group()
def orchestrate() -> None:
    """Orchestration commands."""


@orchestrate.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
@click.option(
    "--skip-validation",
    is_flag=True,
    default=False,
    help="Unlock execution without the infrastructure capability check.",
)
@click.option(
    "--no-auto-resolve",
    is_flag=True,
    default=False,
    help="Do not auto-resolve escalations during the run.",
)
@click.option(
    "--wait-for-escalations",
    is_flag=True,
    default=False,
    help="Keep polling while pending escalations block all remaining work.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many loop iterations.",
)
@click.option(
    "--max-run-seconds",
    type=click.FloatRange(min=0.0, min_open=True),
    default=None,
    help="Stop after this many seconds.",
)
def orchestrate_run(  # noqa: PLR0913
    db_path: Path | None,
    outcome_id: str,
    skip_validation: bool,
    no_auto_resolve: bool,
    wait_for_escalations: bool,
    max_iterations: int | None,
    max_run_seconds: float | None,
) -> None:
    """Run orchestration for an outcome in the foreground.

    Workers are spawned from `OVERSEER_WORKER_COMMAND_TEMPLATE`.
    """

    _run(
        ORCHESTRATOR_CONTROLLER.run_orchestration,
        OrchestrateRunCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            skip_validation=skip_validation,
            auto_resolve=not no_auto_resolve,
            wait_for_escalations=wait_for_escalations,
            max_iterations=max_iterations,
            max_run_seconds=max_run_seconds,
        ),
    )


@orchestrate.command("state")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
def orchestrate_state(db_path: Path | None, outcome_id: str) -> None:
    """Show the current phase, progress and workers of an outcome."""

    _run(
        ORCHESTRATOR_CONTROLLER.orchestration_state,
        OrchestrateStateCommand(db_path=db_path, outcome_id=outcome_id),
    )


# -- escalations --------------------------------------------------------------


@overseer.group()
def escalation() -> None:
    """Escalation commands."""


@escalation.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", default=None, help="Filter by outcome id.")
@click.option(
    "--status",
    type=click.Choice(["pending", "answered", "dismissed"]),
    default="pending",
    show_default=True,
    help="Filter by status.",
)
def escalation_list(db_path: Path | None, outcome_id: str | None, status: str) -> None:
    """List escalations."""

    _run(
        OVERSIGHT_CONTROLLER.list_escalations,
        EscalationListCommand(db_path=db_path, outcome_id=outcome_id, status=status),
    )


@escalation.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--escalation-id", required=True, help="Escalation id.")
def escalation_show(db_path: Path | None, escalation_id: str) -> None:
    """Show an escalation with its question, options and answer."""

    _run(
        OVERSIGHT_CONTROLLER.inspect_escalation,
        EscalationInspectCommand(db_path=db_path, escalation_id=escalation_id),
    )


@escalation.command("raise")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
@click.option("--trigger", "trigger_type", required=True, help="Trigger type.")
@click.option("--question", required=True, help="Question text.")
@click.option("--context", default="", help="Question context.")
@click.option("--option", "options", multiple=True, help="Option as id=label. Can be repeated.")
@click.option("--task-id", default=None, help="Task that triggered the escalation.")
@click.option(
    "--blocks",
    "affected_task_ids",
    multiple=True,
    help="Task id blocked until resolution. Can be repeated.",
)
def escalation_raise(  # noqa: PLR0913
    db_path: Path | None,
    outcome_id: str,
    trigger_type: str,
    question: str,
    context: str,
    options: tuple[str, ...],
    task_id: str | None,
    affected_task_ids: tuple[str, ...],
) -> None:
    """Raise an escalation manually."""

    _run(
        OVERSIGHT_CONTROLLER.raise_escalation,
        EscalationRaiseCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            trigger_type=trigger_type,
            question=question,
            context=context,
            options=options,
            task_id=task_id,
            affected_task_ids=affected_task_ids,
        ),
    )


@escalation.command("answer")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--escalation-id", required=True, help="Escalation id.")
@click.option("--option", required=True, help="Selected option id.")
@click.option("--context", default="", help="Additional context for the answer.")
def escalation_answer(
    db_path: Path | None,
    escalation_id: str,
    option: str,
    context: str,
) -> None:
    """Answer a pending escalation."""

    _run(
        OVERSIGHT_CONTROLLER.answer_escalation,
        EscalationAnswerCommand(
            db_path=db_path,
            escalation_id=escalation_id,
            option=option,
            context=context,
        ),
    )


@escalation.command("dismiss")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--escalation-id", required=True, help="Escalation id.")
@click.option("--reason", default="", help="Dismissal reason.")
def escalation_dismiss(db_path: Path | None, escalation_id: str, reason: str) -> None:
    """Dismiss a pending escalation."""

    _run(
        OVERSIGHT_CONTROLLER.dismiss_escalation,
        EscalationDismissCommand(db_path=db_path, escalation_id=escalation_id, reason=reason),
    )


@escalation.command("release")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--escalation-id", required=True, help="Escalation id.")
def escalation_release(db_path: Path | None, escalation_id: str) -> None:
    """Unblock tasks held back by an answered stop or abort decision."""

    _run(
        OVERSIGHT_CONTROLLER.release_hold,
        EscalationReleaseCommand(db_path=db_path, escalation_id=escalation_id),
    )


@escalation.command("patterns")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", default=None, help="Filter by outcome id.")
def escalation_patterns(db_path: Path | None, outcome_id: str | None) -> None:
    """Show how answered escalations were resolved, per trigger type."""

    _run(
        OVERSIGHT_CONTROLLER.answer_patterns,
        EscalationPatternsCommand(db_path=db_path, outcome_id=outcome_id),
    )


@escalation.command("auto-resolve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
def escalation_auto_resolve(db_path: Path | None, outcome_id: str) -> None:
    """Run one auto-resolve pass over pending escalations of an outcome."""

    _run(
        OVERSIGHT_CONTROLLER.run_auto_resolve,
        AutoResolveRunCommand(db_path=db_path, outcome_id=outcome_id),
    )


# -- improvements and review --------------------------------------------------


@overseer.group()
def improve() -> None:
    """Improvement analysis commands."""


@improve.command("analyze")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", default=None, help="Restrict analysis to one outcome.")
@click.option(
    "--lookback-days",
    type=click.IntRange(min=1),
    default=None,
    help="Analysis window (defaults to OVERSEER_IMPROVEMENT_LOOKBACK_DAYS).",
)
@click.option(
    "--max-proposals",
    type=click.IntRange(min=1),
    default=None,
    help="Proposal cap (defaults to OVERSEER_IMPROVEMENT_MAX_PROPOSALS).",
)
@click.option(
    "--create-outcomes",
    is_flag=True,
    default=False,
    help="Create draft improvement outcomes for the proposals.",
)
def improve_analyze(
    db_path: Path | None,
    outcome_id: str | None,
    lookback_days: int | None,
    max_proposals: int | None,
    create_outcomes: bool,
) -> None:
    """Cluster recent escalations and propose improvement outcomes."""

    _run(
        OVERSIGHT_CONTROLLER.analyze_improvements,
        ImproveAnalyzeCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            lookback_days=lookback_days,
            max_proposals=max_proposals,
            create_outcomes=create_outcomes,
        ),
    )


@overseer.group()
def review() -> None:
    """Convergence review commands."""


@review.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
def review_run(db_path: Path | None, outcome_id: str) -> None:
    """Judge completion criteria and record a review cycle."""

    _run(
        OVERSIGHT_CONTROLLER.review_outcome,
        ReviewCommand(db_path=db_path, outcome_id=outcome_id),
    )


@review.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--outcome-id", required=True, help="Outcome id.")
def review_status(db_path: Path | None, outcome_id: str) -> None:
    """Show convergence status of an outcome."""

    _run(
        OVERSIGHT_CONTROLLER.convergence_status,
        ReviewCommand(db_path=db_path, outcome_id=outcome_id),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (OverseerError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    overseer()
