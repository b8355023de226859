from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from overseer.main import overseer

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Command Flows"),
]


def _invoke(runner: CliRunner, *args: str):
    result = runner.invoke(overseer, list(args))
    assert result.exit_code == 0, result.output
    return result


def _field(output: str, name: str) -> str:
    match = re.search(rf"{name}=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def _create_outcome(runner: CliRunner, db_path: Path) -> str:
    result = _invoke(
        runner,
        "outcome",
        "create",
        "--db-path",
        str(db_path),
        "--name",
        "Ship billing export",
        "--criterion",
        "CSV export endpoint works",
    )
    assert result.output.startswith("Outcome created: ")
    assert "status=draft" in result.output
    return _field(result.output, "outcome_id")


def test_outcome_task_and_escalation_flow(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "overseer.db"
    outcome_id = _create_outcome(runner, db_path)

    added = _invoke(
        runner,
        "task",
        "add",
        "--db-path",
        str(db_path),
        "--outcome-id",
        outcome_id,
        "--title",
        "Provision bucket",
        "--phase",
        "infrastructure",
        "--priority",
        "5",
    )
    assert "phase=infrastructure status=pending priority=5" in added.output

    listed = _invoke(runner, "task", "list", "--db-path", str(db_path), "--outcome-id", outcome_id)
    assert "title='Provision bucket'" in listed.output

    raised = _invoke(
        runner,
        "escalation",
        "raise",
        "--db-path",
        str(db_path),
        "--outcome-id",
        outcome_id,
        "--trigger",
        "multiple-approaches",
        "--question",
        "CSV or XLSX?",
        "--option",
        "csv=Plain CSV",
        "--option",
        "xlsx=Excel workbook",
    )
    escalation_id = _field(raised.output, "escalation_id")
    assert "status=pending" in raised.output

    pending = _invoke(runner, "escalation", "list", "--db-path", str(db_path))
    assert escalation_id in pending.output

    shown = _invoke(
        runner,
        "escalation",
        "show",
        "--db-path",
        str(db_path),
        "--escalation-id",
        escalation_id,
    )
    assert "Question: CSV or XLSX?" in shown.output
    assert "Option: csv - Plain CSV" in shown.output

    answered = _invoke(
        runner,
        "escalation",
        "answer",
        "--db-path",
        str(db_path),
        "--escalation-id",
        escalation_id,
        "--option",
        "csv",
    )
    assert "status=answered" in answered.output

    patterns = _invoke(runner, "escalation", "patterns", "--db-path", str(db_path))
    assert "multiple-approaches: csv=1" in patterns.output

    state = _invoke(
        runner,
        "orchestrate",
        "state",
        "--db-path",
        str(db_path),
        "--outcome-id",
        outcome_id,
    )
    assert "phase=infrastructure" in state.output
    assert "Infrastructure: done=0/1 failed=0" in state.output


def test_orchestrate_run_with_echo_agent(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    echo_agent_template: str,
) -> None:
    monkeypatch.setenv("OVERSEER_WORKER_COMMAND_TEMPLATE", echo_agent_template)
    monkeypatch.setenv("OVERSEER_WORKDIR_ROOT", str(tmp_path / "workers"))
    monkeypatch.setenv("OVERSEER_POLL_INTERVAL_SECONDS", "0.05")
    runner = CliRunner()
    db_path = tmp_path / "overseer.db"
    outcome_id = _create_outcome(runner, db_path)
    _invoke(
        runner,
        "task",
        "add",
        "--db-path",
        str(db_path),
        "--outcome-id",
        outcome_id,
        "--title",
        "Write CSV",
        "--description",
        "CSV writer done",
    )

    result = _invoke(
        runner,
        "orchestrate",
        "run",
        "--db-path",
        str(db_path),
        "--outcome-id",
        outcome_id,
        "--max-run-seconds",
        "60",
    )

    assert "success=True phase=complete" in result.output
    assert "Message: All tasks completed" in result.output

    review = _invoke(
        runner,
        "review",
        "run",
        "--db-path",
        str(db_path),
        "--outcome-id",
        outcome_id,
    )
    assert "Review cycle 1:" in review.output


def test_orchestrate_run_requires_worker_template(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("OVERSEER_WORKER_COMMAND_TEMPLATE", raising=False)
    runner = CliRunner()
    db_path = tmp_path / "overseer.db"
    outcome_id = _create_outcome(runner, db_path)

    result = runner.invoke(
        overseer,
        ["orchestrate", "run", "--db-path", str(db_path), "--outcome-id", outcome_id],
    )

    assert result.exit_code != 0
    assert "OVERSEER_WORKER_COMMAND_TEMPLATE" in result.output


def test_domain_errors_become_click_errors(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "overseer.db"
    outcome_id = _create_outcome(runner, db_path)

    unknown_trigger = runner.invoke(
        overseer,
        [
            "escalation",
            "raise",
            "--db-path",
            str(db_path),
            "--outcome-id",
            outcome_id,
            "--trigger",
            "gut-feeling",
            "--question",
            "Why?",
        ],
    )
    missing = runner.invoke(
        overseer,
        ["outcome", "show", "--db-path", str(db_path), "--outcome-id", "missing"],
    )

    assert unknown_trigger.exit_code == 1
    assert "Error" in unknown_trigger.output
    assert missing.exit_code == 1
    assert "missing" in missing.output


def test_stop_answer_holds_work_until_released(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "overseer.db"
    outcome_id = _create_outcome(runner, db_path)
    added = _invoke(
        runner,
        "task",
        "add",
        "--db-path",
        str(db_path),
        "--outcome-id",
        outcome_id,
        "--title",
        "Provision bucket",
        "--phase",
        "infrastructure",
    )
    task_id = _field(added.output, "task_id")
    raised = _invoke(
        runner,
        "escalation",
        "raise",
        "--db-path",
        str(db_path),
        "--outcome-id",
        outcome_id,
        "--trigger",
        "blocking-decision",
        "--task-id",
        task_id,
        "--question",
        "Can provisioning go ahead?",
        "--option",
        "proceed=Proceed",
        "--option",
        "stop=Stop",
    )
    escalation_id = _field(raised.output, "escalation_id")
    _invoke(
        runner,
        "escalation",
        "answer",
        "--db-path",
        str(db_path),
        "--escalation-id",
        escalation_id,
        "--option",
        "stop",
    )

    shown = _invoke(
        runner,
        "escalation",
        "show",
        "--db-path",
        str(db_path),
        "--escalation-id",
        escalation_id,
    )
    assert "Hold: active" in shown.output

    release_args = ["escalation", "release", "--db-path", str(db_path)]
    released = _invoke(runner, *release_args, "--escalation-id", escalation_id)
    assert released.output.startswith("Escalation hold released: ")
    assert f"escalation_id={escalation_id}" in released.output

    again = runner.invoke(overseer, [*release_args, "--escalation-id", escalation_id])
    assert again.exit_code == 1
    assert "not holding any work" in again.output
