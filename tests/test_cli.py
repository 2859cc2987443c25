from __future__ import annotations

import json
import re
from pathlib import Path

import allure
from click.testing import CliRunner

from stageflow import __version__
from stageflow.main import stageflow

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Job And Queue Commands"),
]


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(stageflow, list(args))


def _created_job_id(output: str) -> str:
    match = re.search(r"job_id=([a-f0-9-]+)", output)
    assert match is not None, output
    return match.group(1)


def test_version_option() -> None:
    result = _invoke(CliRunner(), "--version")

    assert result.exit_code == 0
    assert __version__ in result.output


def test_create_run_show_and_list(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()

    created = _invoke(
        runner,
        "job",
        "create",
        "--db-path",
        db_path,
        "--type",
        "bugfix",
        "--description",
        "Fix login redirect",
        "--target",
        "auth",
    )
    assert created.exit_code == 0, created.output
    assert "status=pending" in created.output
    assert "Stages: plan,code,test,review" in created.output
    job_id = _created_job_id(created.output)

    ran = _invoke(runner, "job", "run", "--db-path", db_path, job_id)
    assert ran.exit_code == 0, ran.output
    assert f"Job finished: job_id={job_id} type=bugfix status=completed" in ran.output

    shown = _invoke(runner, "job", "show", "--db-path", db_path, job_id)
    assert shown.exit_code == 0, shown.output
    assert "Status: completed" in shown.output
    assert "Target: auth" in shown.output
    assert "Stages: 4" in shown.output
    assert "status_completed running -> completed" in shown.output

    listed = _invoke(runner, "job", "list", "--db-path", db_path, "--status", "completed")
    assert listed.exit_code == 0, listed.output
    assert "Jobs: 1" in listed.output
    assert job_id in listed.output


def test_decomposition_and_queue_commands(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    payload = {
        "plan": {
            "summary": "two steps",
            "sub_tasks": [{"title": "schema"}, {"title": "api", "depends_on": [0]}],
        },
    }

    created = _invoke(
        runner,
        "job",
        "create",
        "--db-path",
        db_path,
        "--payload",
        json.dumps(payload),
    )
    job_id = _created_job_id(created.output)
    ran = _invoke(runner, "job", "run", "--db-path", db_path, job_id)
    assert "status=completed" in ran.output

    status = _invoke(runner, "queue", "status", "--db-path", db_path, job_id)
    assert status.exit_code == 0, status.output
    assert "total=2" in status.output
    assert "completed=2" in status.output

    next_child = _invoke(runner, "queue", "next", "--db-path", db_path, job_id)
    assert "Next executable: -" in next_child.output

    shown = _invoke(runner, "job", "show", "--db-path", db_path, job_id)
    assert "Sub-jobs: 2" in shown.output

    children = _invoke(runner, "job", "list", "--db-path", db_path)
    assert "Jobs: 3" in children.output
    roots = _invoke(runner, "job", "list", "--db-path", db_path, "--roots-only")
    assert "Jobs: 1" in roots.output


def test_manual_children_pause_resume_and_cancel(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    parent_id = _created_job_id(_invoke(runner, "job", "create", "--db-path", db_path).output)
    child_id = _created_job_id(
        _invoke(
            runner,
            "job",
            "create",
            "--db-path",
            db_path,
            "--type",
            "review",
            "--parent",
            parent_id,
        ).output,
    )

    paused = _invoke(runner, "job", "pause", "--db-path", db_path, "--reason", "wait", parent_id)
    assert f"Pause requested: {parent_id}" in paused.output
    shown = _invoke(runner, "job", "show", "--db-path", db_path, parent_id)
    assert "Status: paused" in shown.output
    assert "Paused: yes (wait)" in shown.output

    refused = _invoke(runner, "job", "run", "--db-path", db_path, child_id)
    assert refused.exit_code != 0
    assert "waits in the queue" in refused.output

    cancelled = _invoke(runner, "job", "cancel", "--db-path", db_path, parent_id)
    assert f"Job cancelled: {parent_id}" in cancelled.output
    again = _invoke(runner, "job", "cancel", "--db-path", db_path, parent_id)
    assert "already finished" in again.output
    status = _invoke(runner, "queue", "status", "--db-path", db_path, parent_id)
    assert "skipped=1" in status.output


def test_retry_failed_and_skip_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("STAGEFLOW_STAGE_MAX_ATTEMPTS", "1")
    monkeypatch.setenv("STAGEFLOW_RETRY_DELAYS_SECONDS", "0")
    monkeypatch.setenv("STAGEFLOW_AUTO_FIX_ENABLED", "false")
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    parent_id = _created_job_id(_invoke(runner, "job", "create", "--db-path", db_path).output)
    child_args = ("job", "create", "--db-path", db_path, "--type", "review", "--parent", parent_id)
    broken_id = _created_job_id(
        _invoke(
            runner,
            *child_args,
            "--payload",
            json.dumps({"fail_stages": ["review"]}),
        ).output,
    )
    _invoke(runner, *child_args)

    ran = _invoke(runner, "job", "run", "--db-path", db_path, parent_id)
    assert "status=completed_with_warnings" in ran.output, ran.output

    retried = _invoke(runner, "queue", "retry-failed", "--db-path", db_path, parent_id)
    assert retried.exit_code == 0, retried.output
    assert "Sub-jobs retried: 1" in retried.output
    assert broken_id in retried.output
    assert "status=completed_with_warnings" in retried.output
    shown = _invoke(runner, "job", "show", "--db-path", db_path, broken_id)
    assert "Stages: 1" in shown.output

    skipped = _invoke(runner, "job", "skip", "--db-path", db_path, "--reason", "flaky", broken_id)
    assert f"Job skipped: {broken_id}" in skipped.output
    again = _invoke(runner, "job", "skip", "--db-path", db_path, broken_id)
    assert "already settled" in again.output
    status = _invoke(runner, "queue", "status", "--db-path", db_path, parent_id)
    assert "completed=1" in status.output
    assert "skipped=1" in status.output

    root = _invoke(runner, "job", "skip", "--db-path", db_path, parent_id)
    assert root.exit_code != 0
    assert "not a sub-job" in root.output


def test_failed_job_gets_auto_fix_attempt(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("STAGEFLOW_STAGE_MAX_ATTEMPTS", "1")
    monkeypatch.setenv("STAGEFLOW_RETRY_DELAYS_SECONDS", "0")
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    created = _invoke(
        runner,
        "job",
        "create",
        "--db-path",
        db_path,
        "--payload",
        json.dumps({"fail_stages": ["code"]}),
    )
    job_id = _created_job_id(created.output)

    ran = _invoke(runner, "job", "run", "--db-path", db_path, job_id)
    assert ran.exit_code == 0, ran.output
    assert "status=failed" in ran.output

    shown = _invoke(runner, "job", "show", "--db-path", db_path, job_id)
    assert "Failure class: agent_execution" in shown.output
    assert "Auto-fix attempts: 1" in shown.output
    assert "status=success" in shown.output

    retried = _invoke(runner, "job", "auto-fix", "--db-path", db_path, job_id)
    assert retried.exit_code == 0, retried.output
    assert "Auto-fix not triggered: Cooldown active" in retried.output


def test_recover_stale_reports_nothing_on_fresh_db(tmp_path: Path) -> None:
    result = _invoke(
        CliRunner(),
        "recover-stale",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--stale-after-seconds",
        "60",
    )

    assert result.exit_code == 0, result.output
    assert "Recovered stale jobs: 0 (threshold 60s)" in result.output


def test_unknown_job_is_reported_as_cli_error(tmp_path: Path) -> None:
    result = _invoke(CliRunner(), "job", "show", "--db-path", str(tmp_path / "cli.db"), "nope")

    assert result.exit_code != 0
    assert "Job not found" in result.output


def test_invalid_payload_is_rejected(tmp_path: Path) -> None:
    result = _invoke(
        CliRunner(),
        "job",
        "create",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--payload",
        "[1, 2]",
    )

    assert result.exit_code != 0
    assert "must be a JSON object" in result.output
