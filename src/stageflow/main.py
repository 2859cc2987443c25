"""CLI entrypoint for stageflow."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from stageflow import __version__
from stageflow.orchestrator.controllers import (
    JobCreateCommand,
    JobListCommand,
    JobMutateCommand,
    JobPauseCommand,
    OrchestratorCliController,
    RecoverStaleCommand,
)
from stageflow.orchestrator.errors import StageflowError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()
CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="stageflow")
def stageflow() -> None:
    """Stage-based job orchestrator CLI.

    Jobs run through the stages of their type. A stage output carrying a `plan`
    decomposes the job into sub-jobs executed one at a time.
    """

    logging.basicConfig(
        level=os.getenv("STAGEFLOW_LOG_LEVEL", "WARNING").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@stageflow.group()
def job() -> None:
    """Job lifecycle commands."""


@job.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "job_type", default="feature", show_default=True, help="Job type.")
@click.option("--description", "task_description", default="", help="Task description.")
@click.option("--target", default=None, help="Module or target name.")
@click.option("--payload", "payload_json", default=None, help="Extra payload as a JSON object.")
@click.option("--parent", "parent_id", default=None, help="Create as sub-job of this job.")
@click.option(
    "--auto-children/--no-auto-children",
    "auto_execute_children",
    default=None,
    help="Run sub-jobs automatically when a stage returns a plan.",
)
def job_create(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str,
    task_description: str,
    target: str | None,
    payload_json: str | None,
    parent_id: str | None,
    auto_execute_children: bool | None,
) -> None:
    """Create a pending job."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.create_job,
            JobCreateCommand(
                db_path=db_path,
                job_type=job_type,
                task_description=task_description,
                target=target,
                payload_json=payload_json,
                parent_id=parent_id,
                auto_execute_children=auto_execute_children,
            ),
        ),
    )


@job.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def job_run(db_path: Path | None, job_id: str) -> None:
    """Run a pending job and its sub-jobs."""

    _emit_lines(
        _call(ORCHESTRATOR_CONTROLLER.run_job, JobMutateCommand(db_path=db_path, job_id=job_id)),
    )


@job.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def job_show(db_path: Path | None, job_id: str) -> None:
    """Show job status, stage runs, sub-jobs and events."""

    _emit_lines(
        _call(ORCHESTRATOR_CONTROLLER.show_job, JobMutateCommand(db_path=db_path, job_id=job_id)),
    )


@job.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", default=None, help="Optional status filter.")
@click.option("--roots-only", is_flag=True, default=False, help="Hide sub-jobs.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum number of jobs.",
)
def job_list(db_path: Path | None, status: str | None, roots_only: bool, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.list_jobs,
            JobListCommand(db_path=db_path, status=status, roots_only=roots_only, limit=limit),
        ),
    )


@job.command("pause")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default=None, help="Why the job is paused.")
@click.argument("job_id")
def job_pause(db_path: Path | None, reason: str | None, job_id: str) -> None:
    """Pause a job before its next stage."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.pause_job,
            JobPauseCommand(db_path=db_path, job_id=job_id, reason=reason),
        ),
    )


@job.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def job_resume(db_path: Path | None, job_id: str) -> None:
    """Resume a paused job at its next stage."""

    _emit_lines(
        _call(ORCHESTRATOR_CONTROLLER.resume_job, JobMutateCommand(db_path=db_path, job_id=job_id)),
    )


@job.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def job_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a job and its unfinished sub-jobs."""

    _emit_lines(
        _call(ORCHESTRATOR_CONTROLLER.cancel_job, JobMutateCommand(db_path=db_path, job_id=job_id)),
    )


@job.command("skip")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default=None, help="Why the sub-job is skipped.")
@click.argument("job_id")
def job_skip(db_path: Path | None, reason: str | None, job_id: str) -> None:
    """Skip a pending or failed sub-job and continue its parent's queue."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.skip_job,
            JobPauseCommand(db_path=db_path, job_id=job_id, reason=reason),
        ),
    )


@job.command("auto-fix")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def job_auto_fix(db_path: Path | None, job_id: str) -> None:
    """Trigger one auto-fix attempt for a failed job."""

    _emit_lines(
        _call(ORCHESTRATOR_CONTROLLER.auto_fix, JobMutateCommand(db_path=db_path, job_id=job_id)),
    )


@stageflow.group()
def queue() -> None:
    """Sub-job queue commands."""


@queue.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def queue_status(db_path: Path | None, job_id: str) -> None:
    """Show sub-job counts per status."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.queue_status,
            JobMutateCommand(db_path=db_path, job_id=job_id),
        ),
    )


@queue.command("next")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def queue_next(db_path: Path | None, job_id: str) -> None:
    """Show the next runnable sub-job."""

    _emit_lines(
        _call(ORCHESTRATOR_CONTROLLER.queue_next, JobMutateCommand(db_path=db_path, job_id=job_id)),
    )


@queue.command("advance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def queue_advance(db_path: Path | None, job_id: str) -> None:
    """Advance the queue and run the next sub-job."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.queue_advance,
            JobMutateCommand(db_path=db_path, job_id=job_id),
        ),
    )


@queue.command("retry-failed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def queue_retry_failed(db_path: Path | None, job_id: str) -> None:
    """Put failed sub-jobs back into the queue and run them again."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.queue_retry_failed,
            JobMutateCommand(db_path=db_path, job_id=job_id),
        ),
    )


@stageflow.command("recover-stale")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--stale-after-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Override STAGEFLOW_STALE_AFTER_SECONDS.",
)
def recover_stale(db_path: Path | None, stale_after_seconds: int | None) -> None:
    """Fail jobs that stopped making progress."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.recover_stale,
            RecoverStaleCommand(db_path=db_path, stale_after_seconds=stale_after_seconds),
        ),
    )


def _call(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (StageflowError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    stageflow()
