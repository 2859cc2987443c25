"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from stageflow.config import Settings
from stageflow.orchestrator.auto_repair import AutoRepairLoop
from stageflow.orchestrator.backend import (
    EchoAgent,
    EchoRemediation,
    RecordingVersionControl,
    StageRegistry,
)
from stageflow.orchestrator.invoker import AgentInvoker
from stageflow.orchestrator.models import JobStatus, JobView
from stageflow.orchestrator.repository import JobRepository
from stageflow.orchestrator.runner import Orchestrator
from stageflow.orchestrator.stages import stages_for


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for job creation."""

    db_path: Path | None
    job_type: str
    task_description: str
    target: str | None
    payload_json: str | None
    parent_id: str | None
    auto_execute_children: bool | None = None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    roots_only: bool
    limit: int


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for run/show/resume/cancel/auto-fix and queue operations on one job."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobPauseCommand:
    """CLI input for pausing or skipping a job with an optional reason."""

    db_path: Path | None
    job_id: str
    reason: str | None


@dataclass(slots=True)
class RecoverStaleCommand:
    """CLI input for stale job recovery."""

    db_path: Path | None
    stale_after_seconds: int | None


class OrchestratorCliController:
    """Coordinates job, queue and recovery CLI operations."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        payload = _parse_payload(command.payload_json)
        payload["task_description"] = command.task_description
        if command.target is not None:
            payload["target"] = command.target
        if command.auto_execute_children is not None:
            payload["auto_execute_children"] = command.auto_execute_children

        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job_id = orchestrator.create_job(
                command.job_type,
                payload,
                parent_ref=command.parent_id,
            )
            job = orchestrator.repository.get_job(job_id)
        return [
            f"Job created: job_id={job.job_id} type={job.job_type} status={job.status.value}",
            f"Stages: {','.join(stages_for(job.job_type))}",
        ]

    def run_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.run_job(command.job_id)
        return [_job_line("Job finished", job)]

    def show_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type}",
            f"Status: {job.status.value}",
            f"Parent: {job.parent_id or '-'} depth={job.depth} order={job.execution_order}",
            f"Target: {job.target or '-'}",
            f"Current stage: {job.current_stage or '-'}",
            f"Paused: {'yes' if job.is_paused else 'no'} ({job.pause_reason or '-'})",
            f"Checkpoint: {job.checkpoint_ref or '-'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error_summary or '-'}",
            f"Replaces: {job.retry_of_job_id or '-'}",
            f"Stages: {len(details.stages)}",
        ]
        for stage in details.stages:
            lines.append(
                f"  #{stage.id} {stage.stage} status={stage.status.value} "
                f"retries={stage.retry_count} error={stage.error or '-'}",
            )
        if details.queue:
            lines.append(f"Sub-jobs: {len(details.queue)}")
            for entry in details.queue:
                depends_on = ",".join(str(value) for value in entry.depends_on) or "-"
                lines.append(
                    f"  entry={entry.id} order={entry.execution_order} child={entry.child_id} "
                    f"status={entry.status.value} depends_on={depends_on} "
                    f"error={entry.error or '-'}",
                )
        if details.remediation_attempts:
            lines.append(f"Auto-fix attempts: {len(details.remediation_attempts)}")
            for attempt in details.remediation_attempts:
                lines.append(
                    f"  attempt={attempt.attempt_id} status={attempt.status.value} "
                    f"new_job={attempt.new_job_id or '-'} error={attempt.error or '-'}",
                )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                status=status_filter,
                roots_only=command.roots_only,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type} status={job.status.value} "
                f"depth={job.depth} parent={job.parent_id or '-'} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def pause_job(self, command: JobPauseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            paused = orchestrator.pause(command.job_id, command.reason)
        if not paused:
            return [f"Job not paused (already finished): {command.job_id}"]
        return [f"Pause requested: {command.job_id}"]

    def resume_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.resume(command.job_id)
        return [_job_line("Job resumed", job)]

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            cancelled = orchestrator.cancel(command.job_id)
        if not cancelled:
            return [f"Job not cancelled (already finished): {command.job_id}"]
        return [f"Job cancelled: {command.job_id}"]

    def skip_job(self, command: JobPauseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            skipped = orchestrator.skip(command.job_id, command.reason or "Skipped by operator.")
        if not skipped:
            return [f"Job not skipped (already settled): {command.job_id}"]
        return [f"Job skipped: {command.job_id}"]

    def auto_fix(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.repository.get_job(command.job_id)
            auto_repair = orchestrator.auto_repair
            eligibility = auto_repair.evaluate(job) if auto_repair is not None else None
            attempt_id = orchestrator.trigger_auto_fix(command.job_id)
            attempts = orchestrator.repository.list_remediation_attempts(command.job_id)
        if attempt_id is None:
            reason = eligibility.reason if eligibility is not None else "Auto-fix unavailable."
            return [f"Auto-fix not triggered: {reason}"]
        attempt = next(item for item in attempts if item.attempt_id == attempt_id)
        return [
            f"Auto-fix attempt {attempt.attempt_id}: status={attempt.status.value} "
            f"new_job={attempt.new_job_id or '-'}",
        ]

    def queue_status(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            status = orchestrator.get_queue_status(command.job_id)
        counts = " ".join(f"{key}={value}" for key, value in status.to_dict().items())
        return [f"Queue of {command.job_id}: {counts}"]

    def queue_next(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            child_id = orchestrator.get_next_executable(command.job_id)
        return [f"Next executable: {child_id or '-'}"]

    def queue_advance(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            result = orchestrator.advance_queue(command.job_id)
            parent = orchestrator.repository.get_job(command.job_id)
        rolled_up = result.rolled_up_status.value if result.rolled_up_status else "-"
        return [
            f"Queue advanced: started={result.next_child_id or '-'} rolled_up={rolled_up}",
            _job_line("Parent", parent),
        ]

    def queue_retry_failed(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            reset = orchestrator.retry_failed(command.job_id)
            parent = orchestrator.repository.get_job(command.job_id)
        lines = [f"Sub-jobs retried: {len(reset)}"]
        lines.extend(f"  {child_id}" for child_id in reset)
        lines.append(_job_line("Parent", parent))
        return lines

    def recover_stale(self, command: RecoverStaleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        stale_after_seconds = (
            command.stale_after_seconds or settings.orchestrator.stale_after_seconds
        )
        with _orchestrator(settings) as orchestrator:
            failed = orchestrator.recover_stale(timedelta(seconds=stale_after_seconds))
        lines = [f"Recovered stale jobs: {len(failed)} (threshold {stale_after_seconds}s)"]
        lines.extend(f"  {job_id}" for job_id in failed)
        return lines


def _job_line(prefix: str, job: JobView) -> str:
    line = f"{prefix}: job_id={job.job_id} type={job.job_type} status={job.status.value}"
    if job.error_summary:
        line += f" error={job.error_summary}"
    return line


def _parse_payload(raw: str | None) -> dict[str, object]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid --payload JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("--payload must be a JSON object.")
    return parsed


def _parse_status(raw: str | None) -> JobStatus | None:
    if raw is None:
        return None
    try:
        return JobStatus(raw)
    except ValueError as error:
        allowed = ", ".join(item.value for item in JobStatus)
        raise ValueError(f"Unsupported status {raw!r}. Expected one of: {allowed}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    settings.validate()
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _orchestrator(settings: Settings) -> Iterator[Orchestrator]:
    with _repository(settings) as repository:
        version_control = RecordingVersionControl()
        invoker = AgentInvoker(
            repository=repository,
            registry=StageRegistry(default=EchoAgent()),
            workspace_root=settings.workspace_root,
            max_attempts=settings.orchestrator.stage_max_attempts,
            retry_delays_seconds=settings.orchestrator.retry_delays_seconds,
            stage_timeout_seconds=settings.orchestrator.stage_timeout_seconds,
        )
        yield Orchestrator(
            repository=repository,
            invoker=invoker,
            auto_repair=AutoRepairLoop(
                repository=repository,
                settings=settings.auto_repair,
                remediation=EchoRemediation(),
                version_control=version_control,
            ),
            version_control=version_control,
        )
