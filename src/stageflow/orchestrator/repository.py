"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from stageflow.orchestrator.errors import ConstraintViolationError, NotFoundError
from stageflow.orchestrator.models import (
    JOB_TRANSITIONS,
    QUEUE_TRANSITIONS,
    REMEDIATION_TRANSITIONS,
    TERMINAL_JOB_STATUSES,
    FailureClass,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    QueueEntrySpec,
    QueueEntryStatus,
    QueueEntryView,
    QueueStatus,
    RemediationAttemptView,
    RemediationStatus,
    StageExecutionView,
    StageStatus,
)
from stageflow.storage.alembic_runner import upgrade_head
from stageflow.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from stageflow.storage.sqlmodel_models import (
    Job,
    JobEvent,
    RemediationAttempt,
    StageExecution,
    SubJobQueueEntry,
)

DEFAULT_BUSY_TIMEOUT_MS = 5_000


class JobRepository:
    """Job store facade. Every status change is a compare-and-set on the status column."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Jobs

    def create_job(self, payload: JobCreate) -> JobView:
        """Create a pending job, deriving depth from its parent."""

        with Session(self.engine) as session:
            row = self._insert_job(session=session, payload=payload)
            self._commit_or_raise(session, f"Cannot create job {row.job_id}")
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView:
        """Return a job or raise NotFoundError."""

        with Session(self.engine) as session:
            return _to_job_view(_get_job_row(session, job_id))

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        roots_only: bool = False,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if roots_only:
                statement = statement.where(col(Job.parent_id).is_(None))
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def children_of(self, parent_id: str) -> list[JobView]:
        """Direct children of a job ordered by execution_order."""

        with Session(self.engine) as session:
            _get_job_row(session, parent_id)
            rows = session.exec(
                select(Job)
                .where(Job.parent_id == parent_id)
                .order_by(col(Job.execution_order).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def update_status(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        expected: Iterable[JobStatus],
        status: JobStatus,
        failure_class: FailureClass | None = None,
        error_summary: str | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move a job to `status` if it is currently in one of `expected`.

        Returns False when the row is in another state, including when a concurrent
        writer moved it between the read and the conditional update.
        """

        expected_statuses = frozenset(expected)
        for previous in expected_statuses:
            if status not in JOB_TRANSITIONS[previous]:
                raise ValueError(f"Illegal job transition {previous.value} -> {status.value}")

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = _get_job_row(session, job_id)
            current = JobStatus(row.status)
            if current not in expected_statuses:
                return False

            values: dict[str, Any] = {"status": status.value, "updated_at": now}
            if status == JobStatus.RUNNING and row.started_at is None:
                values["started_at"] = now
            if status == JobStatus.PAUSED:
                values["paused_at"] = now
            if status in TERMINAL_JOB_STATUSES:
                values["finished_at"] = now
            elif current in TERMINAL_JOB_STATUSES:
                values.update(finished_at=None, failure_class=None, error_summary=None)
            if failure_class is not None:
                values["failure_class"] = failure_class.value
            if error_summary is not None:
                values["error_summary"] = error_summary

            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == current.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            event_details: dict[str, object] = dict(details or {})
            if failure_class is not None:
                event_details["failure_class"] = failure_class.value
            if error_summary is not None:
                event_details["error_summary"] = error_summary
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=f"status_{status.value}",
                status_from=current.value,
                status_to=status.value,
                details=event_details,
            )
            session.commit()
            return True

    def record_job_failure(
        self,
        job_id: str,
        *,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark a running job as failed with its diagnostic of record."""

        return self.update_status(
            job_id,
            expected=(JobStatus.RUNNING,),
            status=JobStatus.FAILED,
            failure_class=failure_class,
            error_summary=error_summary,
            details=details,
        )

    def set_pause(self, job_id: str, *, paused: bool, reason: str | None = None) -> bool:
        """Set or clear the pause flag of a non-terminal job."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = _get_job_row(session, job_id)
            if JobStatus(row.status) in TERMINAL_JOB_STATUSES:
                return False
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status).not_in([value.value for value in TERMINAL_JOB_STATUSES]),
                )
                .values(
                    is_paused=paused,
                    pause_reason=reason if paused else None,
                    paused_at=now if paused else None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="pause_requested" if paused else "pause_cleared",
                status_from=row.status,
                status_to=row.status,
                details={"reason": reason} if paused and reason else {},
            )
            session.commit()
            return True

    def set_plan(self, job_id: str, plan: dict[str, Any]) -> None:
        """Store the decomposition plan of a job."""

        self._update_job_fields(
            job_id,
            event_type="plan_stored",
            details={"sub_tasks": len(plan.get("sub_tasks", []))},
            plan_json=_dump_json(plan),
        )

    def set_checkpoint(self, job_id: str, checkpoint_ref: str) -> None:
        """Record the last known-good version-control marker of a job."""

        self._update_job_fields(
            job_id,
            event_type="checkpoint_recorded",
            details={"checkpoint_ref": checkpoint_ref},
            checkpoint_ref=checkpoint_ref,
            checkpoint_at=to_db_datetime(utc_now()),
        )

    def set_current_stage(self, job_id: str, stage: str | None) -> None:
        """Record the stage a job is executing; also refreshes updated_at for staleness."""

        self._update_job_fields(job_id, event_type=None, details={}, current_stage=stage)

    def find_stale_jobs(
        self,
        *,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> list[JobView]:
        """Running jobs whose last update is older than the staleness threshold."""

        cutoff = to_db_datetime((now or utc_now()) - stale_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.RUNNING.value,
                    col(Job.updated_at) < cutoff,
                )
                .order_by(col(Job.depth).desc(), col(Job.updated_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def remediation_chain(self, job_id: str) -> list[str]:
        """Job ids along the retry_of_job_id chain, starting at `job_id` itself."""

        chain: list[str] = []
        seen: set[str] = set()
        with Session(self.engine) as session:
            current: str | None = job_id
            while current is not None and current not in seen:
                seen.add(current)
                row = session.get(Job, current)
                if row is None:
                    break
                chain.append(row.job_id)
                current = row.retry_of_job_id
        return chain

    # Stage executions

    def create_stage_execution(self, job_id: str, stage: str) -> StageExecutionView:
        """Create a queued stage execution row, or hand back one requeued for retry."""

        with Session(self.engine) as session:
            _get_job_row(session, job_id)
            requeued = session.exec(
                select(StageExecution)
                .where(
                    col(StageExecution.job_id) == job_id,
                    col(StageExecution.stage) == stage,
                    col(StageExecution.status) == StageStatus.QUEUED.value,
                )
                .order_by(col(StageExecution.id)),
            ).first()
            if requeued is not None:
                return _to_stage_view(requeued)
            row = StageExecution(
                job_id=job_id,
                stage=stage,
                status=StageStatus.QUEUED.value,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_stage_view(row)

    def start_stage_execution(self, execution_id: int) -> bool:
        """Move a queued stage to running; False if the job already has a running stage."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            try:
                result = session.exec(
                    sa_update(StageExecution)
                    .where(
                        col(StageExecution.id) == execution_id,
                        col(StageExecution.status) == StageStatus.QUEUED.value,
                    )
                    .values(status=StageStatus.RUNNING.value, started_at=now),
                )
            except IntegrityError:
                session.rollback()
                return False
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_stage_retry(
        self,
        execution_id: int,
        *,
        error: str,
        failure_class: FailureClass,
    ) -> bool:
        """Count one retry of a running stage and keep the latest error.

        Also refreshes the owning job's `updated_at`, so a job busy retrying is not stale.
        """

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StageExecution)
                .where(
                    col(StageExecution.id) == execution_id,
                    col(StageExecution.status) == StageStatus.RUNNING.value,
                )
                .values(
                    retry_count=col(StageExecution.retry_count) + 1,
                    error=error,
                    failure_class=failure_class.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            execution = session.get(StageExecution, execution_id)
            if execution is not None:
                session.exec(
                    sa_update(Job)
                    .where(col(Job.job_id) == execution.job_id)
                    .values(updated_at=to_db_datetime(utc_now())),
                )
            session.commit()
            return True

    def complete_stage_execution(
        self,
        execution_id: int,
        *,
        output: dict[str, Any] | None = None,
    ) -> bool:
        """Mark a running stage as completed with its output."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StageExecution)
                .where(
                    col(StageExecution.id) == execution_id,
                    col(StageExecution.status) == StageStatus.RUNNING.value,
                )
                .values(
                    status=StageStatus.COMPLETED.value,
                    output_json=_dump_json(output) if output else None,
                    finished_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail_stage_execution(
        self,
        execution_id: int,
        *,
        error: str,
        failure_class: FailureClass,
    ) -> bool:
        """Mark a queued or running stage as failed with the error of record."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StageExecution)
                .where(
                    col(StageExecution.id) == execution_id,
                    col(StageExecution.status).in_(
                        [StageStatus.QUEUED.value, StageStatus.RUNNING.value],
                    ),
                )
                .values(
                    status=StageStatus.FAILED.value,
                    error=error,
                    failure_class=failure_class.value,
                    finished_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_stage_executions(self, job_id: str) -> list[StageExecutionView]:
        """Stage rows of a job in creation order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(StageExecution)
                .where(StageExecution.job_id == job_id)
                .order_by(col(StageExecution.id).asc()),
            ).all()
        return [_to_stage_view(row) for row in rows]

    def requeue_failed_stages(self, job_id: str) -> int:
        """Put the latest failed row of each unfinished stage back to queued.

        The next run of the stage picks the requeued row up instead of creating one.
        """

        with Session(self.engine) as session:
            rows = session.exec(
                select(StageExecution)
                .where(StageExecution.job_id == job_id)
                .order_by(col(StageExecution.id).asc()),
            ).all()
            completed = {row.stage for row in rows if row.status == StageStatus.COMPLETED.value}
            latest_failed: dict[str, int] = {}
            for row in rows:
                if row.status == StageStatus.FAILED.value and row.stage not in completed:
                    latest_failed[row.stage] = row.id or 0

            requeued = 0
            for stage, execution_id in latest_failed.items():
                result = session.exec(
                    sa_update(StageExecution)
                    .where(
                        col(StageExecution.id) == execution_id,
                        col(StageExecution.status) == StageStatus.FAILED.value,
                    )
                    .values(
                        status=StageStatus.QUEUED.value,
                        retry_count=0,
                        error=None,
                        failure_class=None,
                        output_json=None,
                        started_at=None,
                        finished_at=None,
                    ),
                )
                if result.rowcount != 1:
                    continue
                requeued += 1
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="stage_requeued",
                    status_from=StageStatus.FAILED.value,
                    status_to=StageStatus.QUEUED.value,
                    details={"stage": stage, "stage_execution_id": execution_id},
                )
            session.commit()
        return requeued

    def fail_stale_stage_executions(
        self,
        *,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> list[StageExecutionView]:
        """Fail running stage rows started before the staleness threshold."""

        current_time = now or utc_now()
        cutoff = to_db_datetime(current_time - stale_after)
        failed: list[StageExecutionView] = []
        with Session(self.engine) as session:
            candidates = session.exec(
                select(StageExecution).where(
                    StageExecution.status == StageStatus.RUNNING.value,
                    col(StageExecution.started_at) < cutoff,
                ),
            ).all()
            for candidate in candidates:
                error = (
                    f"Stage {candidate.stage} exceeded {int(stale_after.total_seconds())}s "
                    "without finishing."
                )
                result = session.exec(
                    sa_update(StageExecution)
                    .where(
                        col(StageExecution.id) == candidate.id,
                        col(StageExecution.status) == StageStatus.RUNNING.value,
                    )
                    .values(
                        status=StageStatus.FAILED.value,
                        error=error,
                        failure_class=FailureClass.TIMEOUT.value,
                        finished_at=to_db_datetime(current_time),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=candidate.job_id,
                    event_type="stage_stale",
                    status_from=StageStatus.RUNNING.value,
                    status_to=StageStatus.FAILED.value,
                    details={"stage": candidate.stage, "stage_execution_id": candidate.id},
                )
                session.flush()
                session.refresh(candidate)
                failed.append(_to_stage_view(candidate))
            session.commit()
        return failed

    # Sub-job queue

    def create_queue_entries(
        self,
        parent_id: str,
        specs: Sequence[QueueEntrySpec],
    ) -> list[QueueEntryView]:
        """Create queue slots for existing children of `parent_id` in one transaction."""

        with Session(self.engine) as session:
            _get_job_row(session, parent_id)
            rows = self._insert_queue_entries(session=session, parent_id=parent_id, specs=specs)
            self._commit_or_raise(session, f"Cannot create queue entries for {parent_id}")
            for row in rows:
                session.refresh(row)
            return [_to_queue_view(row) for row in rows]

    def create_children_with_entries(
        self,
        parent_id: str,
        children: Sequence[JobCreate],
        depends_on: Sequence[Sequence[int]],
    ) -> list[QueueEntryView]:
        """Create child jobs and their queue slots atomically; nothing is kept on error."""

        if len(children) != len(depends_on):
            raise ValueError("Each child needs exactly one dependency list.")
        with Session(self.engine) as session:
            _get_job_row(session, parent_id)
            specs: list[QueueEntrySpec] = []
            for child, child_depends_on in zip(children, depends_on, strict=True):
                if child.parent_id != parent_id:
                    raise ConstraintViolationError(
                        f"Child of {parent_id} declares parent {child.parent_id!r}.",
                    )
                row = self._insert_job(session=session, payload=child)
                specs.append(
                    QueueEntrySpec(
                        child_id=row.job_id,
                        execution_order=child.execution_order,
                        depends_on=tuple(child_depends_on),
                    ),
                )
            rows = self._insert_queue_entries(session=session, parent_id=parent_id, specs=specs)
            self._commit_or_raise(session, f"Cannot materialize children of {parent_id}")
            for row in rows:
                session.refresh(row)
            return [_to_queue_view(row) for row in rows]

    def list_queue_entries(self, parent_id: str) -> list[QueueEntryView]:
        """Queue entries of a parent ordered by execution_order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(SubJobQueueEntry)
                .where(SubJobQueueEntry.parent_id == parent_id)
                .order_by(col(SubJobQueueEntry.execution_order).asc()),
            ).all()
        return [_to_queue_view(row) for row in rows]

    def get_queue_entry_for_child(self, child_id: str) -> QueueEntryView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SubJobQueueEntry).where(SubJobQueueEntry.child_id == child_id),
            ).one_or_none()
        return _to_queue_view(row) if row is not None else None

    def transition_queue_entry(
        self,
        entry_id: int,
        *,
        expected: QueueEntryStatus,
        status: QueueEntryStatus,
        error: str | None = None,
    ) -> bool:
        """Compare-and-set one queue entry.

        Returns False when the entry left `expected` meanwhile, or when marking it
        in_progress would give its parent a second in-progress entry.
        """

        if status not in QUEUE_TRANSITIONS[expected]:
            raise ValueError(f"Illegal queue transition {expected.value} -> {status.value}")

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"status": status.value}
        if status == QueueEntryStatus.IN_PROGRESS:
            values["started_at"] = now
        elif status == QueueEntryStatus.PENDING:
            values.update(started_at=None, finished_at=None, error=None)
        else:
            values["finished_at"] = now
        if error is not None:
            values["error"] = error

        with Session(self.engine) as session:
            row = session.get(SubJobQueueEntry, entry_id)
            if row is None:
                raise NotFoundError(f"Queue entry not found: {entry_id}")
            try:
                result = session.exec(
                    sa_update(SubJobQueueEntry)
                    .where(
                        col(SubJobQueueEntry.id) == entry_id,
                        col(SubJobQueueEntry.status) == expected.value,
                    )
                    .values(**values),
                )
            except IntegrityError:
                session.rollback()
                return False
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.parent_id,
                event_type=f"queue_entry_{status.value}",
                status_from=expected.value,
                status_to=status.value,
                details={
                    "entry_id": entry_id,
                    "child_id": row.child_id,
                    **({"error": error} if error else {}),
                },
            )
            session.commit()
            return True

    def queue_status(self, parent_id: str) -> QueueStatus:
        """Per-status entry counts for a parent."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(SubJobQueueEntry.status, func.count())
                .where(SubJobQueueEntry.parent_id == parent_id)
                .group_by(SubJobQueueEntry.status),
            ).all()
        status = QueueStatus()
        for value, count in rows:
            setattr(status, QueueEntryStatus(value).value, int(count))
            status.total += int(count)
        return status

    # Remediation attempts

    def create_remediation_attempt(self, job_id: str) -> RemediationAttemptView:
        """Open an auto-repair attempt in `investigating`."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            _get_job_row(session, job_id)
            row = RemediationAttempt(
                job_id=job_id,
                status=RemediationStatus.INVESTIGATING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="remediation_started",
                status_from=None,
                status_to=RemediationStatus.INVESTIGATING.value,
                details={"attempt_id": row.attempt_id},
            )
            session.commit()
            session.refresh(row)
            return _to_remediation_view(row)

    def transition_remediation_attempt(  # noqa: PLR0913
        self,
        attempt_id: int,
        *,
        expected: RemediationStatus,
        status: RemediationStatus,
        root_cause: str | None = None,
        fix_description: str | None = None,
        artifact_ref: str | None = None,
        new_job_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Compare-and-set one remediation attempt, filling in the given fields."""

        if status not in REMEDIATION_TRANSITIONS[expected]:
            raise ValueError(
                f"Illegal remediation transition {expected.value} -> {status.value}",
            )
        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status in {RemediationStatus.SUCCESS, RemediationStatus.FAILED}:
            values["finished_at"] = now
        for name, value in (
            ("root_cause", root_cause),
            ("fix_description", fix_description),
            ("artifact_ref", artifact_ref),
            ("new_job_id", new_job_id),
            ("error", error),
        ):
            if value is not None:
                values[name] = value

        with Session(self.engine) as session:
            row = session.get(RemediationAttempt, attempt_id)
            if row is None:
                raise NotFoundError(f"Remediation attempt not found: {attempt_id}")
            result = session.exec(
                sa_update(RemediationAttempt)
                .where(
                    col(RemediationAttempt.attempt_id) == attempt_id,
                    col(RemediationAttempt.status) == expected.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=row.job_id,
                event_type=f"remediation_{status.value}",
                status_from=expected.value,
                status_to=status.value,
                details={
                    "attempt_id": attempt_id,
                    **{
                        key: value
                        for key, value in values.items()
                        if key in {"new_job_id", "artifact_ref", "error"}
                    },
                },
            )
            session.commit()
            return True

    def list_remediation_attempts(self, job_id: str) -> list[RemediationAttemptView]:
        """Attempts for a job, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(RemediationAttempt)
                .where(RemediationAttempt.job_id == job_id)
                .order_by(
                    col(RemediationAttempt.created_at).asc(),
                    col(RemediationAttempt.attempt_id).asc(),
                ),
            ).all()
        return [_to_remediation_view(row) for row in rows]

    # Events

    def add_event(
        self,
        job_id: str,
        *,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append a free-form audit event to a job."""

        with Session(self.engine) as session:
            row = _get_job_row(session, job_id)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=row.status,
                status_to=row.status,
                details=details or {},
            )
            session.commit()

    def list_events(self, job_id: str) -> list[JobEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.event_id).asc()),
            ).all()
        return [_to_event_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails:
        """Return a job with its stage rows, queue, remediation attempts and events."""

        job = self.get_job(job_id)
        return JobDetails(
            job=job,
            stages=self.list_stage_executions(job_id),
            queue=self.list_queue_entries(job_id),
            remediation_attempts=self.list_remediation_attempts(job_id),
            events=self.list_events(job_id),
        )

    def _insert_job(self, *, session: Session, payload: JobCreate) -> Job:
        depth = 0
        if payload.parent_id is not None:
            parent = _get_job_row(session, payload.parent_id)
            depth = parent.depth + 1
            sibling = session.exec(
                select(Job).where(
                    Job.parent_id == payload.parent_id,
                    Job.execution_order == payload.execution_order,
                ),
            ).first()
            if sibling is not None:
                raise ConstraintViolationError(
                    f"Parent {payload.parent_id} already has a child at "
                    f"execution_order={payload.execution_order}.",
                )

        now = to_db_datetime(utc_now())
        row = Job(
            job_id=payload.job_id or str(uuid4()),
            job_type=payload.job_type,
            status=JobStatus.PENDING.value,
            parent_id=payload.parent_id,
            depth=depth,
            execution_order=payload.execution_order,
            target=payload.target,
            task_description=payload.task_description,
            payload_json=_dump_json(payload.payload) if payload.payload else None,
            auto_execute_children=payload.auto_execute_children,
            retry_of_job_id=payload.retry_of_job_id,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        self._add_event(
            session=session,
            job_id=row.job_id,
            event_type="created",
            status_from=None,
            status_to=JobStatus.PENDING.value,
            details={
                "job_type": payload.job_type,
                "parent_id": payload.parent_id,
                "depth": depth,
                "retry_of_job_id": payload.retry_of_job_id,
            },
        )
        return row

    def _insert_queue_entries(
        self,
        *,
        session: Session,
        parent_id: str,
        specs: Sequence[QueueEntrySpec],
    ) -> list[SubJobQueueEntry]:
        validate_dependency_graph([spec.depends_on for spec in specs])
        now = to_db_datetime(utc_now())
        rows: list[SubJobQueueEntry] = []
        for spec in specs:
            child = _get_job_row(session, spec.child_id)
            if child.parent_id != parent_id:
                raise ConstraintViolationError(
                    f"Job {spec.child_id} is not a child of {parent_id}.",
                )
            existing = session.exec(
                select(SubJobQueueEntry).where(SubJobQueueEntry.child_id == spec.child_id),
            ).first()
            if existing is not None:
                raise ConstraintViolationError(
                    f"Child {spec.child_id} already has queue slot {existing.id}.",
                )
            row = SubJobQueueEntry(
                parent_id=parent_id,
                child_id=spec.child_id,
                execution_order=spec.execution_order,
                status=QueueEntryStatus.PENDING.value,
                created_at=now,
            )
            session.add(row)
            rows.append(row)
        session.flush()

        for spec, row in zip(specs, rows, strict=True):
            entry_ids = [rows[index].id for index in spec.depends_on]
            row.depends_on_json = json.dumps(sorted(entry_ids)) if entry_ids else None
            session.add(row)
        if rows:
            self._add_event(
                session=session,
                job_id=parent_id,
                event_type="queue_materialized",
                status_from=None,
                status_to=None,
                details={"entries": len(rows)},
            )
        session.flush()
        return rows

    def _update_job_fields(
        self,
        job_id: str,
        *,
        event_type: str | None,
        details: dict[str, object],
        **values: Any,
    ) -> None:
        with Session(self.engine) as session:
            row = _get_job_row(session, job_id)
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            if event_type is not None:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=event_type,
                    status_from=row.status,
                    status_to=row.status,
                    details=details,
                )
            session.commit()

    def _commit_or_raise(self, session: Session, message: str) -> None:
        try:
            session.commit()
        except IntegrityError as error:
            session.rollback()
            raise ConstraintViolationError(f"{message}: {error.orig}") from error

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: str | None,
        status_to: str | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=_dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def validate_dependency_graph(depends_on: Sequence[Sequence[int]]) -> None:
    """Reject dependencies outside the sibling set, self references and cycles."""

    size = len(depends_on)
    for index, edges in enumerate(depends_on):
        for target in edges:
            if not 0 <= target < size:
                raise ConstraintViolationError(
                    f"Sibling #{index} depends on #{target}, which is outside the sibling set.",
                )
            if target == index:
                raise ConstraintViolationError(f"Sibling #{index} depends on itself.")

    visiting: set[int] = set()
    done: set[int] = set()
    for start in range(size):
        if start in done:
            continue
        stack: list[tuple[int, int]] = [(start, 0)]
        visiting.add(start)
        while stack:
            node, edge_index = stack[-1]
            edges = depends_on[node]
            if edge_index >= len(edges):
                stack.pop()
                visiting.discard(node)
                done.add(node)
                continue
            stack[-1] = (node, edge_index + 1)
            target = edges[edge_index]
            if target in visiting:
                raise ConstraintViolationError(
                    f"Dependency cycle between siblings #{node} and #{target}.",
                )
            if target not in done:
                visiting.add(target)
                stack.append((target, 0))


def _get_job_row(session: Session, job_id: str) -> Job:
    row = session.get(Job, job_id)
    if row is None:
        raise NotFoundError(f"Job not found: {job_id}")
    return row


def _dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json_object(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    parsed = json.loads(value)
    if isinstance(parsed, dict):
        return parsed
    return None


def _aware_or_none(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        job_type=row.job_type,
        status=JobStatus(row.status),
        parent_id=row.parent_id,
        depth=row.depth,
        execution_order=row.execution_order,
        target=row.target,
        task_description=row.task_description,
        payload=_load_json_object(row.payload_json) or {},
        plan=_load_json_object(row.plan_json),
        auto_execute_children=row.auto_execute_children,
        checkpoint_ref=row.checkpoint_ref,
        checkpoint_at=_aware_or_none(row.checkpoint_at),
        is_paused=row.is_paused,
        pause_reason=row.pause_reason,
        paused_at=_aware_or_none(row.paused_at),
        current_stage=row.current_stage,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        retry_of_job_id=row.retry_of_job_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=_aware_or_none(row.started_at),
        finished_at=_aware_or_none(row.finished_at),
    )


def _to_stage_view(row: StageExecution) -> StageExecutionView:
    return StageExecutionView(
        id=row.id or 0,
        job_id=row.job_id,
        stage=row.stage,
        status=StageStatus(row.status),
        retry_count=row.retry_count,
        error=row.error,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        output=_load_json_object(row.output_json),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_aware_or_none(row.started_at),
        finished_at=_aware_or_none(row.finished_at),
    )


def _to_queue_view(row: SubJobQueueEntry) -> QueueEntryView:
    depends_on: tuple[int, ...] = ()
    if row.depends_on_json:
        parsed = json.loads(row.depends_on_json)
        if isinstance(parsed, list):
            depends_on = tuple(int(value) for value in parsed)
    return QueueEntryView(
        id=row.id or 0,
        parent_id=row.parent_id,
        child_id=row.child_id,
        execution_order=row.execution_order,
        status=QueueEntryStatus(row.status),
        depends_on=depends_on,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_aware_or_none(row.started_at),
        finished_at=_aware_or_none(row.finished_at),
    )


def _to_remediation_view(row: RemediationAttempt) -> RemediationAttemptView:
    return RemediationAttemptView(
        attempt_id=row.attempt_id or 0,
        job_id=row.job_id,
        status=RemediationStatus(row.status),
        root_cause=row.root_cause,
        fix_description=row.fix_description,
        artifact_ref=row.artifact_ref,
        new_job_id=row.new_job_id,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=_aware_or_none(row.finished_at),
    )


def _to_event_view(row: JobEvent) -> JobEventView:
    return JobEventView(
        event_id=row.event_id or 0,
        job_id=row.job_id,
        event_type=row.event_type,
        status_from=row.status_from,
        status_to=row.status_to,
        created_at=to_utc_aware_datetime(row.created_at),
        details=_load_json_object(row.details_json) or {},
    )
