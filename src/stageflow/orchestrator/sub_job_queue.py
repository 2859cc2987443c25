"""Dependency-aware, single-flight scheduler for a parent's decomposed children.

Siblings share one mutable workspace, so at most one child of a parent is
in progress at any time. A pending entry becomes a candidate once every entry
it depends on has completed; candidates are taken in plan order. Entries that
can never become candidates, because a dependency failed or was skipped, are
skipped themselves so the queue always drains. When nothing is pending or in
progress the parent is rolled up:

- every entry completed -> ``completed``
- no entry completed -> ``failed``
- otherwise -> ``completed_with_warnings``

The roll-up is a compare-and-set from ``running``, so racing callers settle it
exactly once. An operator may put failed entries back to pending, which reopens
a rolled-up parent, or skip a single pending or failed entry.
"""

from __future__ import annotations

import logging

from stageflow.orchestrator.errors import ConstraintViolationError
from stageflow.orchestrator.models import (
    AdvanceResult,
    DecompositionPlan,
    FailureClass,
    JobCreate,
    JobStatus,
    JobView,
    QueueEntryStatus,
    QueueEntryView,
    QueueStatus,
)
from stageflow.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)

_DEAD_ENTRY_STATUSES = frozenset({QueueEntryStatus.FAILED, QueueEntryStatus.SKIPPED})
_ACTIVE_ENTRY_STATUSES = frozenset({QueueEntryStatus.PENDING, QueueEntryStatus.IN_PROGRESS})
_SUCCESS_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.COMPLETED_WITH_WARNINGS})


class SubJobQueue:
    """Materializes and drives the children of decomposed jobs."""

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def materialize_children(self, parent_id: str, plan: DecompositionPlan) -> list[str]:
        """Create one child job and one queue entry per sub-task; all or nothing."""

        parent = self.repository.get_job(parent_id)
        children = [
            JobCreate(
                job_type=task.job_type,
                task_description=task.description or task.title,
                target=task.target or parent.target,
                payload={"title": task.title},
                parent_id=parent_id,
                execution_order=index,
                auto_execute_children=False,
            )
            for index, task in enumerate(plan.sub_tasks)
        ]
        entries = self.repository.create_children_with_entries(
            parent_id,
            children,
            [task.depends_on for task in plan.sub_tasks],
        )
        logger.info("Materialized %d sub-jobs for job %s", len(entries), parent_id)
        return [entry.child_id for entry in entries]

    def get_next_executable(self, parent_id: str) -> QueueEntryView | None:
        """Next entry allowed to run, or None. May skip blocked entries and roll up the parent."""

        entry, _ = self._next_executable(parent_id)
        return entry

    def advance_queue(self, parent_id: str) -> AdvanceResult:
        """Settle finished children, then hand out the next runnable child if any."""

        self._reconcile(parent_id)
        entry, rolled_up_status = self._next_executable(parent_id)
        if entry is None:
            return AdvanceResult(rolled_up_status=rolled_up_status)

        claimed = self.repository.transition_queue_entry(
            entry.id,
            expected=QueueEntryStatus.PENDING,
            status=QueueEntryStatus.IN_PROGRESS,
        )
        if not claimed:
            logger.info("Lost race for queue entry %s of job %s", entry.id, parent_id)
            return AdvanceResult()
        logger.info(
            "Sub-job %s (order %d) of job %s is now in progress",
            entry.child_id,
            entry.execution_order,
            parent_id,
        )
        return AdvanceResult(next_child_id=entry.child_id)

    def record_child_result(
        self,
        child_id: str,
        status: JobStatus | None = None,
        error: str | None = None,
    ) -> bool:
        """Reflect a child's terminal status on its queue entry."""

        entry = self.repository.get_queue_entry_for_child(child_id)
        if entry is None:
            return False
        if status is None or error is None:
            child = self.repository.get_job(child_id)
            status = status or child.status
            error = error or child.error_summary
        if not status.is_terminal:
            return False

        if entry.status == QueueEntryStatus.IN_PROGRESS:
            target = (
                QueueEntryStatus.COMPLETED
                if status in _SUCCESS_JOB_STATUSES
                else QueueEntryStatus.FAILED
            )
            return self.repository.transition_queue_entry(
                entry.id,
                expected=QueueEntryStatus.IN_PROGRESS,
                status=target,
                error=None if target == QueueEntryStatus.COMPLETED else error or status.value,
            )
        if entry.status == QueueEntryStatus.PENDING and status not in _SUCCESS_JOB_STATUSES:
            return self.repository.transition_queue_entry(
                entry.id,
                expected=QueueEntryStatus.PENDING,
                status=QueueEntryStatus.SKIPPED,
                error=f"Child job {child_id} ended as {status.value} before it was scheduled.",
            )
        return False

    def get_queue_status(self, parent_id: str) -> QueueStatus:
        return self.repository.queue_status(parent_id)

    def skip_pending(self, parent_id: str, reason: str) -> int:
        """Skip every pending entry of a parent and cancel the children behind them."""

        skipped = 0
        for entry in self.repository.list_queue_entries(parent_id):
            if entry.status != QueueEntryStatus.PENDING:
                continue
            if self._skip_entry(
                entry,
                error=reason,
                failure_class=FailureClass.CANCELLED,
            ):
                skipped += 1
        return skipped

    def retry_failed(self, parent_id: str) -> list[str]:
        """Return failed children, and the ones skipped behind them, to the queue.

        Each reset child goes back to pending with its failed stage rows requeued,
        and the reset recurses into the child's own failed sub-jobs. Entries an
        operator skipped stay skipped. Returns the ids of every reset child.
        """

        reset: list[str] = []
        for entry in self.repository.list_queue_entries(parent_id):
            child = self.repository.get_job(entry.child_id)
            if not _is_retryable(entry, child):
                continue
            if not self.repository.transition_queue_entry(
                entry.id,
                expected=entry.status,
                status=QueueEntryStatus.PENDING,
            ):
                continue
            self.repository.update_status(
                child.job_id,
                expected=(JobStatus.FAILED, JobStatus.CANCELLED),
                status=JobStatus.PENDING,
                details={"reason": "retry_failed", "parent_id": parent_id},
            )
            self.repository.requeue_failed_stages(child.job_id)
            reset.extend(self.retry_failed(child.job_id))
            reset.append(child.job_id)
        if reset:
            logger.info("Returned %d sub-job(s) of job %s to the queue", len(reset), parent_id)
        return reset

    def skip(self, child_id: str, reason: str) -> bool:
        """Skip one pending or failed child; entries depending on it are skipped in turn."""

        entry = self.repository.get_queue_entry_for_child(child_id)
        if entry is None:
            raise ConstraintViolationError(
                f"Job {child_id} is not a sub-job and cannot be skipped.",
            )
        if entry.status == QueueEntryStatus.IN_PROGRESS:
            raise ConstraintViolationError(
                f"Sub-job {child_id} is in progress; pause or cancel it instead.",
            )
        if entry.status == QueueEntryStatus.PENDING:
            skipped = self._skip_entry(entry, error=reason, failure_class=FailureClass.CANCELLED)
        elif entry.status == QueueEntryStatus.FAILED:
            skipped = self.repository.transition_queue_entry(
                entry.id,
                expected=QueueEntryStatus.FAILED,
                status=QueueEntryStatus.SKIPPED,
                error=f"{FailureClass.CANCELLED.value}: {reason}",
            )
        else:
            return False
        if skipped:
            logger.info("Skipped sub-job %s of job %s: %s", child_id, entry.parent_id, reason)
        return skipped

    def _next_executable(
        self,
        parent_id: str,
    ) -> tuple[QueueEntryView | None, JobStatus | None]:
        entries = self.repository.list_queue_entries(parent_id)
        if not entries:
            return None, None
        if any(entry.status == QueueEntryStatus.IN_PROGRESS for entry in entries):
            return None, None

        candidate = _first_candidate(entries)
        if candidate is not None:
            return candidate, None

        if any(entry.status == QueueEntryStatus.PENDING for entry in entries):
            skipped = self._skip_blocked(parent_id, entries)
            entries = self.repository.list_queue_entries(parent_id)
            candidate = _first_candidate(entries)
            if candidate is not None:
                return candidate, None
            if any(entry.status in _ACTIVE_ENTRY_STATUSES for entry in entries):
                logger.warning(
                    "Queue of job %s has pending entries but none runnable (skipped %d)",
                    parent_id,
                    skipped,
                )
                return None, None

        return None, self._roll_up(parent_id, entries)

    def _skip_blocked(self, parent_id: str, entries: list[QueueEntryView]) -> int:
        by_id = {entry.id: entry for entry in entries}
        dead: dict[int, str] = {
            entry.id: f"entry {entry.id} ({entry.status.value})"
            for entry in entries
            if entry.status in _DEAD_ENTRY_STATUSES
        }
        blocked: list[tuple[QueueEntryView, str]] = []
        changed = True
        while changed:
            changed = False
            for entry in entries:
                if entry.status != QueueEntryStatus.PENDING or entry.id in dead:
                    continue
                blocker = next(
                    (
                        dependency
                        for dependency in entry.depends_on
                        if dependency in dead or dependency not in by_id
                    ),
                    None,
                )
                if blocker is None:
                    continue
                reason = dead.get(blocker, f"entry {blocker} (missing)")
                dead[entry.id] = f"entry {entry.id} (skipped)"
                blocked.append((entry, reason))
                changed = True

        skipped = 0
        for entry, reason in blocked:
            if self._skip_entry(
                entry,
                error=f"Dependency {reason} did not complete.",
                failure_class=FailureClass.DEPENDENCY_SKIPPED,
            ):
                skipped += 1
        if skipped:
            logger.warning(
                "Skipped %d sub-job(s) of job %s blocked by failed dependencies",
                skipped,
                parent_id,
            )
        return skipped

    def _skip_entry(
        self,
        entry: QueueEntryView,
        *,
        error: str,
        failure_class: FailureClass,
    ) -> bool:
        skipped = self.repository.transition_queue_entry(
            entry.id,
            expected=QueueEntryStatus.PENDING,
            status=QueueEntryStatus.SKIPPED,
            error=f"{failure_class.value}: {error}",
        )
        if skipped:
            self.repository.update_status(
                entry.child_id,
                expected=(JobStatus.PENDING, JobStatus.PAUSED),
                status=JobStatus.CANCELLED,
                failure_class=failure_class,
                error_summary=error,
            )
        return skipped

    def _reconcile(self, parent_id: str) -> None:
        for entry in self.repository.list_queue_entries(parent_id):
            if entry.status not in _ACTIVE_ENTRY_STATUSES:
                continue
            child = self.repository.get_job(entry.child_id)
            if child.status.is_terminal:
                self.record_child_result(child.job_id, child.status, child.error_summary)

    def _roll_up(self, parent_id: str, entries: list[QueueEntryView]) -> JobStatus | None:
        total = len(entries)
        completed = sum(1 for entry in entries if entry.status == QueueEntryStatus.COMPLETED)
        failed = sum(1 for entry in entries if entry.status == QueueEntryStatus.FAILED)
        skipped = sum(1 for entry in entries if entry.status == QueueEntryStatus.SKIPPED)

        failure_class: FailureClass | None = None
        error_summary: str | None = None
        if completed == total:
            status = JobStatus.COMPLETED
        elif completed == 0:
            status = JobStatus.FAILED
            failure_class = FailureClass.SUB_JOB_FAILURE
            error_summary = f"No sub-job completed: {failed} failed, {skipped} skipped."
        else:
            status = JobStatus.COMPLETED_WITH_WARNINGS
            error_summary = (
                f"{completed}/{total} sub-jobs completed: {failed} failed, {skipped} skipped."
            )

        rolled_up = self.repository.update_status(
            parent_id,
            expected=(JobStatus.RUNNING,),
            status=status,
            failure_class=failure_class,
            error_summary=error_summary,
            details={
                "total": total,
                "completed": completed,
                "failed": failed,
                "skipped": skipped,
            },
        )
        if not rolled_up:
            return None
        logger.info("Job %s rolled up to %s from %d sub-jobs", parent_id, status.value, total)
        return status


def _first_candidate(entries: list[QueueEntryView]) -> QueueEntryView | None:
    completed_ids = {
        entry.id for entry in entries if entry.status == QueueEntryStatus.COMPLETED
    }
    candidates = [
        entry
        for entry in entries
        if entry.status == QueueEntryStatus.PENDING and set(entry.depends_on) <= completed_ids
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda entry: (entry.execution_order, entry.id))


def _is_retryable(entry: QueueEntryView, child: JobView) -> bool:
    if entry.status == QueueEntryStatus.FAILED:
        return True
    return (
        entry.status == QueueEntryStatus.SKIPPED
        and child.failure_class == FailureClass.DEPENDENCY_SKIPPED
    )
