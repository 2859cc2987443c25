"""Per-job stage state machine and hand-off to the sub-job queue."""

from __future__ import annotations

import logging
from collections import deque
from datetime import timedelta
from typing import Any

from stageflow.orchestrator.auto_repair import AutoRepairLoop
from stageflow.orchestrator.backend.base import VersionControl
from stageflow.orchestrator.errors import ConstraintViolationError
from stageflow.orchestrator.invoker import AgentInvoker
from stageflow.orchestrator.models import (
    TERMINAL_JOB_STATUSES,
    AdvanceResult,
    DecompositionPlan,
    FailureClass,
    JobCreate,
    JobStatus,
    JobView,
    QueueEntryStatus,
    QueueStatus,
    StageStatus,
)
from stageflow.orchestrator.repository import JobRepository
from stageflow.orchestrator.stages import resume_index, stages_for
from stageflow.orchestrator.sub_job_queue import SubJobQueue

logger = logging.getLogger(__name__)

_RESERVED_PAYLOAD_KEYS = ("task_description", "target", "auto_execute_children")
_NON_TERMINAL_JOB_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)

# (job_id, already claimed as running)
_WorkItem = tuple[str, bool]


class Orchestrator:
    """Drives jobs through their stage sequences and their children through the queue.

    Children are chained through a local work list: when one finishes, the parent's
    queue is advanced and the next child runs within the same call, no polling.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        invoker: AgentInvoker,
        queue: SubJobQueue | None = None,
        auto_repair: AutoRepairLoop | None = None,
        version_control: VersionControl | None = None,
    ) -> None:
        self.repository = repository
        self.invoker = invoker
        self.queue = queue or SubJobQueue(repository)
        self.auto_repair = auto_repair
        self.version_control = version_control

    def create_job(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        parent_ref: str | None = None,
    ) -> str:
        """Create a pending job; a child created under `parent_ref` also gets a queue slot."""

        data = dict(payload or {})
        task_description = str(data.pop("task_description", "") or "")
        target = data.pop("target", None)
        auto_execute_children = bool(data.pop("auto_execute_children", parent_ref is None))
        create = JobCreate(
            job_type=job_type,
            task_description=task_description,
            target=str(target) if target is not None else None,
            payload=data,
            auto_execute_children=auto_execute_children,
        )
        if parent_ref is None:
            job = self.repository.create_job(create)
            logger.info("Created %s job %s", job_type, job.job_id)
            return job.job_id

        parent = self.repository.get_job(parent_ref)
        if parent.status not in _NON_TERMINAL_JOB_STATUSES:
            raise ConstraintViolationError(
                f"Job {parent_ref} is {parent.status.value} and takes no new sub-jobs.",
            )
        create.parent_id = parent_ref
        create.execution_order = len(self.repository.children_of(parent_ref))
        entries = self.repository.create_children_with_entries(parent_ref, [create], [()])
        logger.info("Created %s sub-job %s under %s", job_type, entries[0].child_id, parent_ref)
        return entries[0].child_id

    def run_job(self, job_id: str) -> JobView:
        """Run a pending job to a terminal or paused state, chaining any sub-jobs."""

        job = self.repository.get_job(job_id)
        entry = self.repository.get_queue_entry_for_child(job_id)
        if entry is not None and entry.status == QueueEntryStatus.PENDING:
            raise ConstraintViolationError(
                f"Job {job_id} waits in the queue of {job.parent_id}; advance the parent instead.",
            )
        self._drain([(job_id, False)])
        return self.repository.get_job(job_id)

    def pause(self, job_id: str, reason: str | None = None) -> bool:
        """Request a pause; a running job stops before its next stage."""

        job = self.repository.get_job(job_id)
        if job.status in TERMINAL_JOB_STATUSES:
            return False
        if not self.repository.set_pause(job_id, paused=True, reason=reason):
            return False
        if job.status == JobStatus.PENDING:
            self.repository.update_status(
                job_id,
                expected=(JobStatus.PENDING,),
                status=JobStatus.PAUSED,
            )
        logger.info("Pause requested for job %s: %s", job_id, reason or "-")
        return True

    def resume(self, job_id: str) -> JobView:
        """Clear the pause flag; a paused job continues at its next stage.

        A child whose queue slot has not been handed out yet goes back to pending
        and waits for its parent's queue instead of running inline.
        """

        job = self.repository.get_job(job_id)
        if job.status in TERMINAL_JOB_STATUSES:
            return job
        self.repository.set_pause(job_id, paused=False)

        entry = self.repository.get_queue_entry_for_child(job_id)
        if entry is not None and entry.status == QueueEntryStatus.PENDING:
            if job.status == JobStatus.PAUSED and self.repository.update_status(
                job_id,
                expected=(JobStatus.PAUSED,),
                status=JobStatus.PENDING,
            ):
                logger.info("Job %s returned to the queue of %s", job_id, job.parent_id)
            parent = self.repository.get_job(entry.parent_id)
            if parent.status == JobStatus.RUNNING:
                self._drain(self._continue_queue(parent.job_id))
            return self.repository.get_job(job_id)

        if job.status == JobStatus.PAUSED and self.repository.update_status(
            job_id,
            expected=(JobStatus.PAUSED,),
            status=JobStatus.RUNNING,
        ):
            logger.info("Resumed job %s", job_id)
            self._drain([(job_id, True)])
        return self.repository.get_job(job_id)

    def cancel(self, job_id: str, reason: str = "Cancelled by operator.") -> bool:
        """Cancel a job and its unfinished descendants; completed siblings stay as they are."""

        job = self.repository.get_job(job_id)
        if not self.repository.update_status(
            job_id,
            expected=_NON_TERMINAL_JOB_STATUSES,
            status=JobStatus.CANCELLED,
            failure_class=FailureClass.CANCELLED,
            error_summary=reason,
        ):
            return False
        logger.info("Cancelled job %s", job_id)

        pending: deque[str] = deque([job_id])
        while pending:
            current = pending.popleft()
            self.queue.skip_pending(current, reason)
            for child in self.repository.children_of(current):
                if child.status not in TERMINAL_JOB_STATUSES:
                    self.repository.update_status(
                        child.job_id,
                        expected=_NON_TERMINAL_JOB_STATUSES,
                        status=JobStatus.CANCELLED,
                        failure_class=FailureClass.CANCELLED,
                        error_summary=f"Ancestor {job_id} was cancelled.",
                    )
                self.queue.record_child_result(child.job_id)
                pending.append(child.job_id)

        if job.parent_id is not None:
            self._drain(self._after_terminal(job_id))
        return True

    def retry_failed(self, job_id: str) -> list[str]:
        """Re-run the failed sub-jobs of `job_id`; a rolled-up parent is reopened.

        Returns the ids of the sub-jobs put back into the queue, descendants included.
        """

        job = self.repository.get_job(job_id)
        if job.status == JobStatus.CANCELLED:
            raise ConstraintViolationError(
                f"Job {job_id} was cancelled; its sub-jobs stay as they are.",
            )
        entry = self.repository.get_queue_entry_for_child(job_id)
        if entry is not None and job.status in TERMINAL_JOB_STATUSES:
            raise ConstraintViolationError(
                f"Job {job_id} is a finished sub-job of {entry.parent_id}; "
                "retry its parent instead.",
            )

        reset = self.queue.retry_failed(job_id)
        if not reset:
            return []
        if job.status in (JobStatus.FAILED, JobStatus.COMPLETED_WITH_WARNINGS):
            if self.repository.update_status(
                job_id,
                expected=(job.status,),
                status=JobStatus.RUNNING,
                details={"reason": "retry_failed", "reset": len(reset)},
            ):
                logger.info("Reopened job %s to retry %d sub-job(s)", job_id, len(reset))
        if self.repository.get_job(job_id).status == JobStatus.RUNNING:
            self._drain(self._continue_queue(job_id))
        return reset

    def skip(self, job_id: str, reason: str = "Skipped by operator.") -> bool:
        """Skip a pending or failed sub-job and let its parent's queue move on."""

        job = self.repository.get_job(job_id)
        if not self.queue.skip(job_id, reason):
            return False
        parent_id = job.parent_id
        if parent_id is not None and self.repository.get_job(parent_id).status == JobStatus.RUNNING:
            self._drain(self._continue_queue(parent_id))
        return True

    def get_queue_status(self, job_id: str) -> QueueStatus:
        self.repository.get_job(job_id)
        return self.queue.get_queue_status(job_id)

    def get_next_executable(self, job_id: str) -> str | None:
        self.repository.get_job(job_id)
        entry = self.queue.get_next_executable(job_id)
        return entry.child_id if entry is not None else None

    def advance_queue(self, job_id: str) -> AdvanceResult:
        """Advance a running parent's queue and run the child it hands out."""

        parent = self.repository.get_job(job_id)
        if parent.status != JobStatus.RUNNING:
            logger.info("Queue of job %s not advanced, job is %s", job_id, parent.status.value)
            return AdvanceResult()
        result, follow_ups = self._advance(job_id)
        self._drain(follow_ups)
        return result

    def trigger_auto_fix(self, job_id: str) -> int | None:
        if self.auto_repair is None:
            return None
        return self.auto_repair.trigger_auto_fix(job_id)

    def recover_stale(self, stale_after: timedelta) -> list[str]:
        """Fail jobs and stage rows that stopped making progress; returns failed job ids."""

        failed_stages = self.repository.fail_stale_stage_executions(stale_after=stale_after)
        if failed_stages:
            logger.warning("Failed %d stale stage execution(s)", len(failed_stages))

        failed_jobs: list[str] = []
        follow_ups: list[_WorkItem] = []
        for job in self.repository.find_stale_jobs(stale_after=stale_after):
            if self.repository.list_queue_entries(job.job_id):
                _, queued = self._advance(job.job_id)
                follow_ups.extend(queued)
                continue
            error = (
                f"Job made no progress for {int(stale_after.total_seconds())}s "
                f"(last stage: {job.current_stage or '-'})."
            )
            if self._fail_job(job.job_id, failure_class=FailureClass.TIMEOUT, error=error):
                logger.warning("Recovered stale job %s", job.job_id)
                failed_jobs.append(job.job_id)
                follow_ups.extend(self._after_terminal(job.job_id))
        self._drain(follow_ups)
        return failed_jobs

    def _drain(self, work: list[_WorkItem]) -> None:
        queue: deque[_WorkItem] = deque(work)
        while queue:
            job_id, claimed = queue.popleft()
            queue.extend(self._step(job_id, claimed=claimed))

    def _step(self, job_id: str, *, claimed: bool) -> list[_WorkItem]:
        if not claimed:
            job = self.repository.get_job(job_id)
            if job.status != JobStatus.PENDING:
                logger.info("Job %s not started, status is %s", job_id, job.status.value)
                return []
            if job.is_paused:
                self.repository.update_status(
                    job_id,
                    expected=(JobStatus.PENDING,),
                    status=JobStatus.PAUSED,
                )
                return []
            if not self.repository.update_status(
                job_id,
                expected=(JobStatus.PENDING,),
                status=JobStatus.RUNNING,
            ):
                return []
            logger.info("Started %s job %s", job.job_type, job_id)
        return self._execute(job_id)

    def _execute(self, job_id: str) -> list[_WorkItem]:  # noqa: PLR0911
        job = self.repository.get_job(job_id)
        if self.repository.list_queue_entries(job_id):
            return self._continue_queue(job_id)

        sequence = stages_for(job.job_type)
        completed = [
            stage.stage
            for stage in self.repository.list_stage_executions(job_id)
            if stage.status == StageStatus.COMPLETED
        ]
        for stage in sequence[resume_index(job.job_type, completed) :]:
            self.repository.set_current_stage(job_id, stage)
            outcome = self.invoker.invoke(stage, job)
            if not outcome.success:
                if outcome.failure_class == FailureClass.CANCELLED:
                    return []
                self._fail_job(
                    job_id,
                    failure_class=outcome.failure_class or FailureClass.AGENT_EXECUTION,
                    error=f"Stage {stage} failed: {outcome.error}",
                )
                return self._after_terminal(job_id)

            job = self.repository.get_job(job_id)
            if job.status != JobStatus.RUNNING:
                return []

            try:
                plan = DecompositionPlan.from_output(outcome.output)
            except ValueError as error:
                self._fail_job(
                    job_id,
                    failure_class=FailureClass.VALIDATION,
                    error=f"Stage {stage} produced an invalid plan: {error}",
                )
                return self._after_terminal(job_id)
            if plan is not None and job.auto_execute_children:
                return self._decompose(job, plan)

            if job.is_paused:
                self._pause_running(job_id)
                return []

        return self._complete(job_id)

    def _decompose(self, job: JobView, plan: DecompositionPlan) -> list[_WorkItem]:
        self.repository.set_plan(job.job_id, plan.to_dict())
        try:
            self.queue.materialize_children(job.job_id, plan)
        except ConstraintViolationError as error:
            self._fail_job(
                job.job_id,
                failure_class=FailureClass.VALIDATION,
                error=f"Decomposition rejected: {error}",
            )
            return self._after_terminal(job.job_id)
        self.repository.set_current_stage(job.job_id, None)
        return self._continue_queue(job.job_id)

    def _continue_queue(self, job_id: str) -> list[_WorkItem]:
        if self.repository.get_job(job_id).is_paused:
            self._pause_running(job_id)
            return []
        _, follow_ups = self._advance(job_id)
        return follow_ups

    def _advance(self, parent_id: str) -> tuple[AdvanceResult, list[_WorkItem]]:
        result = self.queue.advance_queue(parent_id)
        if result.next_child_id is not None:
            return result, [(result.next_child_id, False)]
        if result.rolled_up_status is None:
            return result, []

        if result.rolled_up_status == JobStatus.FAILED:
            self._maybe_auto_repair(parent_id)
        else:
            self._record_checkpoint(self.repository.get_job(parent_id))
        return result, self._after_terminal(parent_id)

    def _complete(self, job_id: str) -> list[_WorkItem]:
        job = self.repository.get_job(job_id)
        self.repository.set_current_stage(job_id, None)
        self._record_checkpoint(job)
        if not self.repository.update_status(
            job_id,
            expected=(JobStatus.RUNNING,),
            status=JobStatus.COMPLETED,
        ):
            return []
        logger.info("Job %s completed", job_id)
        return self._after_terminal(job_id)

    def _after_terminal(self, job_id: str) -> list[_WorkItem]:
        job = self.repository.get_job(job_id)
        if job.parent_id is None:
            return []
        self.queue.record_child_result(job_id, job.status, job.error_summary)
        parent = self.repository.get_job(job.parent_id)
        if parent.status != JobStatus.RUNNING:
            return []
        return self._continue_queue(parent.job_id)

    def _fail_job(self, job_id: str, *, failure_class: FailureClass, error: str) -> bool:
        failed = self.repository.record_job_failure(
            job_id,
            failure_class=failure_class,
            error_summary=error,
        )
        if failed:
            logger.warning("Job %s failed (%s): %s", job_id, failure_class.value, error)
            self._maybe_auto_repair(job_id)
        return failed

    def _pause_running(self, job_id: str) -> None:
        if self.repository.update_status(
            job_id,
            expected=(JobStatus.RUNNING,),
            status=JobStatus.PAUSED,
        ):
            logger.info("Job %s paused", job_id)

    def _maybe_auto_repair(self, job_id: str) -> None:
        if self.auto_repair is None or not self.auto_repair.settings.auto_trigger_on_failure:
            return
        self.auto_repair.trigger_auto_fix(job_id)

    def _record_checkpoint(self, job: JobView) -> None:
        if self.version_control is None:
            return
        label = job.target or job.task_description or job.job_type
        checkpoint_ref = self.version_control.commit(f"{job.job_type}: {label} ({job.job_id})")
        self.repository.set_checkpoint(job.job_id, checkpoint_ref)
