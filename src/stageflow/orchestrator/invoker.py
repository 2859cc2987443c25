"""Executes one stage against an agent capability with bounded, classified retry."""

from __future__ import annotations

import concurrent.futures
import logging
import time
from collections.abc import Callable
from pathlib import Path

from stageflow.orchestrator.backend.base import (
    AgentCapability,
    AgentRequest,
    AgentResult,
    StageRegistry,
)
from stageflow.orchestrator.errors import StageTimeoutError
from stageflow.orchestrator.failure_classifier import (
    FailureClassification,
    classify_exception,
    classify_result,
)
from stageflow.orchestrator.models import FailureClass, JobStatus, JobView, StageOutcome
from stageflow.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS_SECONDS: tuple[float, ...] = (2.0, 5.0, 10.0)


class AgentInvoker:
    """Runs a stage through its registered capability and records the stage row."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: StageRegistry,
        workspace_root: Path,
        max_attempts: int = 3,
        retry_delays_seconds: tuple[float, ...] = DEFAULT_RETRY_DELAYS_SECONDS,
        stage_timeout_seconds: float | None = 1_800.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if not retry_delays_seconds:
            raise ValueError("retry_delays_seconds must not be empty")
        self.repository = repository
        self.registry = registry
        self.workspace_root = workspace_root
        self.max_attempts = max_attempts
        self.retry_delays_seconds = retry_delays_seconds
        self.stage_timeout_seconds = stage_timeout_seconds
        self._sleep = sleep

    def invoke(self, stage: str, job: JobView) -> StageOutcome:  # noqa: C901
        """Execute `stage` for `job`; the returned outcome carries the last attempt's error."""

        execution = self.repository.create_stage_execution(job.job_id, stage)
        if not self.repository.start_stage_execution(execution.id):
            error = f"Job {job.job_id} already has a running stage."
            self.repository.fail_stage_execution(
                execution.id,
                error=error,
                failure_class=FailureClass.VALIDATION,
            )
            return StageOutcome(
                stage=stage,
                success=False,
                failure_class=FailureClass.VALIDATION,
                error=error,
                stage_execution_id=execution.id,
            )

        capability = self.registry.resolve(stage)
        if capability is None:
            error = f"No agent capability registered for stage {stage!r}."
            self.repository.fail_stage_execution(
                execution.id,
                error=error,
                failure_class=FailureClass.VALIDATION,
            )
            return StageOutcome(
                stage=stage,
                success=False,
                failure_class=FailureClass.VALIDATION,
                error=error,
                stage_execution_id=execution.id,
            )

        attempt = 0
        while True:
            attempt += 1
            result, classification, error = self._attempt(
                capability=capability,
                request=AgentRequest(
                    job=job,
                    stage=stage,
                    working_dir=self.workspace_root,
                    attempt=attempt,
                ),
            )

            if not self._job_still_running(job.job_id):
                discarded = "Job left running state during stage execution; result discarded."
                self.repository.fail_stage_execution(
                    execution.id,
                    error=discarded,
                    failure_class=FailureClass.CANCELLED,
                )
                logger.info("Discarded %s result for job %s", stage, job.job_id)
                return StageOutcome(
                    stage=stage,
                    success=False,
                    failure_class=FailureClass.CANCELLED,
                    error=discarded,
                    retry_count=attempt - 1,
                    stage_execution_id=execution.id,
                )

            if classification is None:
                output = result.output if result is not None else {}
                self.repository.complete_stage_execution(execution.id, output=output)
                logger.info("Stage %s of job %s completed (attempt %d)", stage, job.job_id, attempt)
                return StageOutcome(
                    stage=stage,
                    success=True,
                    output=output,
                    artifacts=list(result.artifacts) if result is not None else [],
                    retry_count=attempt - 1,
                    stage_execution_id=execution.id,
                )

            if classification.retryable and attempt < self.max_attempts:
                delay_seconds = self._retry_delay(retry_number=attempt)
                self.repository.record_stage_retry(
                    execution.id,
                    error=error,
                    failure_class=classification.failure_class,
                )
                self.repository.add_event(
                    job.job_id,
                    event_type="stage_retry_scheduled",
                    details={
                        "stage": stage,
                        "attempt": attempt,
                        "delay_seconds": delay_seconds,
                        "error": error,
                        **classification.to_event_details(),
                    },
                )
                logger.warning(
                    "Stage %s of job %s failed (%s), retry %d/%d in %.1fs: %s",
                    stage,
                    job.job_id,
                    classification.failure_class.value,
                    attempt,
                    self.max_attempts - 1,
                    delay_seconds,
                    error,
                )
                self._sleep(delay_seconds)
                continue

            self.repository.fail_stage_execution(
                execution.id,
                error=error,
                failure_class=classification.failure_class,
            )
            self.repository.add_event(
                job.job_id,
                event_type="stage_failed",
                details={"stage": stage, "attempts": attempt, **classification.to_event_details()},
            )
            logger.warning(
                "Stage %s of job %s failed after %d attempt(s) (%s): %s",
                stage,
                job.job_id,
                attempt,
                classification.failure_class.value,
                error,
            )
            return StageOutcome(
                stage=stage,
                success=False,
                failure_class=classification.failure_class,
                error=error,
                retry_count=attempt - 1,
                stage_execution_id=execution.id,
            )

    def _attempt(
        self,
        *,
        capability: AgentCapability,
        request: AgentRequest,
    ) -> tuple[AgentResult | None, FailureClassification | None, str]:
        try:
            result = self._execute_with_timeout(capability, request)
        except Exception as error:  # noqa: BLE001
            return None, classify_exception(error), str(error) or type(error).__name__
        if result.success:
            return result, None, ""
        error = result.error or f"Agent reported failure for stage {request.stage}."
        return result, classify_result(failure_class=result.failure_class, error=error), error

    def _execute_with_timeout(
        self,
        capability: AgentCapability,
        request: AgentRequest,
    ) -> AgentResult:
        if self.stage_timeout_seconds is None:
            return capability.execute(request)

        # The worker thread is abandoned on timeout, never killed.
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="stageflow-stage",
        )
        future = executor.submit(capability.execute, request)
        try:
            return future.result(timeout=self.stage_timeout_seconds)
        except concurrent.futures.TimeoutError as error:
            if not future.done():
                raise StageTimeoutError(
                    f"Stage {request.stage} exceeded {self.stage_timeout_seconds:g}s "
                    f"(attempt {request.attempt}).",
                ) from error
            raise
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _job_still_running(self, job_id: str) -> bool:
        return self.repository.get_job(job_id).status == JobStatus.RUNNING

    def _retry_delay(self, *, retry_number: int) -> float:
        index = min(max(retry_number - 1, 0), len(self.retry_delays_seconds) - 1)
        return self.retry_delays_seconds[index]
