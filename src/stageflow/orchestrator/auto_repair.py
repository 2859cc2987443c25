"""Bounded, cooldown-gated remediation of failed jobs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from stageflow.config import AutoRepairSettings
from stageflow.orchestrator.backend.base import (
    RemediationCapability,
    RemediationContext,
    VersionControl,
)
from stageflow.orchestrator.models import (
    JobCreate,
    JobStatus,
    JobView,
    RemediationStatus,
    RepairEligibility,
    StageStatus,
)
from stageflow.orchestrator.repository import JobRepository
from stageflow.storage.common import utc_now

logger = logging.getLogger(__name__)


class AutoRepairLoop:
    """Investigates a failed job, applies a fix, and resubmits it as a brand-new job."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        settings: AutoRepairSettings,
        remediation: RemediationCapability | None,
        version_control: VersionControl | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.remediation = remediation
        self.version_control = version_control
        self._clock = clock

    def evaluate(self, job: JobView) -> RepairEligibility:  # noqa: PLR0911
        """Decide whether a job may get another remediation attempt now."""

        if not self.settings.enabled:
            return RepairEligibility(eligible=False, reason="Auto-fix is disabled.")
        if self.remediation is None:
            return RepairEligibility(
                eligible=False,
                reason="No remediation capability is configured.",
            )
        if job.status != JobStatus.FAILED:
            return RepairEligibility(
                eligible=False,
                reason=f"Job is {job.status.value}, only failed jobs are repaired.",
            )
        if job.job_type not in self.settings.allowed_job_types:
            return RepairEligibility(
                eligible=False,
                reason=f"Job type {job.job_type!r} is not eligible for auto-fix.",
            )
        if job.failure_class in self.settings.denied_failure_classes:
            return RepairEligibility(
                eligible=False,
                reason=(
                    f"Failure class {job.failure_class.value} is excluded from auto-fix."
                    if job.failure_class is not None
                    else "Failure class is excluded from auto-fix."
                ),
            )

        attempts = self.repository.list_remediation_attempts(job.job_id)
        if len(attempts) >= self.settings.max_attempts:
            return RepairEligibility(
                eligible=False,
                reason=(
                    f"CapacityExceeded: {len(attempts)}/{self.settings.max_attempts} "
                    "auto-fix attempts used for this job."
                ),
            )
        if attempts:
            cooldown = timedelta(minutes=self.settings.cooldown_minutes)
            elapsed = self._clock() - attempts[-1].created_at
            if elapsed < cooldown:
                remaining = int((cooldown - elapsed).total_seconds() // 60) + 1
                return RepairEligibility(
                    eligible=False,
                    reason=f"Cooldown active, next auto-fix allowed in ~{remaining} min.",
                )

        chain_cap = self.settings.chain_max_attempts
        if chain_cap is not None:
            chain_attempts = sum(
                len(self.repository.list_remediation_attempts(job_id))
                for job_id in self.repository.remediation_chain(job.job_id)
            )
            if chain_attempts >= chain_cap:
                return RepairEligibility(
                    eligible=False,
                    reason=(
                        f"CapacityExceeded: {chain_attempts}/{chain_cap} auto-fix attempts "
                        "used across the replacement chain."
                    ),
                )

        return RepairEligibility(eligible=True, reason="Eligible for auto-fix.")

    def trigger_auto_fix(self, job_id: str) -> int | None:
        """Run one remediation attempt; returns its id, or None when the gate refuses."""

        job = self.repository.get_job(job_id)
        eligibility = self.evaluate(job)
        if not eligibility.eligible:
            logger.info("Auto-fix not triggered for job %s: %s", job_id, eligibility.reason)
            return None
        remediation = self.remediation
        if remediation is None:
            return None

        previous_attempts = len(self.repository.list_remediation_attempts(job_id))
        attempt = self.repository.create_remediation_attempt(job_id)
        logger.info("Auto-fix attempt %d started for job %s", attempt.attempt_id, job_id)
        status = RemediationStatus.INVESTIGATING
        try:
            context = RemediationContext(
                job=job,
                failed_stages=[
                    stage
                    for stage in self.repository.list_stage_executions(job_id)
                    if stage.status == StageStatus.FAILED
                ],
                events=self.repository.list_events(job_id),
                checkpoint_ref=job.checkpoint_ref,
                attempt_number=previous_attempts + 1,
            )
            investigation = remediation.investigate(context)
            if not investigation.fixable:
                self.repository.transition_remediation_attempt(
                    attempt.attempt_id,
                    expected=status,
                    status=RemediationStatus.FAILED,
                    root_cause=investigation.root_cause,
                    error="Investigation found the failure not fixable by code changes.",
                )
                logger.info("Auto-fix attempt %d: not fixable", attempt.attempt_id)
                return attempt.attempt_id

            self._advance(
                attempt.attempt_id,
                status,
                RemediationStatus.FIXING,
                root_cause=investigation.root_cause,
            )
            status = RemediationStatus.FIXING

            fix = remediation.generate_fix(context)
            artifact_ref: str | None = None
            if self.version_control is not None:
                self.version_control.apply_fix(fix)
                artifact_ref = self.version_control.commit(
                    f"Auto-fix for {job.job_type} job {job.job_id}: {fix.description}",
                )
            self._advance(
                attempt.attempt_id,
                status,
                RemediationStatus.TESTING,
                fix_description=fix.description,
                artifact_ref=artifact_ref,
            )
            status = RemediationStatus.TESTING

            if self.version_control is not None:
                self.version_control.rebuild()
            new_job = self.repository.create_job(
                JobCreate(
                    job_type=job.job_type,
                    task_description=job.task_description,
                    target=job.target,
                    payload=dict(job.payload),
                    auto_execute_children=job.auto_execute_children,
                    retry_of_job_id=job.job_id,
                ),
            )
            if artifact_ref is not None:
                self.repository.set_checkpoint(new_job.job_id, artifact_ref)
            self._advance(
                attempt.attempt_id,
                status,
                RemediationStatus.SUCCESS,
                new_job_id=new_job.job_id,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Auto-fix attempt %d for job %s failed", attempt.attempt_id, job_id)
            self.repository.transition_remediation_attempt(
                attempt.attempt_id,
                expected=status,
                status=RemediationStatus.FAILED,
                error=str(error) or type(error).__name__,
            )
            return attempt.attempt_id

        logger.info(
            "Auto-fix attempt %d for job %s succeeded, replacement job %s",
            attempt.attempt_id,
            job_id,
            new_job.job_id,
        )
        return attempt.attempt_id

    def _advance(
        self,
        attempt_id: int,
        expected: RemediationStatus,
        status: RemediationStatus,
        **fields: str | None,
    ) -> None:
        moved = self.repository.transition_remediation_attempt(
            attempt_id,
            expected=expected,
            status=status,
            **fields,
        )
        if not moved:
            raise RuntimeError(
                f"Remediation attempt {attempt_id} left {expected.value} concurrently.",
            )
