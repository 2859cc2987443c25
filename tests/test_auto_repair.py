from __future__ import annotations

from datetime import datetime, timedelta

import allure

from stageflow.config import AutoRepairSettings
from stageflow.orchestrator.auto_repair import AutoRepairLoop
from stageflow.orchestrator.backend import (
    EchoRemediation,
    FixProposal,
    Investigation,
    RecordingVersionControl,
    RemediationContext,
)
from stageflow.orchestrator.errors import ExternalInfrastructureError
from stageflow.orchestrator.models import FailureClass, JobStatus, RemediationStatus
from stageflow.orchestrator.repository import JobRepository
from stageflow.storage.common import utc_now

pytestmark = [
    allure.epic("Auto-Repair"),
    allure.feature("Bounded Remediation Loop"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += timedelta(minutes=minutes)


def _loop(
    repository: JobRepository,
    *,
    settings: AutoRepairSettings | None = None,
    remediation=None,
    version_control: RecordingVersionControl | None = None,
    clock: _Clock | None = None,
) -> AutoRepairLoop:
    return AutoRepairLoop(
        repository=repository,
        settings=settings or AutoRepairSettings(),
        remediation=remediation or EchoRemediation(),
        version_control=version_control,
        clock=clock or _Clock(),
    )


def test_successful_attempt_resubmits_job_as_new_job(repository: JobRepository, failed_job) -> None:
    job = failed_job(target="payments", task_description="fix rounding", payload={"ticket": 7})
    version_control = RecordingVersionControl()
    loop = _loop(repository, version_control=version_control)

    attempt_id = loop.trigger_auto_fix(job.job_id)

    assert attempt_id is not None
    attempt = repository.list_remediation_attempts(job.job_id)[0]
    assert attempt.attempt_id == attempt_id
    assert attempt.status == RemediationStatus.SUCCESS
    assert attempt.root_cause == job.error_summary
    assert attempt.artifact_ref is not None
    replacement = repository.get_job(attempt.new_job_id or "")
    assert replacement.job_id != job.job_id
    assert replacement.status == JobStatus.PENDING
    assert replacement.retry_of_job_id == job.job_id
    assert replacement.target == "payments"
    assert replacement.payload == {"ticket": 7}
    assert replacement.checkpoint_ref == attempt.artifact_ref
    assert len(version_control.applied) == 1
    assert version_control.rebuilds == 1
    assert repository.get_job(job.job_id).status == JobStatus.FAILED
    event_types = [event.event_type for event in repository.list_events(job.job_id)]
    assert event_types[-4:] == [
        "remediation_started",
        "remediation_fixing",
        "remediation_testing",
        "remediation_success",
    ]


def test_external_infrastructure_failure_is_never_repaired(
    repository: JobRepository,
    make_orchestrator,
    agent,
) -> None:
    agent.script["code"] = [ExternalInfrastructureError("model provider returned 503")]
    orchestrator = make_orchestrator(auto_repair_settings=AutoRepairSettings())
    job_id = orchestrator.create_job("feature")

    job = orchestrator.run_job(job_id)

    assert job.status == JobStatus.FAILED
    assert job.failure_class == FailureClass.EXTERNAL_INFRASTRUCTURE
    assert agent.stages_of(job_id) == ["plan", "code"]
    assert orchestrator.auto_repair is not None
    eligibility = orchestrator.auto_repair.evaluate(job)
    assert eligibility.eligible is False
    assert "external_infrastructure" in eligibility.reason
    assert orchestrator.trigger_auto_fix(job_id) is None
    assert repository.list_remediation_attempts(job_id) == []


def test_second_trigger_within_cooldown_is_a_no_op(repository: JobRepository, failed_job) -> None:
    job = failed_job()
    clock = _Clock()
    loop = _loop(repository, settings=AutoRepairSettings(cooldown_minutes=30), clock=clock)

    first = loop.trigger_auto_fix(job.job_id)
    clock.advance(10)
    second = loop.trigger_auto_fix(job.job_id)

    assert first is not None
    assert second is None
    assert len(repository.list_remediation_attempts(job.job_id)) == 1
    assert "Cooldown active" in loop.evaluate(repository.get_job(job.job_id)).reason

    clock.advance(25)
    assert loop.trigger_auto_fix(job.job_id) is not None
    assert len(repository.list_remediation_attempts(job.job_id)) == 2


def test_attempts_never_exceed_max_attempts(repository: JobRepository, failed_job) -> None:
    job = failed_job()
    clock = _Clock()
    loop = _loop(
        repository,
        settings=AutoRepairSettings(max_attempts=2, cooldown_minutes=0),
        clock=clock,
    )

    results = []
    for _ in range(4):
        results.append(loop.trigger_auto_fix(job.job_id))
        clock.advance(60)

    assert [result is not None for result in results] == [True, True, False, False]
    assert len(repository.list_remediation_attempts(job.job_id)) == 2
    reason = loop.evaluate(repository.get_job(job.job_id)).reason
    assert reason.startswith("CapacityExceeded: 2/2")


def test_chain_cap_bounds_attempts_across_replacement_jobs(
    repository: JobRepository,
    failed_job,
) -> None:
    loop = _loop(
        repository,
        settings=AutoRepairSettings(chain_max_attempts=2, cooldown_minutes=0),
    )
    job_id = failed_job().job_id

    for _ in range(2):
        attempt_id = loop.trigger_auto_fix(job_id)
        assert attempt_id is not None
        replacement_id = repository.list_remediation_attempts(job_id)[0].new_job_id
        assert replacement_id is not None
        repository.update_status(
            replacement_id,
            expected=(JobStatus.PENDING,),
            status=JobStatus.RUNNING,
        )
        repository.record_job_failure(
            replacement_id,
            failure_class=FailureClass.AGENT_EXECUTION,
            error_summary="still broken",
        )
        job_id = replacement_id

    assert loop.trigger_auto_fix(job_id) is None
    assert "replacement chain" in loop.evaluate(repository.get_job(job_id)).reason
    assert len(repository.remediation_chain(job_id)) == 3


def test_gate_rejects_ineligible_jobs(repository: JobRepository, failed_job, running_job) -> None:
    loop = _loop(repository)

    assert "only failed jobs" in loop.evaluate(running_job()).reason
    assert "not eligible" in loop.evaluate(failed_job(job_type="documentation")).reason
    assert "excluded" in loop.evaluate(failed_job(FailureClass.SUB_JOB_FAILURE)).reason
    disabled = _loop(repository, settings=AutoRepairSettings(enabled=False))
    assert disabled.evaluate(failed_job()).reason == "Auto-fix is disabled."


def test_gate_requires_a_remediation_capability(repository: JobRepository, failed_job) -> None:
    loop = AutoRepairLoop(
        repository=repository,
        settings=AutoRepairSettings(),
        remediation=None,
    )
    job = failed_job()

    assert loop.trigger_auto_fix(job.job_id) is None
    assert repository.list_remediation_attempts(job.job_id) == []


def test_unfixable_investigation_fails_attempt(repository: JobRepository, failed_job) -> None:
    class _Unfixable:
        def investigate(self, context: RemediationContext) -> Investigation:
            return Investigation(root_cause="requirements contradict each other", fixable=False)

        def generate_fix(self, context: RemediationContext) -> FixProposal:
            raise AssertionError("generate_fix must not be called")

    job = failed_job()

    attempt_id = _loop(repository, remediation=_Unfixable()).trigger_auto_fix(job.job_id)

    attempt = repository.list_remediation_attempts(job.job_id)[0]
    assert attempt.attempt_id == attempt_id
    assert attempt.status == RemediationStatus.FAILED
    assert attempt.root_cause == "requirements contradict each other"
    assert attempt.new_job_id is None


def test_capability_error_is_recorded_on_attempt(repository: JobRepository, failed_job) -> None:
    class _Broken:
        def __init__(self) -> None:
            self.contexts: list[RemediationContext] = []

        def investigate(self, context: RemediationContext) -> Investigation:
            self.contexts.append(context)
            return Investigation(root_cause="missing import", fixable=True)

        def generate_fix(self, context: RemediationContext) -> FixProposal:
            raise RuntimeError("model refused to answer")

    job = failed_job()
    remediation = _Broken()

    attempt_id = _loop(repository, remediation=remediation).trigger_auto_fix(job.job_id)

    attempt = repository.list_remediation_attempts(job.job_id)[0]
    assert attempt.attempt_id == attempt_id
    assert attempt.status == RemediationStatus.FAILED
    assert attempt.error == "model refused to answer"
    assert attempt.root_cause == "missing import"
    assert remediation.contexts[0].attempt_number == 1
    assert remediation.contexts[0].job.job_id == job.job_id
    assert [item.job_id for item in repository.list_jobs()] == [job.job_id]
