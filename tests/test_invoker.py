from __future__ import annotations

import threading

import allure
import pytest

from stageflow.orchestrator.backend import AgentRequest, AgentResult, StageRegistry
from stageflow.orchestrator.errors import (
    AgentExecutionError,
    ExternalInfrastructureError,
    ValidationError,
)
from stageflow.orchestrator.models import FailureClass, JobStatus, StageStatus
from stageflow.orchestrator.repository import JobRepository

pytestmark = [
    allure.epic("Agent Invocation"),
    allure.feature("Bounded Classified Retry"),
]


def test_successful_stage_completes_row(
    repository: JobRepository,
    running_job,
    make_invoker,
    agent,
) -> None:
    job = running_job()
    invoker = make_invoker()

    outcome = invoker.invoke("plan", job)

    assert outcome.success is True
    assert outcome.output == {"stage": "plan"}
    assert outcome.retry_count == 0
    stage = repository.list_stage_executions(job.job_id)[0]
    assert stage.status == StageStatus.COMPLETED
    assert stage.id == outcome.stage_execution_id
    assert agent.calls == [(job.job_id, "plan", 1)]


def test_retry_exhaustion_keeps_last_attempt_error(
    repository: JobRepository,
    running_job,
    make_invoker,
    agent,
    sleeps,
) -> None:
    job = running_job()
    agent.script["code"] = [AgentExecutionError(f"attempt {index} crashed") for index in (1, 2, 3)]

    outcome = make_invoker(retry_delays_seconds=(1.0, 4.0)).invoke("code", job)

    assert outcome.success is False
    assert outcome.failure_class == FailureClass.AGENT_EXECUTION
    assert outcome.error == "attempt 3 crashed"
    assert outcome.retry_count == 2
    assert sleeps == [1.0, 4.0]
    stage = repository.list_stage_executions(job.job_id)[0]
    assert stage.status == StageStatus.FAILED
    assert stage.error == "attempt 3 crashed"
    assert stage.retry_count == 2
    retry_events = [
        event for event in repository.list_events(job.job_id)
        if event.event_type == "stage_retry_scheduled"
    ]
    assert [event.details["attempt"] for event in retry_events] == [1, 2]


def test_retry_delay_table_repeats_last_entry(running_job, make_invoker, agent, sleeps) -> None:
    job = running_job()
    agent.script["code"] = [AgentExecutionError("crash")] * 4

    make_invoker(max_attempts=5, retry_delays_seconds=(1.0, 2.0)).invoke("code", job)

    assert sleeps == [1.0, 2.0, 2.0, 2.0]


def test_retry_then_success(running_job, make_invoker, agent, sleeps) -> None:
    job = running_job()
    agent.script["code"] = [
        AgentResult(success=False, error="agent exited with status 1"),
    ]

    outcome = make_invoker().invoke("code", job)

    assert outcome.success is True
    assert outcome.retry_count == 1
    assert len(sleeps) == 1


@pytest.mark.parametrize(
    ("error", "failure_class"),
    [
        (ValidationError("request rejected"), FailureClass.VALIDATION),
        (
            ExternalInfrastructureError("503 from model provider"),
            FailureClass.EXTERNAL_INFRASTRUCTURE,
        ),
    ],
)
def test_non_retryable_failures_are_surfaced_immediately(
    running_job,
    make_invoker,
    agent,
    sleeps,
    error: Exception,
    failure_class: FailureClass,
) -> None:
    job = running_job()
    agent.script["code"] = [error]

    outcome = make_invoker().invoke("code", job)

    assert outcome.success is False
    assert outcome.failure_class == failure_class
    assert outcome.retry_count == 0
    assert sleeps == []
    assert len(agent.calls) == 1


def test_stage_timeout_is_retryable_and_capped(
    repository: JobRepository,
    running_job,
    make_invoker,
) -> None:
    job = running_job()
    release = threading.Event()

    class _HangingAgent:
        def execute(self, request: AgentRequest) -> AgentResult:
            release.wait(timeout=5)
            return AgentResult(success=True)

    invoker = make_invoker(
        registry=StageRegistry(default=_HangingAgent()),
        max_attempts=2,
        stage_timeout_seconds=0.05,
    )
    try:
        outcome = invoker.invoke("test", job)
    finally:
        release.set()

    assert outcome.success is False
    assert outcome.failure_class == FailureClass.TIMEOUT
    assert outcome.retry_count == 1
    assert "exceeded" in (outcome.error or "")
    stage = repository.list_stage_executions(job.job_id)[0]
    assert stage.failure_class == FailureClass.TIMEOUT


def test_missing_capability_is_a_validation_failure(
    repository: JobRepository,
    running_job,
    make_invoker,
) -> None:
    job = running_job()

    outcome = make_invoker(registry=StageRegistry()).invoke("plan", job)

    assert outcome.success is False
    assert outcome.failure_class == FailureClass.VALIDATION
    assert "No agent capability" in (outcome.error or "")
    assert repository.list_stage_executions(job.job_id)[0].status == StageStatus.FAILED


def test_registry_prefers_stage_specific_capability(running_job, make_invoker, agent) -> None:
    job = running_job()
    calls: list[str] = []

    class _Reviewer:
        def execute(self, request: AgentRequest) -> AgentResult:
            calls.append(request.stage)
            return AgentResult(success=True, output={"reviewed": True})

    registry = StageRegistry({"review": _Reviewer()}, default=agent)
    invoker = make_invoker(registry=registry)

    assert invoker.invoke("review", job).output == {"reviewed": True}
    assert invoker.invoke("plan", job).output == {"stage": "plan"}
    assert calls == ["review"]
    assert registry.stages() == ("review",)


def test_second_running_stage_is_refused(
    repository: JobRepository,
    running_job,
    make_invoker,
) -> None:
    job = running_job()
    blocking = repository.create_stage_execution(job.job_id, "plan")
    repository.start_stage_execution(blocking.id)

    outcome = make_invoker().invoke("code", job)

    assert outcome.success is False
    assert outcome.failure_class == FailureClass.VALIDATION
    assert "already has a running stage" in (outcome.error or "")


def test_result_of_cancelled_job_is_discarded(
    repository: JobRepository,
    running_job,
    make_invoker,
) -> None:
    job = running_job()

    class _CancellingAgent:
        def execute(self, request: AgentRequest) -> AgentResult:
            repository.update_status(
                request.job.job_id,
                expected=(JobStatus.RUNNING,),
                status=JobStatus.CANCELLED,
            )
            return AgentResult(success=True, output={"late": True})

    outcome = make_invoker(registry=StageRegistry(default=_CancellingAgent())).invoke("code", job)

    assert outcome.success is False
    assert outcome.failure_class == FailureClass.CANCELLED
    stage = repository.list_stage_executions(job.job_id)[0]
    assert stage.status == StageStatus.FAILED
    assert stage.output is None


def test_invoker_rejects_invalid_limits(repository: JobRepository, make_invoker) -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        make_invoker(max_attempts=0)
    with pytest.raises(ValueError, match="retry_delays_seconds"):
        make_invoker(retry_delays_seconds=())


def test_plain_crash_mentioning_status_codes_is_retried(
    running_job,
    make_invoker,
    agent,
    sleeps,
) -> None:
    job = running_job()
    agent.script["code"] = [RuntimeError("pytest: 1 failed in tests/test_api.py line 5029")]

    outcome = make_invoker().invoke("code", job)

    assert outcome.success is True
    assert outcome.retry_count == 1
    assert [stage for _, stage, _ in agent.calls] == ["code", "code"]
    assert len(sleeps) == 1
