"""Shared test fixtures."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from stageflow.config import AutoRepairSettings
from stageflow.orchestrator.auto_repair import AutoRepairLoop
from stageflow.orchestrator.backend import (
    AgentRequest,
    AgentResult,
    EchoRemediation,
    RecordingVersionControl,
    StageRegistry,
)
from stageflow.orchestrator.invoker import AgentInvoker
from stageflow.orchestrator.models import FailureClass, JobCreate, JobStatus, JobView
from stageflow.orchestrator.repository import JobRepository
from stageflow.orchestrator.runner import Orchestrator


class ScriptedAgent:
    """Agent with scripted per-stage outcomes; unscripted stages succeed.

    `script` maps a stage name to outcomes consumed one per call: an
    AgentResult is returned, an exception is raised. Jobs whose payload
    `title` is listed in `fail_titles` fail every stage with a validation error.
    """

    def __init__(self) -> None:
        self.script: dict[str, list[AgentResult | BaseException]] = {}
        self.fail_titles: set[str] = set()
        self.calls: list[tuple[str, str, int]] = []
        self._lock = threading.Lock()

    def execute(self, request: AgentRequest) -> AgentResult:
        with self._lock:
            self.calls.append((request.job.job_id, request.stage, request.attempt))
            outcomes = self.script.get(request.stage)
            outcome = outcomes.pop(0) if outcomes else None

        title = request.job.payload.get("title")
        if title in self.fail_titles:
            return AgentResult(
                success=False,
                failure_class=FailureClass.VALIDATION,
                error=f"{title} rejected by agent",
            )
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome

        output: dict[str, object] = {"stage": request.stage}
        plan = request.job.payload.get("plan")
        if request.stage == "plan" and isinstance(plan, dict):
            output["plan"] = plan
        return AgentResult(success=True, output=output)

    def stages_of(self, job_id: str) -> list[str]:
        return [stage for called_job, stage, _ in self.calls if called_job == job_id]

    def job_order(self) -> list[str]:
        order: list[str] = []
        for job_id, _, _ in self.calls:
            if job_id not in order:
                order.append(job_id)
        return order


@pytest.fixture()
def repository(tmp_path: Path):
    repository = JobRepository(tmp_path / "jobs.db")
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def connect_db():
    """Open raw sqlite3 connections for asserting on stored rows; closed on teardown."""

    connections: list[sqlite3.Connection] = []

    def _connect(db_path: Path) -> sqlite3.Connection:
        connection = sqlite3.connect(db_path)
        connection.row_factory = sqlite3.Row
        connections.append(connection)
        return connection

    yield _connect
    for connection in connections:
        connection.close()


@pytest.fixture()
def agent() -> ScriptedAgent:
    return ScriptedAgent()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def make_invoker(repository: JobRepository, agent: ScriptedAgent, sleeps: list[float]):
    def _make(**overrides) -> AgentInvoker:
        options = {
            "repository": repository,
            "registry": StageRegistry(default=agent),
            "workspace_root": Path("."),
            "max_attempts": 3,
            "retry_delays_seconds": (0.0,),
            "stage_timeout_seconds": None,
            "sleep": sleeps.append,
        }
        options.update(overrides)
        return AgentInvoker(**options)

    return _make


@pytest.fixture()
def make_orchestrator(repository: JobRepository, make_invoker):
    def _make(
        *,
        auto_repair_settings: AutoRepairSettings | None = None,
        version_control: RecordingVersionControl | None = None,
        **invoker_overrides,
    ) -> Orchestrator:
        auto_repair = None
        if auto_repair_settings is not None:
            auto_repair = AutoRepairLoop(
                repository=repository,
                settings=auto_repair_settings,
                remediation=EchoRemediation(),
                version_control=version_control,
            )
        return Orchestrator(
            repository=repository,
            invoker=make_invoker(**invoker_overrides),
            auto_repair=auto_repair,
            version_control=version_control,
        )

    return _make


@pytest.fixture()
def running_job(repository: JobRepository):
    def _make(job_type: str = "feature", **fields) -> JobView:
        job = repository.create_job(JobCreate(job_type=job_type, **fields))
        assert repository.update_status(
            job.job_id,
            expected=(JobStatus.PENDING,),
            status=JobStatus.RUNNING,
        )
        return repository.get_job(job.job_id)

    return _make


@pytest.fixture()
def failed_job(repository: JobRepository, running_job):
    def _make(
        failure_class: FailureClass = FailureClass.AGENT_EXECUTION,
        job_type: str = "feature",
        **fields,
    ) -> JobView:
        job = running_job(job_type, **fields)
        assert repository.record_job_failure(
            job.job_id,
            failure_class=failure_class,
            error_summary=f"Stage code failed: {failure_class.value}",
        )
        return repository.get_job(job.job_id)

    return _make
