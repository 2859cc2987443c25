"""Domain models for jobs, stage executions, the sub-job queue and remediation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobType(str, Enum):
    """Known job types. Stored as plain strings, so unknown types stay representable."""

    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    DOCUMENTATION = "documentation"
    REVIEW = "review"
    NEW_MODULE = "new_module"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.COMPLETED_WITH_WARNINGS,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    },
)

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.PAUSED,
            JobStatus.COMPLETED,
            JobStatus.COMPLETED_WITH_WARNINGS,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
        },
    ),
    JobStatus.PAUSED: frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    # Finished jobs reopen only through an operator retry of failed sub-jobs.
    JobStatus.COMPLETED_WITH_WARNINGS: frozenset({JobStatus.RUNNING}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING, JobStatus.RUNNING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
}


class StageStatus(str, Enum):
    """Stage execution row states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueEntryStatus(str, Enum):
    """Sub-job queue entry states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


QUEUE_TRANSITIONS: dict[QueueEntryStatus, frozenset[QueueEntryStatus]] = {
    QueueEntryStatus.PENDING: frozenset(
        {QueueEntryStatus.IN_PROGRESS, QueueEntryStatus.SKIPPED},
    ),
    QueueEntryStatus.IN_PROGRESS: frozenset(
        {QueueEntryStatus.COMPLETED, QueueEntryStatus.FAILED},
    ),
    QueueEntryStatus.COMPLETED: frozenset(),
    QueueEntryStatus.FAILED: frozenset(
        {QueueEntryStatus.PENDING, QueueEntryStatus.SKIPPED},
    ),
    QueueEntryStatus.SKIPPED: frozenset({QueueEntryStatus.PENDING}),
}


class RemediationStatus(str, Enum):
    """Auto-repair attempt states."""

    INVESTIGATING = "investigating"
    FIXING = "fixing"
    TESTING = "testing"
    SUCCESS = "success"
    FAILED = "failed"


REMEDIATION_TRANSITIONS: dict[RemediationStatus, frozenset[RemediationStatus]] = {
    RemediationStatus.INVESTIGATING: frozenset(
        {RemediationStatus.FIXING, RemediationStatus.FAILED},
    ),
    RemediationStatus.FIXING: frozenset({RemediationStatus.TESTING, RemediationStatus.FAILED}),
    RemediationStatus.TESTING: frozenset({RemediationStatus.SUCCESS, RemediationStatus.FAILED}),
    RemediationStatus.SUCCESS: frozenset(),
    RemediationStatus.FAILED: frozenset(),
}


class FailureClass(str, Enum):
    """Normalized failure classes used by retry and auto-repair policy."""

    VALIDATION = "validation"
    AGENT_EXECUTION = "agent_execution"
    TIMEOUT = "timeout"
    EXTERNAL_INFRASTRUCTURE = "external_infrastructure"
    DEPENDENCY_SKIPPED = "dependency_skipped"
    SUB_JOB_FAILURE = "sub_job_failure"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a job."""

    job_type: str
    task_description: str = ""
    target: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    parent_id: str | None = None
    execution_order: int = 0
    auto_execute_children: bool = True
    retry_of_job_id: str | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and orchestration logic."""

    job_id: str
    job_type: str
    status: JobStatus
    parent_id: str | None
    depth: int
    execution_order: int
    target: str | None
    task_description: str
    payload: dict[str, Any]
    plan: dict[str, Any] | None
    auto_execute_children: bool
    checkpoint_ref: str | None
    checkpoint_at: datetime | None
    is_paused: bool
    pause_reason: str | None
    paused_at: datetime | None
    current_stage: str | None
    failure_class: FailureClass | None
    error_summary: str | None
    retry_of_job_id: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StageExecutionView:
    """One stage run of a job."""

    id: int
    job_id: str
    stage: str
    status: StageStatus
    retry_count: int
    error: str | None
    failure_class: FailureClass | None
    output: dict[str, Any] | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


@dataclass(slots=True)
class QueueEntrySpec:
    """One child slot to create; dependencies are positions within the same batch."""

    child_id: str
    execution_order: int
    depends_on: tuple[int, ...] = ()


@dataclass(slots=True)
class QueueEntryView:
    """Sub-job queue entry."""

    id: int
    parent_id: str
    child_id: str
    execution_order: int
    status: QueueEntryStatus
    depends_on: tuple[int, ...]
    error: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


@dataclass(slots=True)
class QueueStatus:
    """Per-status counts of a parent's queue."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass(slots=True)
class RemediationAttemptView:
    """Auto-repair attempt for a failed job."""

    attempt_id: int
    job_id: str
    status: RemediationStatus
    root_cause: str | None
    fix_description: str | None
    artifact_ref: str | None
    new_job_id: str | None
    error: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class JobDetails:
    """Job details with stage runs, queue entries and event stream."""

    job: JobView
    stages: list[StageExecutionView]
    queue: list[QueueEntryView]
    remediation_attempts: list[RemediationAttemptView]
    events: list[JobEventView]


@dataclass(slots=True)
class SubTask:
    """One item of a decomposition plan."""

    title: str
    description: str = ""
    job_type: str = JobType.FEATURE.value
    target: str | None = None
    depends_on: tuple[int, ...] = ()


@dataclass(slots=True)
class DecompositionPlan:
    """Structured plan carried by a stage output."""

    summary: str
    sub_tasks: list[SubTask]

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "sub_tasks": [
                {
                    "title": task.title,
                    "description": task.description,
                    "job_type": task.job_type,
                    "target": task.target,
                    "depends_on": list(task.depends_on),
                }
                for task in self.sub_tasks
            ],
        }

    @classmethod
    def from_output(cls, output: dict[str, Any] | None) -> DecompositionPlan | None:
        """Extract a plan from a stage output, or None when the output carries none."""

        if not output:
            return None
        raw = output.get("plan")
        if not isinstance(raw, dict):
            return None
        raw_tasks = raw.get("sub_tasks")
        if not isinstance(raw_tasks, list) or not raw_tasks:
            return None
        sub_tasks: list[SubTask] = []
        for index, item in enumerate(raw_tasks):
            if not isinstance(item, dict):
                raise ValueError(f"Plan sub-task #{index} must be an object.")
            depends_on = item.get("depends_on") or []
            if not isinstance(depends_on, list) or not all(
                isinstance(value, int) for value in depends_on
            ):
                raise ValueError(f"Plan sub-task #{index} has invalid depends_on.")
            sub_tasks.append(
                SubTask(
                    title=str(item.get("title") or f"Sub-task {index + 1}"),
                    description=str(item.get("description") or ""),
                    job_type=str(item.get("job_type") or JobType.FEATURE.value),
                    target=item.get("target"),
                    depends_on=tuple(depends_on),
                ),
            )
        return cls(summary=str(raw.get("summary") or ""), sub_tasks=sub_tasks)


@dataclass(slots=True)
class StageOutcome:
    """Result of executing one stage through the agent invoker."""

    stage: str
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    artifacts: list[str] = field(default_factory=list)
    failure_class: FailureClass | None = None
    error: str | None = None
    retry_count: int = 0
    stage_execution_id: int | None = None


@dataclass(slots=True)
class AdvanceResult:
    """Outcome of one queue advance step."""

    next_child_id: str | None = None
    rolled_up_status: JobStatus | None = None


@dataclass(slots=True)
class RepairEligibility:
    """Decision returned by the auto-repair gate."""

    eligible: bool
    reason: str
