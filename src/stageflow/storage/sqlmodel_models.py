"""SQLModel ORM tables for the job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_jobs_parent_execution_order",
            "parent_id",
            "execution_order",
            unique=True,
            sqlite_where=text("parent_id IS NOT NULL"),
        ),
    )

    job_id: str = Field(primary_key=True)
    job_type: str = Field(index=True)
    status: str = Field(index=True)
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    depth: int = 0
    execution_order: int = 0
    target: str | None = None
    task_description: str = Field(default="", sa_column=Column(Text, nullable=False))
    payload_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    plan_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    auto_execute_children: bool = True
    checkpoint_ref: str | None = None
    checkpoint_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    is_paused: bool = False
    pause_reason: str | None = None
    paused_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    current_stage: str | None = None
    failure_class: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    retry_of_job_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]

    event_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StageExecution(SQLModel, table=True):
    __tablename__ = "stage_executions"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_stage_executions_job_running",
            "job_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    stage: str
    status: str = Field(index=True)
    retry_count: int = 0
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    failure_class: str | None = None
    output_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class SubJobQueueEntry(SQLModel, table=True):
    __tablename__ = "sub_job_queue"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_sub_job_queue_parent_in_progress",
            "parent_id",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    parent_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    child_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    execution_order: int
    status: str = Field(index=True)
    depends_on_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class RemediationAttempt(SQLModel, table=True):
    __tablename__ = "remediation_attempts"  # type: ignore[bad-override]

    attempt_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    root_cause: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    fix_description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    artifact_ref: str | None = None
    new_job_id: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
