"""Initial job store schema: jobs, stage executions, sub-job queue, remediation."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("depth", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("execution_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("target", sa.String(), nullable=True),
        sa.Column("task_description", sa.Text(), nullable=False, server_default=""),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("plan_json", sa.Text(), nullable=True),
        sa.Column(
            "auto_execute_children",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column("checkpoint_ref", sa.String(), nullable=True),
        sa.Column("checkpoint_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_paused", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("pause_reason", sa.String(), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_stage", sa.String(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("retry_of_job_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["parent_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("idx_jobs_job_type", "jobs", ["job_type"], unique=False)
    op.create_index("idx_jobs_status", "jobs", ["status"], unique=False)
    op.create_index("idx_jobs_parent_id", "jobs", ["parent_id"], unique=False)
    op.create_index("idx_jobs_retry_of_job_id", "jobs", ["retry_of_job_id"], unique=False)
    op.create_index("idx_jobs_status_updated", "jobs", ["status", "updated_at"], unique=False)

    op.create_table(
        "job_events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("idx_job_events_job_time", "job_events", ["job_id", "created_at"])
    op.create_index("idx_job_events_event_type", "job_events", ["event_type"])

    op.create_table(
        "stage_executions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_stage_executions_job_id", "stage_executions", ["job_id"])
    op.create_index("idx_stage_executions_status", "stage_executions", ["status"])

    op.create_table(
        "sub_job_queue",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=False),
        sa.Column("child_id", sa.String(), nullable=False),
        sa.Column("execution_order", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("depends_on_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["parent_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["child_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("child_id", name="uq_sub_job_queue_child"),
    )
    op.create_index("idx_sub_job_queue_parent_id", "sub_job_queue", ["parent_id"])
    op.create_index(
        "idx_sub_job_queue_parent_order",
        "sub_job_queue",
        ["parent_id", "execution_order"],
    )
    op.create_index("idx_sub_job_queue_status", "sub_job_queue", ["status"])

    op.create_table(
        "remediation_attempts",
        sa.Column("attempt_id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("root_cause", sa.Text(), nullable=True),
        sa.Column("fix_description", sa.Text(), nullable=True),
        sa.Column("artifact_ref", sa.String(), nullable=True),
        sa.Column("new_job_id", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("attempt_id"),
    )
    op.create_index(
        "idx_remediation_attempts_job_time",
        "remediation_attempts",
        ["job_id", "created_at"],
    )

    # Status columns double as mutexes: one running stage per job, one
    # in-progress child per parent, unique sibling order.
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_stage_executions_job_running
            ON stage_executions (job_id)
            WHERE status = 'running'
            """,
        ),
    )
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_sub_job_queue_parent_in_progress
            ON sub_job_queue (parent_id)
            WHERE status = 'in_progress'
            """,
        ),
    )
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_jobs_parent_execution_order
            ON jobs (parent_id, execution_order)
            WHERE parent_id IS NOT NULL
            """,
        ),
    )


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS uq_jobs_parent_execution_order"))
    op.execute(sa.text("DROP INDEX IF EXISTS uq_sub_job_queue_parent_in_progress"))
    op.execute(sa.text("DROP INDEX IF EXISTS uq_stage_executions_job_running"))
    op.drop_index("idx_remediation_attempts_job_time", table_name="remediation_attempts")
    op.drop_table("remediation_attempts")
    op.drop_index("idx_sub_job_queue_status", table_name="sub_job_queue")
    op.drop_index("idx_sub_job_queue_parent_order", table_name="sub_job_queue")
    op.drop_index("idx_sub_job_queue_parent_id", table_name="sub_job_queue")
    op.drop_table("sub_job_queue")
    op.drop_index("idx_stage_executions_status", table_name="stage_executions")
    op.drop_index("idx_stage_executions_job_id", table_name="stage_executions")
    op.drop_table("stage_executions")
    op.drop_index("idx_job_events_event_type", table_name="job_events")
    op.drop_index("idx_job_events_job_time", table_name="job_events")
    op.drop_table("job_events")
    op.drop_index("idx_jobs_status_updated", table_name="jobs")
    op.drop_index("idx_jobs_retry_of_job_id", table_name="jobs")
    op.drop_index("idx_jobs_parent_id", table_name="jobs")
    op.drop_index("idx_jobs_status", table_name="jobs")
    op.drop_index("idx_jobs_job_type", table_name="jobs")
    op.drop_table("jobs")
