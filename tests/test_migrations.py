from pathlib import Path

import allure

from stageflow.orchestrator.repository import JobRepository

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path, connect_db) -> None:
    db_path = tmp_path / "migrations.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    repository.close()
    connection = connect_db(db_path)

    row = connection.execute(
        "SELECT version_num FROM alembic_version LIMIT 1"
    ).fetchone()
    assert row is not None
    assert str(row["version_num"]) == "20261018_0001"

    tables = connection.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'table'
          AND name IN ('jobs', 'job_events', 'stage_executions', 'sub_job_queue',
                       'remediation_attempts')
        ORDER BY name
        """
    ).fetchall()
    assert [str(row["name"]) for row in tables] == [
        "job_events",
        "jobs",
        "remediation_attempts",
        "stage_executions",
        "sub_job_queue",
    ]

    single_flight_indexes = connection.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'index'
          AND name IN ('uq_stage_executions_job_running', 'uq_sub_job_queue_parent_in_progress')
        ORDER BY name
        """
    ).fetchall()
    assert [str(row["name"]) for row in single_flight_indexes] == [
        "uq_stage_executions_job_running",
        "uq_sub_job_queue_parent_in_progress",
    ]


def test_init_schema_is_idempotent(tmp_path: Path, connect_db) -> None:
    db_path = tmp_path / "twice.db"
    for _ in range(2):
        repository = JobRepository(db_path)
        repository.init_schema()
        repository.close()

    count = connect_db(db_path).execute(
        "SELECT COUNT(*) AS count FROM alembic_version"
    ).fetchone()
    assert count["count"] == 1
