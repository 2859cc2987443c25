from __future__ import annotations

import allure

from stageflow.orchestrator.stages import DEFAULT_SEQUENCE, resume_index, stages_for

pytestmark = [
    allure.epic("Stage Sequencing"),
    allure.feature("Job Type Pipelines"),
]


def test_feature_jobs_run_five_stages_in_order() -> None:
    assert stages_for("feature") == ("plan", "code", "test", "review", "document")


def test_single_stage_job_types() -> None:
    assert stages_for("documentation") == ("document",)
    assert stages_for("review") == ("review",)


def test_unknown_job_type_falls_back_to_default_sequence(caplog) -> None:
    assert stages_for("migration") == DEFAULT_SEQUENCE
    assert "Unknown job type 'migration'" in caplog.text


def test_resume_index_starts_after_last_completed_stage() -> None:
    assert resume_index("feature", []) == 0
    assert resume_index("feature", ["plan", "code"]) == 2
    assert resume_index("bugfix", ["plan", "code", "test", "review"]) == 4


def test_resume_index_ignores_stages_outside_the_sequence() -> None:
    assert resume_index("documentation", ["plan", "code"]) == 0
