from __future__ import annotations

import allure
import pytest

from stageflow.orchestrator.errors import (
    AgentExecutionError,
    ExternalInfrastructureError,
    StageTimeoutError,
    ValidationError,
)
from stageflow.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_error_text,
    classify_exception,
    classify_result,
)
from stageflow.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Agent Invocation"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ValidationError("bad request"), FailureClass.VALIDATION),
        (AgentExecutionError("crashed"), FailureClass.AGENT_EXECUTION),
        (StageTimeoutError("too slow"), FailureClass.TIMEOUT),
        (ExternalInfrastructureError("down"), FailureClass.EXTERNAL_INFRASTRUCTURE),
        (TimeoutError("read"), FailureClass.TIMEOUT),
        (ConnectionRefusedError("nope"), FailureClass.EXTERNAL_INFRASTRUCTURE),
        (RuntimeError("segfault in agent"), FailureClass.AGENT_EXECUTION),
    ],
)
def test_classify_exception_by_type(error: BaseException, expected: FailureClass) -> None:
    assert classify_exception(error).failure_class == expected


def test_explicit_result_failure_class_wins_over_text() -> None:
    classification = classify_result(
        failure_class=FailureClass.VALIDATION,
        error="503 service unavailable",
    )

    assert classification.failure_class == FailureClass.VALIDATION
    assert classification.matched_rule == "explicit_failure_class"
    assert classification.retryable is False


@pytest.mark.parametrize(
    ("text", "expected", "pattern"),
    [
        (
            "HTTP 503 Service Unavailable",
            FailureClass.EXTERNAL_INFRASTRUCTURE,
            "service unavailable",
        ),
        ("Rate limit reached, try later", FailureClass.EXTERNAL_INFRASTRUCTURE, "rate limit"),
        ("request timed out after 30s", FailureClass.TIMEOUT, "timed out"),
        ("output failed schema check", FailureClass.VALIDATION, "schema"),
        ("agent exited with status 1", FailureClass.AGENT_EXECUTION, None),
    ],
)
def test_classify_error_text(text: str, expected: FailureClass, pattern: str | None) -> None:
    classification = classify_error_text(text)

    assert classification.failure_class == expected
    assert classification.matched_pattern == pattern


def test_retryable_classes_are_agent_execution_and_timeout() -> None:
    assert classify_error_text("boom").retryable is True
    assert classify_error_text("deadline exceeded").retryable is True
    assert classify_error_text("connection reset by peer").retryable is False
    assert classify_error_text("missing required field").retryable is False


def test_event_details_carry_classifier_diagnostics() -> None:
    details = classify_error_text("too many requests").to_event_details()

    assert details == {
        "classifier_version": FAILURE_CLASSIFIER_VERSION,
        "failure_class": "external_infrastructure",
        "matched_rule": "external_infrastructure",
        "matched_pattern": "too many requests",
    }


@pytest.mark.parametrize(
    "message",
    [
        "pytest: 1 failed in tests/test_api.py line 5029",
        "HTTP 503 from upstream while running the test suite",
        "schema validation failed in generated model",
        "dns resolver module raised",
    ],
)
def test_untyped_crash_is_agent_execution_whatever_its_message(message: str) -> None:
    classification = classify_exception(RuntimeError(message))

    assert classification.failure_class == FailureClass.AGENT_EXECUTION
    assert classification.matched_rule == "untyped_exception"
    assert classification.retryable is True


@pytest.mark.parametrize(
    "text",
    [
        "AssertionError at tests/test_api.py line 5029",
        "expected 4290 items, got 4291",
        "dnspython is not installed",
        "timeouts_total counter mismatch",
    ],
)
def test_text_rules_match_whole_words_only(text: str) -> None:
    assert classify_error_text(text).failure_class == FailureClass.AGENT_EXECUTION


def test_reported_status_code_still_counts_as_infrastructure() -> None:
    classification = classify_result(failure_class=None, error="upstream returned 502")

    assert classification.failure_class == FailureClass.EXTERNAL_INFRASTRUCTURE
    assert classification.matched_pattern == "502"
