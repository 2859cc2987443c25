"""Deterministic failure classification for stage retry and auto-repair policy.

Exceptions are classified by type only. Text rules apply to the error message an
agent reports in an unsuccessful result, and match whole words so that line
numbers or identifiers inside a crash report do not read as HTTP status codes.
"""

from __future__ import annotations

import concurrent.futures
import re
from dataclasses import dataclass

from stageflow.orchestrator.errors import AgentError
from stageflow.orchestrator.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 2

RETRYABLE_FAILURE_CLASSES: frozenset[FailureClass] = frozenset(
    {FailureClass.AGENT_EXECUTION, FailureClass.TIMEOUT},
)

_EXTERNAL_INFRASTRUCTURE_PATTERNS: tuple[str, ...] = (
    "service unavailable",
    "503",
    "502",
    "bad gateway",
    "connection refused",
    "connection reset",
    "could not resolve host",
    "dns",
    "rate limit",
    "too many requests",
    "429",
    "quota",
    "api error",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_VALIDATION_PATTERNS: tuple[str, ...] = (
    "invalid request",
    "validation",
    "schema",
    "missing required",
    "not allowed",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_exception(error: BaseException) -> FailureClassification:
    """Classify an exception raised while executing a stage."""

    if isinstance(error, AgentError):
        return FailureClassification(
            failure_class=error.failure_class,
            matched_rule="agent_error_type",
            matched_pattern=None,
        )
    if isinstance(error, TimeoutError | concurrent.futures.TimeoutError):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="builtin_timeout",
            matched_pattern=None,
        )
    if isinstance(error, ConnectionError):
        return FailureClassification(
            failure_class=FailureClass.EXTERNAL_INFRASTRUCTURE,
            matched_rule="builtin_connection_error",
            matched_pattern=None,
        )
    return FailureClassification(
        failure_class=FailureClass.AGENT_EXECUTION,
        matched_rule="untyped_exception",
        matched_pattern=None,
    )


def classify_result(
    *,
    failure_class: FailureClass | str | None,
    error: str | None,
) -> FailureClassification:
    """Classify an unsuccessful agent result; an explicit class wins over text rules."""

    if failure_class is not None:
        return FailureClassification(
            failure_class=FailureClass(failure_class),
            matched_rule="explicit_failure_class",
            matched_pattern=None,
        )
    return classify_error_text(error or "")


def classify_error_text(text: str) -> FailureClassification:
    """Classify a free-form error message into a deterministic failure class."""

    haystack = text.lower()

    pattern = _first_match(haystack, _EXTERNAL_INFRASTRUCTURE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.EXTERNAL_INFRASTRUCTURE,
            matched_rule="external_infrastructure",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timeout",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _VALIDATION_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.VALIDATION,
            matched_rule="validation",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.AGENT_EXECUTION,
        matched_rule="fallback_agent_execution",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(rf"\b{re.escape(pattern)}\b", haystack):
            return pattern
    return None
