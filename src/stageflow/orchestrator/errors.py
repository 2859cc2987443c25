"""Exception taxonomy for the job store and agent capabilities."""

from __future__ import annotations

from stageflow.orchestrator.models import FailureClass


class StageflowError(Exception):
    """Base error for stageflow."""


class NotFoundError(StageflowError):
    """Unknown job, queue entry or remediation attempt id."""


class ConstraintViolationError(StageflowError):
    """Duplicate child slot, dependency outside the sibling set, or a dependency cycle."""


class AgentError(StageflowError):
    """Failure raised by an agent capability."""

    failure_class = FailureClass.AGENT_EXECUTION


class ValidationError(AgentError):
    """Request or output rejected by the agent; never retried."""

    failure_class = FailureClass.VALIDATION


class AgentExecutionError(AgentError):
    """Agent crashed or produced no usable result; retryable."""

    failure_class = FailureClass.AGENT_EXECUTION


class StageTimeoutError(AgentError, TimeoutError):
    """Stage exceeded its wall-clock budget; retryable up to the stage cap."""

    failure_class = FailureClass.TIMEOUT


class ExternalInfrastructureError(AgentError):
    """Outage of a service the agent depends on; surfaced immediately."""

    failure_class = FailureClass.EXTERNAL_INFRASTRUCTURE
