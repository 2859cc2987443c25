"""Agent, remediation and version-control capabilities."""

from stageflow.orchestrator.backend.base import (
    AgentCapability,
    AgentRequest,
    AgentResult,
    FixProposal,
    Investigation,
    RemediationCapability,
    RemediationContext,
    StageRegistry,
    VersionControl,
)
from stageflow.orchestrator.backend.echo_agent import (
    EchoAgent,
    EchoRemediation,
    RecordingVersionControl,
)

__all__ = [
    "AgentCapability",
    "AgentRequest",
    "AgentResult",
    "EchoAgent",
    "EchoRemediation",
    "FixProposal",
    "Investigation",
    "RecordingVersionControl",
    "RemediationCapability",
    "RemediationContext",
    "StageRegistry",
    "VersionControl",
]
