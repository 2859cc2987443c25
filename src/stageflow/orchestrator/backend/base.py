"""Capability interfaces consumed by the orchestrator."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from stageflow.orchestrator.models import (
    FailureClass,
    JobEventView,
    JobView,
    StageExecutionView,
)


@dataclass(slots=True)
class AgentRequest:
    """Inputs required to execute one stage attempt."""

    job: JobView
    stage: str
    working_dir: Path
    attempt: int = 1


@dataclass(slots=True)
class AgentResult:
    """Outcome reported by an agent capability."""

    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    artifacts: list[str] = field(default_factory=list)
    failure_class: FailureClass | None = None
    error: str | None = None


class AgentCapability(Protocol):
    """Protocol implemented by stage agents."""

    def execute(self, request: AgentRequest) -> AgentResult:
        """Run one stage attempt; may raise AgentError subclasses."""


@dataclass(slots=True)
class RemediationContext:
    """Everything gathered about a failed job before asking for a fix."""

    job: JobView
    failed_stages: list[StageExecutionView]
    events: list[JobEventView]
    checkpoint_ref: str | None
    attempt_number: int


@dataclass(slots=True)
class Investigation:
    """Root cause analysis of a failed job."""

    root_cause: str
    fixable: bool
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class FixProposal:
    """Patch proposed by the remediation capability."""

    patch: str
    description: str


class RemediationCapability(Protocol):
    """Protocol implemented by the remediation model."""

    def investigate(self, context: RemediationContext) -> Investigation:
        """Find the root cause of a failure and whether code changes can fix it."""

    def generate_fix(self, context: RemediationContext) -> FixProposal:
        """Produce a patch for an investigated failure."""


class VersionControl(Protocol):
    """Named version-control side effects; mechanics live outside stageflow."""

    def apply_fix(self, fix: FixProposal) -> None:
        """Apply a patch to the shared workspace."""

    def commit(self, message: str) -> str:
        """Commit the workspace and return the checkpoint marker."""

    def rebuild(self) -> None:
        """Rebuild the workspace after a fix."""


class StageRegistry:
    """Stage name to agent capability table, resolved at configuration time."""

    def __init__(
        self,
        capabilities: Mapping[str, AgentCapability] | None = None,
        *,
        default: AgentCapability | None = None,
    ) -> None:
        self._capabilities: dict[str, AgentCapability] = dict(capabilities or {})
        self.default = default

    def register(self, stage: str, capability: AgentCapability) -> None:
        self._capabilities[stage] = capability

    def resolve(self, stage: str) -> AgentCapability | None:
        """Capability for a stage, falling back to the default one."""

        return self._capabilities.get(stage, self.default)

    def stages(self) -> tuple[str, ...]:
        return tuple(sorted(self._capabilities))
