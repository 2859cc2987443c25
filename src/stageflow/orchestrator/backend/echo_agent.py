"""Local deterministic capabilities for CLI runs and integration tests."""

from __future__ import annotations

import hashlib

from stageflow.orchestrator.backend.base import (
    AgentRequest,
    AgentResult,
    FixProposal,
    Investigation,
    RemediationContext,
)
from stageflow.orchestrator.models import FailureClass


class EchoAgent:
    """Succeeds on every stage and echoes the job back as stage output.

    Job payload knobs:
    - ``plan``: returned as the ``plan`` stage output, which triggers decomposition.
    - ``fail_stages``: stage names that fail with an agent execution error.
    """

    def execute(self, request: AgentRequest) -> AgentResult:
        job = request.job
        fail_stages = job.payload.get("fail_stages") or []
        if request.stage in fail_stages:
            return AgentResult(
                success=False,
                failure_class=FailureClass.AGENT_EXECUTION,
                error=f"echo agent failed stage {request.stage} (attempt {request.attempt})",
            )

        output: dict[str, object] = {
            "backend": "echo_agent",
            "stage": request.stage,
            "summary": f"{request.stage} for {job.target or job.job_type}: "
            f"{job.task_description}".strip(),
        }
        plan = job.payload.get("plan")
        if request.stage == "plan" and isinstance(plan, dict):
            output["plan"] = plan
        return AgentResult(
            success=True,
            output=output,
            artifacts=[str(request.working_dir / f"{request.stage}.md")],
        )


class EchoRemediation:
    """Reports the last stage error as root cause and proposes a no-op patch."""

    def investigate(self, context: RemediationContext) -> Investigation:
        last_error = next(
            (stage.error for stage in reversed(context.failed_stages) if stage.error),
            context.job.error_summary,
        )
        return Investigation(
            root_cause=last_error or "unknown failure",
            fixable=context.job.failure_class != FailureClass.EXTERNAL_INFRASTRUCTURE,
            failure_class=context.job.failure_class,
        )

    def generate_fix(self, context: RemediationContext) -> FixProposal:
        return FixProposal(
            patch="",
            description=f"Retry {context.job.job_type} job {context.job.job_id} unchanged.",
        )


class RecordingVersionControl:
    """Keeps commits in memory and derives stable checkpoint markers from them."""

    def __init__(self) -> None:
        self.applied: list[FixProposal] = []
        self.commits: list[str] = []
        self.rebuilds = 0

    def apply_fix(self, fix: FixProposal) -> None:
        self.applied.append(fix)

    def commit(self, message: str) -> str:
        self.commits.append(message)
        digest = hashlib.sha1(  # noqa: S324
            f"{len(self.commits)}:{message}".encode(),
        ).hexdigest()
        return digest[:12]

    def rebuild(self) -> None:
        self.rebuilds += 1
