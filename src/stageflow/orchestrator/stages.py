"""Job type to stage sequence table."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from stageflow.orchestrator.models import JobType

logger = logging.getLogger(__name__)


STAGE_SEQUENCES: dict[str, tuple[str, ...]] = {
    JobType.FEATURE.value: ("plan", "code", "test", "review", "document"),
    JobType.NEW_MODULE.value: ("scaffold", "plan", "code", "test", "review", "document"),
    JobType.BUGFIX.value: ("plan", "code", "test", "review"),
    JobType.REFACTOR.value: ("plan", "code", "test", "review"),
    JobType.DOCUMENTATION.value: ("document",),
    JobType.REVIEW.value: ("review",),
}

DEFAULT_SEQUENCE: tuple[str, ...] = STAGE_SEQUENCES[JobType.FEATURE.value]


def stages_for(job_type: str) -> tuple[str, ...]:
    """Return the ordered stages of a job type; unknown types get the default sequence."""

    sequence = STAGE_SEQUENCES.get(job_type)
    if sequence is None:
        logger.warning(
            "Unknown job type %r, falling back to default stage sequence %s",
            job_type,
            ",".join(DEFAULT_SEQUENCE),
        )
        return DEFAULT_SEQUENCE
    return sequence


def resume_index(job_type: str, completed_stages: Iterable[str]) -> int:
    """Index of the first stage to run, right after the last completed one in sequence order."""

    sequence = stages_for(job_type)
    done = set(completed_stages)
    index = 0
    for position, stage in enumerate(sequence):
        if stage in done:
            index = position + 1
    return index
