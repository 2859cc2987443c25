"""Runtime configuration for the job orchestrator and auto-repair loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from stageflow.orchestrator.models import FailureClass, JobType


@dataclass(slots=True)
class OrchestratorSettings:
    """Stage execution and staleness settings."""

    stage_max_attempts: int = 3
    retry_delays_seconds: tuple[float, ...] = (2.0, 5.0, 10.0)
    stage_timeout_seconds: float = 1_800.0
    stale_after_seconds: int = 7_200

    @property
    def stage_budget_seconds(self) -> float:
        """Longest legitimate run of one stage: every attempt times out, every delay is waited."""

        delays = self.retry_delays_seconds or (0.0,)
        waited = sum(
            delays[min(retry, len(delays) - 1)] for retry in range(self.stage_max_attempts - 1)
        )
        return self.stage_timeout_seconds * self.stage_max_attempts + waited


@dataclass(slots=True)
class AutoRepairSettings:
    """Gate for automatic remediation of failed jobs."""

    enabled: bool = True
    auto_trigger_on_failure: bool = True
    max_attempts: int = 3
    cooldown_minutes: float = 30.0
    allowed_job_types: tuple[str, ...] = (
        JobType.FEATURE.value,
        JobType.BUGFIX.value,
        JobType.REFACTOR.value,
    )
    denied_failure_classes: tuple[FailureClass, ...] = (
        FailureClass.EXTERNAL_INFRASTRUCTURE,
        FailureClass.SUB_JOB_FAILURE,
    )
    chain_max_attempts: int | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".stageflow.db")
    sqlite_busy_timeout_ms: int = 5_000
    workspace_root: Path = Path(".")
    log_level: str = "WARNING"
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    auto_repair: AutoRepairSettings = field(default_factory=AutoRepairSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        chain_max_raw = os.getenv("STAGEFLOW_AUTO_FIX_CHAIN_MAX_ATTEMPTS", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("STAGEFLOW_DB_PATH", ".stageflow.db")),
            sqlite_busy_timeout_ms=int(os.getenv("STAGEFLOW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            workspace_root=Path(os.getenv("STAGEFLOW_WORKSPACE_ROOT", ".")),
            log_level=os.getenv("STAGEFLOW_LOG_LEVEL", "WARNING").strip().upper(),
            orchestrator=OrchestratorSettings(
                stage_max_attempts=int(os.getenv("STAGEFLOW_STAGE_MAX_ATTEMPTS", "3")),
                retry_delays_seconds=_env_float_tuple(
                    "STAGEFLOW_RETRY_DELAYS_SECONDS",
                    default=(2.0, 5.0, 10.0),
                ),
                stage_timeout_seconds=float(
                    os.getenv("STAGEFLOW_STAGE_TIMEOUT_SECONDS", "1800"),
                ),
                stale_after_seconds=int(os.getenv("STAGEFLOW_STALE_AFTER_SECONDS", "7200")),
            ),
            auto_repair=AutoRepairSettings(
                enabled=_env_bool("STAGEFLOW_AUTO_FIX_ENABLED", default=True),
                auto_trigger_on_failure=_env_bool(
                    "STAGEFLOW_AUTO_FIX_ON_FAILURE",
                    default=True,
                ),
                max_attempts=int(os.getenv("STAGEFLOW_AUTO_FIX_MAX_ATTEMPTS", "3")),
                cooldown_minutes=float(os.getenv("STAGEFLOW_AUTO_FIX_COOLDOWN_MINUTES", "30")),
                allowed_job_types=_env_csv(
                    "STAGEFLOW_AUTO_FIX_JOB_TYPES",
                    default=AutoRepairSettings().allowed_job_types,
                ),
                denied_failure_classes=tuple(
                    _parse_failure_class(value)
                    for value in _env_csv(
                        "STAGEFLOW_AUTO_FIX_DENIED_FAILURE_CLASSES",
                        default=tuple(
                            item.value for item in AutoRepairSettings().denied_failure_classes
                        ),
                    )
                ),
                chain_max_attempts=int(chain_max_raw) if chain_max_raw else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on non-positive limits or an unsafe staleness threshold."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("STAGEFLOW_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.orchestrator.stage_max_attempts <= 0:
            raise ValueError("STAGEFLOW_STAGE_MAX_ATTEMPTS must be > 0.")
        if not self.orchestrator.retry_delays_seconds:
            raise ValueError("STAGEFLOW_RETRY_DELAYS_SECONDS must list at least one delay.")
        if any(delay < 0 for delay in self.orchestrator.retry_delays_seconds):
            raise ValueError("STAGEFLOW_RETRY_DELAYS_SECONDS must be >= 0.")
        if self.orchestrator.stage_timeout_seconds <= 0:
            raise ValueError("STAGEFLOW_STAGE_TIMEOUT_SECONDS must be > 0.")
        if self.orchestrator.stale_after_seconds <= 0:
            raise ValueError("STAGEFLOW_STALE_AFTER_SECONDS must be > 0.")
        if self.orchestrator.stale_after_seconds <= self.orchestrator.stage_budget_seconds:
            raise ValueError(
                "STAGEFLOW_STALE_AFTER_SECONDS must exceed the longest stage run "
                f"({self.orchestrator.stage_budget_seconds:g}s = timeout x attempts + delays).",
            )
        if self.auto_repair.max_attempts <= 0:
            raise ValueError("STAGEFLOW_AUTO_FIX_MAX_ATTEMPTS must be > 0.")
        if self.auto_repair.cooldown_minutes < 0:
            raise ValueError("STAGEFLOW_AUTO_FIX_COOLDOWN_MINUTES must be >= 0.")
        chain_max = self.auto_repair.chain_max_attempts
        if chain_max is not None and chain_max <= 0:
            raise ValueError("STAGEFLOW_AUTO_FIX_CHAIN_MAX_ATTEMPTS must be > 0 when set.")


def _parse_failure_class(value: str) -> FailureClass:
    try:
        return FailureClass(value)
    except ValueError as error:
        allowed = ", ".join(item.value for item in FailureClass)
        raise ValueError(
            f"Unknown failure class {value!r}. Expected one of: {allowed}",
        ) from error


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_float_tuple(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    values = _env_csv(name, default=())
    if not values:
        return default
    try:
        return tuple(float(value) for value in values)
    except ValueError as error:
        raise ValueError(f"Invalid number list for {name}: {os.getenv(name)!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
