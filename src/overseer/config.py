"""Runtime configuration for orchestration and oversight."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_WORKER_COMMAND_TEMPLATE = ""


@dataclass(slots=True)
class OrchestratorSettings:
    """Worker pool and task retry settings."""

    max_infrastructure_workers: int = 3
    max_execution_workers: int = 1
    poll_interval_seconds: float = 0.5
    max_iterations: int = 0
    max_run_seconds: float = 0.0
    default_max_attempts: int = 3
    worker_command_template: str = DEFAULT_WORKER_COMMAND_TEMPLATE
    worker_timeout_seconds: int = 1_800
    stale_task_seconds: float = 600.0
    workdir_root: Path = Path(".overseer/workers")
    transient_exit_codes: tuple[int, ...] = (137, 143)


@dataclass(slots=True)
class AutoResolveSettings:
    """Defaults applied when outcomes are created without an explicit policy."""

    default_mode: str = "manual"
    default_threshold: float = 0.8
    during_orchestration: bool = True


@dataclass(slots=True)
class ImprovementSettings:
    """Escalation clustering and proposal settings."""

    lookback_days: int = 30
    max_proposals: int = 3
    similarity_threshold: float = 0.35


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".overseer.db")
    sqlite_busy_timeout_ms: int = 5_000
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    auto_resolve: AutoResolveSettings = field(default_factory=AutoResolveSettings)
    improvements: ImprovementSettings = field(default_factory=ImprovementSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("OVERSEER_DB_PATH", ".overseer.db")),
            sqlite_busy_timeout_ms=int(os.getenv("OVERSEER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            orchestrator=OrchestratorSettings(
                max_infrastructure_workers=int(
                    os.getenv("OVERSEER_MAX_INFRASTRUCTURE_WORKERS", "3"),
                ),
                max_execution_workers=int(os.getenv("OVERSEER_MAX_EXECUTION_WORKERS", "1")),
                poll_interval_seconds=float(os.getenv("OVERSEER_POLL_INTERVAL_SECONDS", "0.5")),
                max_iterations=int(os.getenv("OVERSEER_MAX_ITERATIONS", "0")),
                max_run_seconds=float(os.getenv("OVERSEER_MAX_RUN_SECONDS", "0")),
                default_max_attempts=int(os.getenv("OVERSEER_TASK_MAX_ATTEMPTS", "3")),
                worker_command_template=os.getenv(
                    "OVERSEER_WORKER_COMMAND_TEMPLATE",
                    DEFAULT_WORKER_COMMAND_TEMPLATE,
                ),
                worker_timeout_seconds=int(os.getenv("OVERSEER_WORKER_TIMEOUT_SECONDS", "1800")),
                stale_task_seconds=float(os.getenv("OVERSEER_STALE_TASK_SECONDS", "600")),
                workdir_root=Path(os.getenv("OVERSEER_WORKDIR_ROOT", ".overseer/workers")),
                transient_exit_codes=_parse_int_tuple(
                    os.getenv("OVERSEER_TRANSIENT_EXIT_CODES", "137,143"),
                ),
            ),
            auto_resolve=AutoResolveSettings(
                default_mode=os.getenv("OVERSEER_AUTO_RESOLVE_MODE", "manual"),
                default_threshold=float(os.getenv("OVERSEER_AUTO_RESOLVE_THRESHOLD", "0.8")),
                during_orchestration=_env_bool(
                    "OVERSEER_AUTO_RESOLVE_DURING_ORCHESTRATION",
                    default=True,
                ),
            ),
            improvements=ImprovementSettings(
                lookback_days=int(os.getenv("OVERSEER_IMPROVEMENT_LOOKBACK_DAYS", "30")),
                max_proposals=int(os.getenv("OVERSEER_IMPROVEMENT_MAX_PROPOSALS", "3")),
                similarity_threshold=float(
                    os.getenv("OVERSEER_IMPROVEMENT_SIMILARITY_THRESHOLD", "0.35"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if values are out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("OVERSEER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.orchestrator.max_infrastructure_workers < 1:
            raise ValueError("OVERSEER_MAX_INFRASTRUCTURE_WORKERS must be >= 1.")
        if self.orchestrator.max_execution_workers < 1:
            raise ValueError("OVERSEER_MAX_EXECUTION_WORKERS must be >= 1.")
        if self.orchestrator.poll_interval_seconds <= 0:
            raise ValueError("OVERSEER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.orchestrator.max_iterations < 0:
            raise ValueError("OVERSEER_MAX_ITERATIONS must be >= 0.")
        if self.orchestrator.max_run_seconds < 0:
            raise ValueError("OVERSEER_MAX_RUN_SECONDS must be >= 0.")
        if self.orchestrator.default_max_attempts < 1:
            raise ValueError("OVERSEER_TASK_MAX_ATTEMPTS must be >= 1.")
        if self.orchestrator.worker_timeout_seconds <= 0:
            raise ValueError("OVERSEER_WORKER_TIMEOUT_SECONDS must be > 0.")
        if self.orchestrator.stale_task_seconds <= 0:
            raise ValueError("OVERSEER_STALE_TASK_SECONDS must be > 0.")
        if self.auto_resolve.default_mode not in {"manual", "semi-auto", "full-auto"}:
            raise ValueError(
                "OVERSEER_AUTO_RESOLVE_MODE must be one of: manual, semi-auto, full-auto.",
            )
        if not 0.0 <= self.auto_resolve.default_threshold <= 1.0:
            raise ValueError("OVERSEER_AUTO_RESOLVE_THRESHOLD must be within [0, 1].")
        if self.improvements.lookback_days <= 0:
            raise ValueError("OVERSEER_IMPROVEMENT_LOOKBACK_DAYS must be > 0.")
        if self.improvements.max_proposals < 1:
            raise ValueError("OVERSEER_IMPROVEMENT_MAX_PROPOSALS must be >= 1.")
        if not 0.0 <= self.improvements.similarity_threshold <= 1.0:
            raise ValueError("OVERSEER_IMPROVEMENT_SIMILARITY_THRESHOLD must be within [0, 1].")


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")


def _parse_int_tuple(raw: str) -> tuple[int, ...]:
    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid integer in list: {token!r}") from error
    return tuple(values)
