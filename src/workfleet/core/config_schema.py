"""Pydantic models for config validation.

Opt-in schema validation for ``Config.config_data``.  Call
``Config.validated()`` to obtain a typed, validated ``WorkfleetConfig``
instance.  Dict-based access keeps working unchanged.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PathsConfig(BaseModel):
    """File-system paths used by the daemon host."""

    data_dir: Path
    log_dir: Path | None = None

    @field_validator("data_dir", "log_dir", mode="before")
    @classmethod
    def _expand_user(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str | None = None
    rotation: str = "10 MB"
    retention: str = "7 days"

    @field_validator("level", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class OrchestratorConfig(BaseModel):
    """Daemon loop settings."""

    max_concurrent_runs: int = Field(default=3, ge=1)
    polling_interval_ms: int = Field(default=5000, ge=0)
    goal_id: str | None = None
    agent_type: str = "default"
    run_timeout_seconds: float | None = None
    budget_policy: Literal["block", "warn"] = "block"
    estimated_tokens_per_run: int = Field(default=0, ge=0)
    estimated_cost_per_run: float = Field(default=0.0, ge=0)

    @field_validator("goal_id", "run_timeout_seconds", mode="before")
    @classmethod
    def _blank_is_none(cls, v: Any) -> Any:
        # env vars can only carry strings
        if isinstance(v, str) and v.strip().lower() in ("", "none", "null"):
            return None
        return v


class BudgetConfig(BaseModel):
    """Budget warning thresholds and overage policy."""

    warning_threshold: float = Field(default=0.7, gt=0)
    critical_threshold: float = Field(default=0.9, gt=0)
    allow_overage: bool = False
    max_overage_percent: float = Field(default=0.1, ge=0)

    @model_validator(mode="after")
    def _thresholds_ordered(self) -> BudgetConfig:
        if self.warning_threshold > self.critical_threshold:
            raise ValueError(
                f"warning_threshold ({self.warning_threshold}) must not exceed "
                f"critical_threshold ({self.critical_threshold})"
            )
        return self


class StuckConfig(BaseModel):
    """Stuck-detection thresholds (durations in milliseconds)."""

    max_in_progress_duration_ms: int = Field(default=30 * 60 * 1000, gt=0)
    max_ready_duration_ms: int = Field(default=60 * 60 * 1000, gt=0)
    max_same_error_retries: int = Field(default=3, ge=1)
    max_total_retries: int = Field(default=5, ge=1)
    check_interval_ms: int = Field(default=60 * 1000, ge=0)
    auto_escalate: bool = True


class TierModelsConfig(BaseModel):
    primary: str | None = None
    fallback: str | None = None
    temperature: float | None = None


class ModelsConfig(BaseModel):
    """Per-tier model overrides; unset fields keep the built-in defaults."""

    model_config = ConfigDict(extra="forbid")

    simple: TierModelsConfig = TierModelsConfig()
    medium: TierModelsConfig = TierModelsConfig()
    complex: TierModelsConfig = TierModelsConfig()


class WorkfleetConfig(BaseModel):
    """Root configuration model.

    Uses ``extra="allow"`` so embedders can bolt on custom sections
    without touching this schema.
    """

    model_config = ConfigDict(extra="allow")

    paths: PathsConfig = PathsConfig(data_dir=Path("~/.workfleet-data"))
    logging: LoggingConfig = LoggingConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    budget: BudgetConfig = BudgetConfig()
    stuck: StuckConfig = StuckConfig()
    models: ModelsConfig = ModelsConfig()
