"""Pipeline and scheduler configuration, plus process-level logging setup."""

import logging
import os
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

DEFAULT_PHASES = [0.001, 0.01, 0.1, 0.5, 1.0]  # 0.1% -> 1% -> 10% -> 50% -> 100%

DEFAULT_SUCCESS_THRESHOLDS = {
    "effectiveness": 0.8,
    "user_satisfaction": 0.75,
    "stability": 0.95,
}

DEFAULT_ROLLBACK_TRIGGERS = [
    "crash_rate > 0.01",
    "user_satisfaction < 0.6",
    "effectiveness < 0.5",
]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class PipelineConfig(BaseModel):
    """Defaults applied when the approval gate instantiates a rollout plan."""

    database_path: str = ":memory:"
    default_phases: List[float] = Field(default_factory=lambda: list(DEFAULT_PHASES))
    default_success_thresholds: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SUCCESS_THRESHOLDS)
    )
    default_rollback_triggers: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ROLLBACK_TRIGGERS)
    )
    default_phase_duration_hours: float = Field(gt=0, default=48)
    distribution_url: Optional[str] = None
    distribution_timeout_seconds: float = Field(gt=0, default=10.0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        """Build a config from ROLLOUT_* environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        values = {}
        if env.get("ROLLOUT_DATABASE_PATH"):
            values["database_path"] = env["ROLLOUT_DATABASE_PATH"]
        if env.get("ROLLOUT_PHASE_DURATION_HOURS"):
            values["default_phase_duration_hours"] = float(env["ROLLOUT_PHASE_DURATION_HOURS"])
        if env.get("ROLLOUT_DISTRIBUTION_URL"):
            values["distribution_url"] = env["ROLLOUT_DISTRIBUTION_URL"]
        if env.get("ROLLOUT_DISTRIBUTION_TIMEOUT"):
            values["distribution_timeout_seconds"] = float(env["ROLLOUT_DISTRIBUTION_TIMEOUT"])
        if env.get("ROLLOUT_LOG_LEVEL"):
            values["log_level"] = env["ROLLOUT_LOG_LEVEL"].upper()
        return cls(**values)


class SchedulerConfig(BaseModel):
    """Configuration for the auto-advance scheduler."""

    poll_interval_seconds: int = 300
    advance_window: Optional[str] = None     # Cron expression; None = any time
    require_metrics: bool = True             # No snapshot => never auto-advance
    emergency_on_trigger: bool = True        # Trigger-fired rollbacks are emergencies


def configure_logging(level: str = "INFO") -> None:
    """Process-start logging setup."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
