"""Rollout Plan: the staged percentage schedule for one approved strategy update."""

import math
import operator
import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class RolloutPlanStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


class RolloutAction(str, Enum):
    START = "start"
    ADVANCE = "advance"
    COMPLETE = "complete"
    ROLLBACK = "rollback"


ACTIVE_PLAN_STATUSES = frozenset({RolloutPlanStatus.NOT_STARTED, RolloutPlanStatus.RUNNING})

_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
}

_TRIGGER_PATTERN = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*(>=|<=|==|>|<)\s*(-?\d+(?:\.\d+)?)\s*$")


class RollbackTrigger(BaseModel):
    """A named regression condition, e.g. `crash_rate > 0.01`."""

    metric: str
    comparison: str
    threshold: float

    @field_validator("comparison")
    @classmethod
    def _known_comparison(cls, value: str) -> str:
        if value not in _COMPARATORS:
            raise ValueError(f"unsupported comparison '{value}'")
        return value

    @classmethod
    def parse(cls, expression: str) -> "RollbackTrigger":
        match = _TRIGGER_PATTERN.match(expression)
        if not match:
            raise ValueError(f"cannot parse rollback trigger '{expression}'")
        metric, comparison, threshold = match.groups()
        return cls(metric=metric, comparison=comparison, threshold=float(threshold))

    def fires(self, metrics: Dict[str, float]) -> bool:
        """True when the snapshot carries this metric and it crosses the threshold."""
        value = metrics.get(self.metric)
        if value is None:
            return False
        return _COMPARATORS[self.comparison](float(value), self.threshold)

    def __str__(self) -> str:
        return f"{self.metric} {self.comparison} {self.threshold:g}"


class RolloutPlan(BaseModel):
    """
    Staged-rollout schedule (a.k.a. A/B test) for one approved strategy update.

    Invariants:
    - phases are strictly increasing, within (0, 1], and end at 1.0
    - current_phase indexes into phases
    - running   => user_percentage == phases[current_phase]
    - completed => user_percentage == 1.0
    - rolled_back => user_percentage == 0
    """

    id: str
    strategy_update_id: str
    name: str = ""
    description: str = ""

    phases: List[float] = Field(min_length=1)
    current_phase: int = Field(ge=0, default=0)
    user_percentage: float = Field(ge=0.0, le=1.0, default=0.0)
    status: RolloutPlanStatus = RolloutPlanStatus.NOT_STARTED
    phase_duration_hours: float = Field(gt=0, default=48)
    phase_started_at: Optional[datetime] = None

    success_thresholds: Dict[str, float] = {}
    rollback_triggers: List[RollbackTrigger] = []
    conclusion: Optional[str] = None

    # OBSERVED PARTICIPATION (reported by the distribution side)
    total_participants: int = Field(ge=0, default=0)
    success_count: int = Field(ge=0, default=0)
    failure_count: int = Field(ge=0, default=0)

    created_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("rollback_triggers", mode="before")
    @classmethod
    def _parse_trigger_strings(cls, value):
        if isinstance(value, list):
            return [RollbackTrigger.parse(v) if isinstance(v, str) else v for v in value]
        return value

    @field_validator("phases")
    @classmethod
    def _valid_phases(cls, phases: List[float]) -> List[float]:
        for p in phases:
            if not 0.0 < p <= 1.0:
                raise ValueError(f"phase percentage {p} outside (0, 1]")
        for earlier, later in zip(phases, phases[1:]):
            if later <= earlier:
                raise ValueError("phases must be strictly increasing")
        if not math.isclose(phases[-1], 1.0):
            raise ValueError("last phase must be 1.0")
        return phases

    @model_validator(mode="after")
    def _check_invariants(self) -> "RolloutPlan":
        if self.current_phase >= len(self.phases):
            raise ValueError(
                f"current_phase {self.current_phase} out of bounds for {len(self.phases)} phases"
            )
        if self.status == RolloutPlanStatus.RUNNING and not math.isclose(
            self.user_percentage, self.phases[self.current_phase]
        ):
            raise ValueError("running plan must target phases[current_phase]")
        if self.status == RolloutPlanStatus.COMPLETED and not math.isclose(self.user_percentage, 1.0):
            raise ValueError("completed plan must target 100% of users")
        if self.status == RolloutPlanStatus.ROLLED_BACK and self.user_percentage != 0:
            raise ValueError("rolled back plan must target 0% of users")
        return self

    @property
    def is_last_phase(self) -> bool:
        return self.current_phase == len(self.phases) - 1

    def phase_elapsed(self, now: datetime) -> timedelta:
        if self.phase_started_at is None:
            return timedelta(0)
        return now - self.phase_started_at

    def phase_due(self, now: datetime) -> bool:
        """Has the current phase run for at least phase_duration_hours?"""
        if self.status != RolloutPlanStatus.RUNNING:
            return False
        return self.phase_elapsed(now) >= timedelta(hours=self.phase_duration_hours)

    def fired_triggers(self, metrics: Dict[str, float]) -> List[RollbackTrigger]:
        return [t for t in self.rollback_triggers if t.fires(metrics)]

    def meets_success_thresholds(self, metrics: Dict[str, float]) -> bool:
        """Every named success metric is present and at or above its threshold."""
        for name, minimum in self.success_thresholds.items():
            value = metrics.get(name)
            if value is None or float(value) < minimum:
                return False
        return True
