"""Operation outcomes: what each pipeline operation hands back to its caller."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from strategy_rollout.models.deployment import DeploymentRecord
from strategy_rollout.models.rollout_plan import RolloutPlan
from strategy_rollout.models.strategy_update import StrategyUpdate, StrategyUpdateStatus


class SideEffectResult(BaseModel):
    """
    Result of a best-effort side call (distribution push, ledger write, log write).

    These calls never raise into the operation that made them. The caller gets
    this object back and decides whether to surface `error` or ignore it.
    """
    name: str
    ok: bool
    error: Optional[str] = None
    detail: Dict[str, Any] = {}

    @classmethod
    def success(cls, name: str, **detail) -> "SideEffectResult":
        return cls(name=name, ok=True, detail=detail)

    @classmethod
    def failure(cls, name: str, error: Exception, **detail) -> "SideEffectResult":
        return cls(name=name, ok=False, error=f"{type(error).__name__}: {error}", detail=detail)


class ReviewOutcome(BaseModel):
    strategy_update: StrategyUpdate
    rollout_plan: Optional[RolloutPlan] = None
    distribution: Optional[SideEffectResult] = None
    warnings: List[str] = []


class TransitionOutcome(BaseModel):
    rollout_plan: RolloutPlan
    strategy_update: Optional[StrategyUpdate] = None
    deployment: Optional[DeploymentRecord] = None
    side_effects: List[SideEffectResult] = []

    @property
    def warnings(self) -> List[str]:
        return [f"{s.name}: {s.error}" for s in self.side_effects if not s.ok]


class RollbackOutcome(BaseModel):
    strategy_update_id: str
    previous_status: StrategyUpdateStatus
    emergency: bool
    reason: str
    strategy_update: Optional[StrategyUpdate] = None
    rollout_plan: Optional[RolloutPlan] = None
    deployment: Optional[DeploymentRecord] = None
    steps: List[SideEffectResult] = []

    @property
    def completed_actions(self) -> List[str]:
        return [s.name for s in self.steps if s.ok]


class Pagination(BaseModel):
    limit: int
    offset: int
    has_more: bool


class DeploymentPage(BaseModel):
    data: List[DeploymentRecord]
    stats: Dict[str, Any]
    pagination: Pagination


class RollbackPage(BaseModel):
    data: List[DeploymentRecord]
    stats: Dict[str, Any]
    pagination: Pagination
