"""Strategy rollout data models."""

from strategy_rollout.models.deployment import (
    DeploymentKind,
    DeploymentLogEntry,
    DeploymentRecord,
    DeploymentStatus,
    DeploymentType,
    LogLevel,
    SelectionCriteria,
)
from strategy_rollout.models.outcome import (
    DeploymentPage,
    Pagination,
    ReviewOutcome,
    RollbackOutcome,
    RollbackPage,
    SideEffectResult,
    TransitionOutcome,
)
from strategy_rollout.models.rollout_plan import (
    RollbackTrigger,
    RolloutAction,
    RolloutPlan,
    RolloutPlanStatus,
)
from strategy_rollout.models.strategy_update import (
    ReviewDecision,
    RiskLevel,
    StrategyPayload,
    StrategyUpdate,
    StrategyUpdateStatus,
    UpdateKind,
)

__all__ = [
    "DeploymentKind",
    "DeploymentLogEntry",
    "DeploymentPage",
    "DeploymentRecord",
    "DeploymentStatus",
    "DeploymentType",
    "LogLevel",
    "Pagination",
    "ReviewDecision",
    "ReviewOutcome",
    "RiskLevel",
    "RollbackOutcome",
    "RollbackPage",
    "RollbackTrigger",
    "RolloutAction",
    "RolloutPlan",
    "RolloutPlanStatus",
    "SelectionCriteria",
    "SideEffectResult",
    "StrategyPayload",
    "StrategyUpdate",
    "StrategyUpdateStatus",
    "TransitionOutcome",
    "UpdateKind",
]
