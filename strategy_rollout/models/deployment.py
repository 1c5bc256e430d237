"""Deployment Record: one immutable audit entry per phase transition or rollback."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from strategy_rollout.models.strategy_update import RiskLevel


class DeploymentKind(str, Enum):
    CANARY = "canary"
    LIMITED = "limited"
    GRADUAL = "gradual"
    FULL = "full"
    ROLLBACK = "rollback"


class DeploymentStatus(str, Enum):
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    ROLLED_BACK = "rolled_back"


class DeploymentType(str, Enum):
    GRADUAL = "gradual"
    PLANNED_ROLLBACK = "planned_rollback"
    EMERGENCY_ROLLBACK = "emergency_rollback"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class SelectionCriteria(BaseModel):
    """Echo of what the distribution channel was told to target."""
    app_id: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    include_beta_users: bool = False
    rollback: bool = False


class DeploymentRecord(BaseModel):
    """
    Ledger entry. Append-only: never updated or deleted after creation.
    Ordering by insertion reconstructs a strategy update's rollout history.
    """

    id: str
    strategy_update_id: str
    rollout_plan_id: Optional[str] = None
    kind: DeploymentKind
    deployment_type: DeploymentType = DeploymentType.GRADUAL
    phase_index: Optional[int] = None
    target_percentage: float
    status: DeploymentStatus
    selection_criteria: SelectionCriteria = SelectionCriteria()
    success_metrics: dict = {}
    failure_metrics: dict = {}
    rollback_reason: Optional[str] = None
    emergency: bool = False
    created_at: datetime

    # INTEGRITY
    signature: str = ""
    prior_record_hash: Optional[str] = None


class DeploymentLogEntry(BaseModel):
    """Structured log line persisted beside the ledger (rollbacks, mainly)."""

    id: str
    deployment_id: Optional[str] = None
    strategy_update_id: Optional[str] = None
    app_id: Optional[str] = None
    level: LogLevel
    message: str
    data: dict = {}
    created_at: datetime
