"""Strategy Update: a proposed change to one application's optimization recipe."""

import json
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field


class UpdateKind(str, Enum):
    NEW = "new"
    TUNING = "tuning"
    CORRECTION = "correction"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StrategyUpdateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    ROLLED_BACK = "rolled_back"


class ReviewDecision(str, Enum):
    """The only two outcomes a reviewer can choose."""
    APPROVED = "approved"
    REJECTED = "rejected"


# Lifecycle graph. Anything not listed here is an illegal transition.
STRATEGY_UPDATE_TRANSITIONS: Dict[StrategyUpdateStatus, FrozenSet[StrategyUpdateStatus]] = {
    StrategyUpdateStatus.PENDING: frozenset(
        {StrategyUpdateStatus.APPROVED, StrategyUpdateStatus.REJECTED}
    ),
    StrategyUpdateStatus.APPROVED: frozenset({StrategyUpdateStatus.DEPLOYING}),
    StrategyUpdateStatus.DEPLOYING: frozenset(
        {StrategyUpdateStatus.DEPLOYED, StrategyUpdateStatus.ROLLED_BACK}
    ),
    StrategyUpdateStatus.DEPLOYED: frozenset({StrategyUpdateStatus.ROLLED_BACK}),
    StrategyUpdateStatus.REJECTED: frozenset(),
    StrategyUpdateStatus.ROLLED_BACK: frozenset(),
}

ROLLBACK_ELIGIBLE = frozenset(
    {StrategyUpdateStatus.DEPLOYING, StrategyUpdateStatus.DEPLOYED}
)

# Producer-supplied fields that no reviewer or rollout step may rewrite.
IMMUTABLE_FIELDS = frozenset({"id", "risk_level", "confidence_score", "created_at"})


class StrategyPayload(BaseModel):
    """
    Opaque, versioned strategy body.

    The pipeline never interprets `data`; it only checks that it is present
    and reports its encoded size.
    """
    schema_version: str = "1"
    data: dict = Field(min_length=1)

    @property
    def size_bytes(self) -> int:
        return len(json.dumps(self.data, sort_keys=True, default=str).encode())


class StrategyUpdate(BaseModel):
    """A proposed, versioned change awaiting (or past) human review."""

    id: str
    app_id: str                             # e.g., "com.google.Chrome"
    strategy_type: str                      # e.g., "balanced", "aggressive"
    update_type: UpdateKind
    payload: StrategyPayload
    version: int = Field(ge=1)              # Monotonic per (app_id, strategy_type)
    risk_level: RiskLevel
    confidence_score: float = Field(ge=0.0, le=1.0)
    status: StrategyUpdateStatus = StrategyUpdateStatus.PENDING

    # REVIEW
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: str = ""

    # ROLLOUT LINK
    rollout_plan_id: Optional[str] = None
    rollout_status: Optional[str] = None    # Mirror of the linked plan's status

    # EVIDENCE FROM THE PRODUCER
    sample_size: int = Field(ge=0, default=0)
    statistical_significance: bool = False
    estimated_impact: dict = {}
    safety_score: float = Field(ge=0.0, le=1.0, default=0.5)
    potential_issues: List[str] = []
    base_strategy_version: str = "1.0.0"

    created_at: datetime
    updated_at: Optional[datetime] = None

    def can_transition_to(self, status: StrategyUpdateStatus) -> bool:
        return status in STRATEGY_UPDATE_TRANSITIONS[self.status]
