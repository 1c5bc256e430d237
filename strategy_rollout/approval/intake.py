"""
Strategy update intake: how upstream producers file a proposal for review.

Risk level and confidence are fixed here, at creation, and never change afterwards.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from strategy_rollout.errors import Conflict
from strategy_rollout.models.strategy_update import (
    RiskLevel,
    StrategyPayload,
    StrategyUpdate,
    StrategyUpdateStatus,
    UpdateKind,
)
from strategy_rollout.store.records import utcnow
from strategy_rollout.store.strategy_updates import StrategyUpdateStore

logger = logging.getLogger(__name__)

SIGNIFICANT_CONFIDENCE = 0.95
SIGNIFICANT_SAMPLE_SIZE = 100
HIGH_RISK_SAVINGS_MB = 2000
MEDIUM_RISK_SAVINGS_MB = 500
_VERSION_ATTEMPTS = 3


class StrategyUpdateProposal(BaseModel):
    """What a strategy producer submits."""

    app_id: str = Field(min_length=1)
    strategy_type: str = Field(min_length=1)
    update_type: UpdateKind
    payload: StrategyPayload
    confidence_score: float = Field(ge=0.0, le=1.0)
    sample_size: int = Field(ge=0, default=0)
    risk_level: Optional[RiskLevel] = None   # None => assessed from the update itself
    estimated_impact: dict = {}
    safety_score: float = Field(ge=0.0, le=1.0, default=0.5)
    potential_issues: List[str] = []
    base_strategy_version: str = "1.0.0"


def assess_risk_level(update_type: UpdateKind, strategy_type: str, estimated_impact: dict) -> RiskLevel:
    """
    Risk heuristic for producers that do not supply one:
      high:   new recipe for an aggressive strategy, or > 2000 MB expected savings
      medium: new recipe, aggressive strategy, or > 500 MB expected savings
      low:    everything else
    """
    savings = float(estimated_impact.get("memory_savings_mb", 0) or 0)
    aggressive = strategy_type == "aggressive"
    is_new = update_type == UpdateKind.NEW

    if (is_new and aggressive) or savings > HIGH_RISK_SAVINGS_MB:
        return RiskLevel.HIGH
    if is_new or aggressive or savings > MEDIUM_RISK_SAVINGS_MB:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def propose(
    store: StrategyUpdateStore,
    proposal: StrategyUpdateProposal,
    now: Optional[datetime] = None,
) -> StrategyUpdate:
    """Create a pending strategy update with the next monotonic version."""
    now = now or utcnow()
    risk = proposal.risk_level or assess_risk_level(
        proposal.update_type, proposal.strategy_type, proposal.estimated_impact
    )

    for attempt in range(_VERSION_ATTEMPTS):
        update = StrategyUpdate(
            id=f"su_{uuid4().hex[:12]}",
            app_id=proposal.app_id,
            strategy_type=proposal.strategy_type,
            update_type=proposal.update_type,
            payload=proposal.payload,
            version=store.next_version(proposal.app_id, proposal.strategy_type),
            risk_level=risk,
            confidence_score=proposal.confidence_score,
            status=StrategyUpdateStatus.PENDING,
            sample_size=proposal.sample_size,
            statistical_significance=(
                proposal.confidence_score >= SIGNIFICANT_CONFIDENCE
                and proposal.sample_size >= SIGNIFICANT_SAMPLE_SIZE
            ),
            estimated_impact=proposal.estimated_impact,
            safety_score=proposal.safety_score,
            potential_issues=proposal.potential_issues,
            base_strategy_version=proposal.base_strategy_version,
            created_at=now,
        )
        try:
            store.create(update)
        except Conflict:
            # Another producer took this version number
            if attempt == _VERSION_ATTEMPTS - 1:
                raise
            continue
        logger.info(
            "Created strategy update %s for approval (%s %s v%d, risk=%s)",
            update.id, update.app_id, update.strategy_type, update.version, update.risk_level.value,
            extra={"strategy_update_id": update.id, "app_id": update.app_id},
        )
        return update
