"""
Approval Gate: moves a strategy update from pending to approved or rejected.

Behavioral Contract:
- The pending -> decision move is one conditional write. Of two concurrent
  reviews exactly one succeeds; the other gets Conflict.
- Approval triggers a best-effort push to the distribution channel. A failed
  push is logged and reported as a warning; the approval stays committed.
- Approval instantiates a not_started RolloutPlan with the configured defaults
  and links it back onto the strategy update.
- Rejection is terminal and creates no plan.
"""

import logging
from datetime import datetime
from typing import Optional, Union
from uuid import uuid4

from strategy_rollout.config import PipelineConfig
from strategy_rollout.distribution.channel import DistributionChannel
from strategy_rollout.errors import InvalidArgument, RolloutError
from strategy_rollout.models.outcome import ReviewOutcome, SideEffectResult
from strategy_rollout.models.rollout_plan import RolloutPlan, RolloutPlanStatus
from strategy_rollout.models.strategy_update import (
    ReviewDecision,
    RiskLevel,
    StrategyUpdate,
    StrategyUpdateStatus,
)
from strategy_rollout.store.records import utcnow
from strategy_rollout.store.rollout_plans import RolloutPlanStore
from strategy_rollout.store.strategy_updates import StrategyUpdateStore

logger = logging.getLogger(__name__)


def parse_decision(decision: Union[ReviewDecision, str]) -> ReviewDecision:
    try:
        return ReviewDecision(decision)
    except ValueError:
        raise InvalidArgument(
            f"decision must be one of {[d.value for d in ReviewDecision]}, got {decision!r}"
        ) from None


def build_default_plan(
    update: StrategyUpdate,
    config: PipelineConfig,
    now: Optional[datetime] = None,
) -> RolloutPlan:
    """The staged schedule every freshly approved update starts with."""
    phases = list(config.default_phases)
    return RolloutPlan(
        id=f"plan_{uuid4().hex[:12]}",
        strategy_update_id=update.id,
        name=f"{update.app_id}_{update.strategy_type}_v{update.version}",
        description=f"Staged rollout of {update.update_type.value} update for {update.app_id}",
        phases=phases,
        current_phase=0,
        user_percentage=phases[0],
        status=RolloutPlanStatus.NOT_STARTED,
        phase_duration_hours=config.default_phase_duration_hours,
        success_thresholds=dict(config.default_success_thresholds),
        rollback_triggers=list(config.default_rollback_triggers),
        created_at=now or utcnow(),
    )


class ApprovalGate:
    """Human review of strategy updates."""

    def __init__(
        self,
        updates: StrategyUpdateStore,
        plans: RolloutPlanStore,
        channel: DistributionChannel,
        config: Optional[PipelineConfig] = None,
    ):
        self.updates = updates
        self.plans = plans
        self.channel = channel
        self.config = config or PipelineConfig()

    def review(
        self,
        strategy_update_id: str,
        decision: Union[ReviewDecision, str],
        notes: str = "",
        reviewer: str = "admin",
        now: Optional[datetime] = None,
    ) -> ReviewOutcome:
        """
        Record a reviewer's decision.

        Raises NotFound if the update does not exist and Conflict if it is no
        longer pending (already processed by another reviewer).
        """
        decision = parse_decision(decision)
        if not strategy_update_id:
            raise InvalidArgument("strategy_update_id is required")
        now = now or utcnow()

        updated = self.updates.update(
            strategy_update_id,
            StrategyUpdateStatus.PENDING,
            {
                "status": StrategyUpdateStatus(decision.value),
                "reviewed_by": reviewer,
                "reviewed_at": now,
                "review_notes": notes or "",
            },
        )
        logger.info(
            "Strategy update %s %s by %s", updated.id, decision.value, reviewer,
            extra={"strategy_update_id": updated.id, "app_id": updated.app_id},
        )

        outcome = ReviewOutcome(strategy_update=updated)
        if decision == ReviewDecision.REJECTED:
            return outcome

        # Approved: notify the fleet, then schedule the staged rollout
        outcome.distribution = self._push(updated)
        if not outcome.distribution.ok:
            outcome.warnings.append(f"distribution push failed: {outcome.distribution.error}")

        try:
            plan = self.plans.create(build_default_plan(updated, self.config, now))
            updated = self.updates.update(
                updated.id,
                StrategyUpdateStatus.APPROVED,
                {"rollout_plan_id": plan.id, "rollout_status": plan.status.value},
            )
        except RolloutError as e:
            logger.error(
                "Failed to create rollout plan for approved update %s: %s", updated.id, e,
                extra={"strategy_update_id": updated.id},
            )
            outcome.warnings.append(f"rollout plan not created: {e}")
            return outcome

        logger.info(
            "Created rollout plan %s for approved strategy %s", plan.id, updated.id,
            extra={"strategy_update_id": updated.id, "plan_id": plan.id},
        )
        outcome.strategy_update = updated
        outcome.rollout_plan = plan
        return outcome

    def _push(self, update: StrategyUpdate) -> SideEffectResult:
        try:
            receipt = self.channel.push(update)
        except Exception as e:
            # A failed push never undoes the approval
            logger.warning(
                "Failed to push strategy %s to desktop apps: %s", update.id, e,
                extra={"strategy_update_id": update.id, "app_id": update.app_id},
            )
            return SideEffectResult.failure("distribution_push", e)
        return SideEffectResult.success("distribution_push", **(receipt or {}))

    # --- Review queue ---

    def pending(
        self,
        risk_level: Optional[RiskLevel] = None,
        app_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ):
        return self.updates.list_pending(risk_level=risk_level, app_id=app_id, limit=limit, offset=offset)

    def history(self, reviewer: Optional[str] = None, limit: int = 20, offset: int = 0) -> dict:
        reviews = self.updates.list_reviewed(reviewer=reviewer, limit=limit, offset=offset)
        stats = self.updates.review_stats()
        return {
            "data": reviews,
            "stats": stats,
            "pagination": {"limit": limit, "offset": offset, "has_more": len(reviews) == limit},
        }
