"""
Rollback Manager: halts a rollout and demotes its strategy update.

Behavioral Contract:
- Only deploying/deployed strategy updates can be rolled back (else InvalidState,
  and nothing is written).
- The plan halt and the demotion are conditional writes on the observed
  status; losing either race to another rollback raises Conflict before any
  audit record is written.
- After that, every step is best-effort: a failing step is logged and reported
  in the outcome, and the remaining steps still run.
- `emergency` changes log severity and audit metadata only, never mechanics.
"""

import logging
from datetime import datetime
from typing import Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from strategy_rollout.errors import Conflict, InvalidState, RolloutError
from strategy_rollout.ledger.store import DeploymentLedger
from strategy_rollout.models.deployment import (
    DeploymentKind,
    DeploymentLogEntry,
    DeploymentRecord,
    DeploymentStatus,
    DeploymentType,
    LogLevel,
    SelectionCriteria,
)
from strategy_rollout.models.outcome import RollbackOutcome, SideEffectResult
from strategy_rollout.models.rollout_plan import RolloutPlan, RolloutPlanStatus
from strategy_rollout.models.strategy_update import (
    ROLLBACK_ELIGIBLE,
    StrategyUpdate,
    StrategyUpdateStatus,
)
from strategy_rollout.store.records import utcnow
from strategy_rollout.store.rollout_plans import RolloutPlanStore
from strategy_rollout.store.strategy_updates import StrategyUpdateStore

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Manual rollback requested"


class DeploymentTarget(BaseModel):
    """Roll back whatever strategy update a ledger entry belongs to."""
    deployment_id: str


class StrategyUpdateTarget(BaseModel):
    """Roll back a strategy update (and its active plan) directly."""
    strategy_update_id: str


RollbackTarget = Union[DeploymentTarget, StrategyUpdateTarget]


class RollbackManager:

    def __init__(
        self,
        updates: StrategyUpdateStore,
        plans: RolloutPlanStore,
        ledger: DeploymentLedger,
    ):
        self.updates = updates
        self.plans = plans
        self.ledger = ledger

    def resolve(self, target: RollbackTarget) -> StrategyUpdate:
        if isinstance(target, DeploymentTarget):
            record = self.ledger.get(target.deployment_id)
            return self.updates.get(record.strategy_update_id)
        return self.updates.get(target.strategy_update_id)

    def rollback_plan(
        self,
        plan_id: str,
        reason: Optional[str] = None,
        emergency: bool = False,
        now: Optional[datetime] = None,
    ) -> RollbackOutcome:
        plan = self.plans.get(plan_id)
        return self.rollback(
            StrategyUpdateTarget(strategy_update_id=plan.strategy_update_id),
            reason=reason,
            emergency=emergency,
            now=now,
        )

    def rollback(
        self,
        target: RollbackTarget,
        reason: Optional[str] = None,
        emergency: bool = False,
        now: Optional[datetime] = None,
    ) -> RollbackOutcome:
        now = now or utcnow()
        reason = reason or DEFAULT_REASON
        update = self.resolve(target)
        if update.status not in ROLLBACK_ELIGIBLE:
            raise InvalidState(
                f"strategy update {update.id} is {update.status.value}; "
                f"only deploying or deployed strategies can be rolled back",
                strategy_update_id=update.id,
            )

        outcome = RollbackOutcome(
            strategy_update_id=update.id,
            previous_status=update.status,
            emergency=emergency,
            reason=reason,
        )

        # 1. Stop the rollout plan
        plan = self._active_plan(update)
        if plan is not None:
            outcome.rollout_plan, step = self._halt_plan(plan, reason)
            outcome.steps.append(step)

        # 2. Demote the strategy update
        outcome.strategy_update, step = self._demote(update, reason, now)
        outcome.steps.append(step)

        # 3. Audit record
        record = DeploymentRecord(
            id=f"dep_{uuid4().hex[:12]}",
            strategy_update_id=update.id,
            rollout_plan_id=plan.id if plan else None,
            kind=DeploymentKind.ROLLBACK,
            deployment_type=(
                DeploymentType.EMERGENCY_ROLLBACK if emergency else DeploymentType.PLANNED_ROLLBACK
            ),
            phase_index=plan.current_phase if plan else None,
            target_percentage=0.0,
            status=DeploymentStatus.ROLLED_BACK,
            selection_criteria=SelectionCriteria(
                app_id=update.app_id, risk_level=update.risk_level, rollback=True
            ),
            failure_metrics={"reason": reason, "emergency": emergency},
            rollback_reason=reason,
            emergency=emergency,
            created_at=now,
        )
        step = self.ledger.try_append(record)
        outcome.steps.append(step)
        if step.ok:
            outcome.deployment = record

        # 4. Structured log at incident severity
        outcome.steps.append(self._log(update, outcome, now))
        return outcome

    def _active_plan(self, update: StrategyUpdate) -> Optional[RolloutPlan]:
        if update.rollout_plan_id:
            plan = self.plans.find(update.rollout_plan_id)
            if plan is not None:
                return plan
        return self.plans.get_for_strategy_update(update.id)

    def _halt_plan(self, plan: RolloutPlan, reason: str):
        if plan.status == RolloutPlanStatus.ROLLED_BACK:
            raise Conflict(
                f"rollout plan {plan.id} was already rolled back",
                plan_id=plan.id,
                strategy_update_id=plan.strategy_update_id,
            )
        try:
            halted = self.plans.update(
                plan.id,
                plan.status,
                {
                    "status": RolloutPlanStatus.ROLLED_BACK,
                    "user_percentage": 0.0,
                    "conclusion": f"Rollback initiated: {reason}",
                },
            )
        except Conflict:
            raise
        except RolloutError as e:
            logger.error("Failed to roll back plan %s: %s", plan.id, e, extra={"plan_id": plan.id})
            return plan, SideEffectResult.failure("rollout_plan_halted", e, plan_id=plan.id)
        return halted, SideEffectResult.success("rollout_plan_halted", plan_id=plan.id)

    def _demote(self, update: StrategyUpdate, reason: str, now: datetime):
        notes = f"{update.review_notes}\n\nROLLBACK {now.isoformat()}: {reason}".strip()
        try:
            demoted = self.updates.update(
                update.id,
                update.status,
                {
                    "status": StrategyUpdateStatus.ROLLED_BACK,
                    "rollout_status": RolloutPlanStatus.ROLLED_BACK.value,
                    "review_notes": notes,
                },
            )
        except Conflict:
            raise
        except RolloutError as e:
            logger.error(
                "Failed to update strategy status for %s: %s", update.id, e,
                extra={"strategy_update_id": update.id},
            )
            return update, SideEffectResult.failure("strategy_update_demoted", e)
        return demoted, SideEffectResult.success("strategy_update_demoted", strategy_update_id=update.id)

    def _log(self, update: StrategyUpdate, outcome: RollbackOutcome, now: datetime) -> SideEffectResult:
        level = logging.CRITICAL if outcome.emergency else logging.WARNING
        data = {
            "strategy_update_id": update.id,
            "app_id": update.app_id,
            "strategy_type": update.strategy_type,
            "reason": outcome.reason,
            "emergency": outcome.emergency,
            "previous_status": outcome.previous_status.value,
            "completed_actions": outcome.completed_actions,
        }
        logger.log(
            level,
            "%s rollback of strategy %s (%s): %s",
            "EMERGENCY" if outcome.emergency else "Planned",
            update.id, update.app_id, outcome.reason,
            extra={k: v for k, v in data.items() if k != "strategy_type"},
        )
        return self.ledger.log_event(
            DeploymentLogEntry(
                id=f"log_{uuid4().hex[:12]}",
                deployment_id=outcome.deployment.id if outcome.deployment else None,
                strategy_update_id=update.id,
                app_id=update.app_id,
                level=LogLevel.CRITICAL if outcome.emergency else LogLevel.WARNING,
                message=f"Strategy rollback initiated: {outcome.reason}",
                data=data,
                created_at=now,
            )
        )
