"""
Rollout Controller: drives a RolloutPlan through its phases.

States:
  not_started --start--> running --advance--> running ... --complete--> completed
                                 \\------------ rollback (RollbackManager) ---> rolled_back

Behavioral Contract:
- start/advance/complete are each one conditional write on the plan, keyed on
  the expected prior status (and, for advance/complete, the observed phase).
  Two concurrent advances: exactly one wins, the other gets Conflict.
- Calling an operation from the wrong status raises InvalidState.
- advance past the last phase delegates to complete.
- Every transition appends a DeploymentRecord, best-effort.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional, Union
from uuid import uuid4

from strategy_rollout.errors import InvalidArgument, InvalidState
from strategy_rollout.ledger.store import DeploymentLedger
from strategy_rollout.models.deployment import (
    DeploymentKind,
    DeploymentRecord,
    DeploymentStatus,
    SelectionCriteria,
)
from strategy_rollout.models.outcome import RollbackOutcome, TransitionOutcome
from strategy_rollout.models.rollout_plan import RolloutAction, RolloutPlan, RolloutPlanStatus
from strategy_rollout.models.strategy_update import StrategyUpdate, StrategyUpdateStatus
from strategy_rollout.rollout.rollback import RollbackManager
from strategy_rollout.store.records import utcnow
from strategy_rollout.store.rollout_plans import RolloutPlanStore
from strategy_rollout.store.strategy_updates import StrategyUpdateStore

logger = logging.getLogger(__name__)

CANARY_MAX = 0.001
LIMITED_MAX = 0.01
GRADUAL_MAX = 0.5


def deployment_phase_for(percentage: float) -> DeploymentKind:
    """Canonical label for a target percentage."""
    if percentage <= CANARY_MAX:
        return DeploymentKind.CANARY
    if percentage <= LIMITED_MAX:
        return DeploymentKind.LIMITED
    if percentage <= GRADUAL_MAX:
        return DeploymentKind.GRADUAL
    return DeploymentKind.FULL


def _new_record(
    plan: RolloutPlan,
    update: StrategyUpdate,
    kind: DeploymentKind,
    percentage: float,
    status: DeploymentStatus,
    now: datetime,
) -> DeploymentRecord:
    return DeploymentRecord(
        id=f"dep_{uuid4().hex[:12]}",
        strategy_update_id=update.id,
        rollout_plan_id=plan.id,
        kind=kind,
        phase_index=plan.current_phase,
        target_percentage=percentage,
        status=status,
        selection_criteria=SelectionCriteria(
            app_id=update.app_id,
            risk_level=update.risk_level,
            include_beta_users=kind == DeploymentKind.CANARY,
        ),
        success_metrics=dict(plan.success_thresholds),
        created_at=now,
    )


class RolloutController:
    """The phase state machine."""

    def __init__(
        self,
        updates: StrategyUpdateStore,
        plans: RolloutPlanStore,
        ledger: DeploymentLedger,
        rollbacks: Optional[RollbackManager] = None,
    ):
        self.updates = updates
        self.plans = plans
        self.ledger = ledger
        self.rollbacks = rollbacks or RollbackManager(updates, plans, ledger)

    def start(self, plan_id: str, now: Optional[datetime] = None) -> TransitionOutcome:
        """Begin the canary phase."""
        now = now or utcnow()
        plan = self.plans.get(plan_id)
        if plan.status != RolloutPlanStatus.NOT_STARTED:
            raise InvalidState(
                f"rollout plan {plan_id} already started or finished (status={plan.status.value})",
                plan_id=plan_id,
            )
        update = self.updates.get(plan.strategy_update_id)
        if update.status != StrategyUpdateStatus.APPROVED:
            raise InvalidState(
                f"strategy update {update.id} is {update.status.value}, not approved",
                strategy_update_id=update.id,
            )

        plan = self.plans.update(
            plan_id,
            RolloutPlanStatus.NOT_STARTED,
            {
                "status": RolloutPlanStatus.RUNNING,
                "current_phase": 0,
                "user_percentage": plan.phases[0],
                "phase_started_at": now,
            },
        )
        update = self.updates.update(
            update.id,
            StrategyUpdateStatus.APPROVED,
            {"status": StrategyUpdateStatus.DEPLOYING, "rollout_status": plan.status.value},
        )

        # Phase 0 is the canary by convention, whatever its percentage
        record = _new_record(plan, update, DeploymentKind.CANARY, plan.phases[0], DeploymentStatus.DEPLOYING, now)
        ledger_result = self.ledger.try_append(record)
        logger.info(
            "Started rollout %s at %.3f%%", plan.id, plan.user_percentage * 100,
            extra={"plan_id": plan.id, "strategy_update_id": update.id, "phase": 0,
                   "percentage": plan.user_percentage},
        )
        return TransitionOutcome(
            rollout_plan=plan,
            strategy_update=update,
            deployment=record if ledger_result.ok else None,
            side_effects=[ledger_result],
        )

    def advance(self, plan_id: str, now: Optional[datetime] = None) -> TransitionOutcome:
        """Move to the next phase, or complete the plan after the last one."""
        now = now or utcnow()
        plan = self.plans.get(plan_id)
        if plan.status != RolloutPlanStatus.RUNNING:
            raise InvalidState(
                f"rollout plan {plan_id} is not running (status={plan.status.value})",
                plan_id=plan_id,
            )

        next_phase = plan.current_phase + 1
        if next_phase >= len(plan.phases):
            return self._complete(plan, now)

        percentage = plan.phases[next_phase]
        plan = self.plans.update(
            plan_id,
            RolloutPlanStatus.RUNNING,
            {
                "current_phase": next_phase,
                "user_percentage": percentage,
                "phase_started_at": now,
            },
            expected={"current_phase": plan.current_phase},
        )
        update = self.updates.get(plan.strategy_update_id)

        record = _new_record(
            plan, update, deployment_phase_for(percentage), percentage, DeploymentStatus.DEPLOYING, now
        )
        ledger_result = self.ledger.try_append(record)
        logger.info(
            "Advanced rollout %s to phase %d (%.3f%%)", plan.id, next_phase, percentage * 100,
            extra={"plan_id": plan.id, "strategy_update_id": update.id, "phase": next_phase,
                   "percentage": percentage},
        )
        return TransitionOutcome(
            rollout_plan=plan,
            strategy_update=update,
            deployment=record if ledger_result.ok else None,
            side_effects=[ledger_result],
        )

    def complete(self, plan_id: str, now: Optional[datetime] = None) -> TransitionOutcome:
        """Deploy to all users and close the plan."""
        now = now or utcnow()
        plan = self.plans.get(plan_id)
        if plan.status != RolloutPlanStatus.RUNNING:
            raise InvalidState(
                f"rollout plan {plan_id} is not running (status={plan.status.value})",
                plan_id=plan_id,
            )
        return self._complete(plan, now)

    def _complete(self, plan: RolloutPlan, now: datetime) -> TransitionOutcome:
        plan = self.plans.update(
            plan.id,
            RolloutPlanStatus.RUNNING,
            {
                "status": RolloutPlanStatus.COMPLETED,
                "current_phase": len(plan.phases) - 1,
                "user_percentage": 1.0,
                "conclusion": "Successfully completed staged rollout. Deploying to all users.",
                "success_count": plan.total_participants,
            },
            expected={"current_phase": plan.current_phase},
        )
        update = self.updates.update(
            plan.strategy_update_id,
            StrategyUpdateStatus.DEPLOYING,
            {"status": StrategyUpdateStatus.DEPLOYED, "rollout_status": plan.status.value},
        )

        record = _new_record(plan, update, DeploymentKind.FULL, 1.0, DeploymentStatus.DEPLOYED, now)
        ledger_result = self.ledger.try_append(record)
        logger.info(
            "Completed rollout %s; strategy %s deployed to all users", plan.id, update.id,
            extra={"plan_id": plan.id, "strategy_update_id": update.id, "percentage": 1.0},
        )
        return TransitionOutcome(
            rollout_plan=plan,
            strategy_update=update,
            deployment=record if ledger_result.ok else None,
            side_effects=[ledger_result],
        )

    def record_participants(
        self, plan_id: str, total: int, successes: int = 0, failures: int = 0
    ) -> RolloutPlan:
        """Store participant counters reported for a running plan."""
        if min(total, successes, failures) < 0:
            raise InvalidArgument("participant counts must be non-negative")
        plan = self.plans.get(plan_id)
        if plan.status != RolloutPlanStatus.RUNNING:
            raise InvalidState(f"rollout plan {plan_id} is not running", plan_id=plan_id)
        return self.plans.update(
            plan_id,
            RolloutPlanStatus.RUNNING,
            {"total_participants": total, "success_count": successes, "failure_count": failures},
            expected={"current_phase": plan.current_phase},
        )

    def apply(
        self,
        plan_id: str,
        action: Union[RolloutAction, str],
        reason: Optional[str] = None,
        emergency: bool = False,
        now: Optional[datetime] = None,
    ) -> Union[TransitionOutcome, RollbackOutcome]:
        """Dispatch an operator action by name."""
        try:
            action = RolloutAction(action)
        except ValueError:
            raise InvalidArgument(
                f"action must be one of {[a.value for a in RolloutAction]}, got {action!r}"
            ) from None

        handlers: Dict[RolloutAction, Callable[[], Union[TransitionOutcome, RollbackOutcome]]] = {
            RolloutAction.START: lambda: self.start(plan_id, now=now),
            RolloutAction.ADVANCE: lambda: self.advance(plan_id, now=now),
            RolloutAction.COMPLETE: lambda: self.complete(plan_id, now=now),
            RolloutAction.ROLLBACK: lambda: self.rollbacks.rollback_plan(
                plan_id, reason=reason, emergency=emergency, now=now
            ),
        }
        missing = set(RolloutAction) - set(handlers)
        if missing:
            raise NotImplementedError(f"unhandled rollout actions: {sorted(a.value for a in missing)}")
        return handlers[action]()
