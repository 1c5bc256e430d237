"""Rollout Plan Store: persistent staged-rollout schedules (a.k.a. A/B tests)."""

from typing import Dict, FrozenSet, List, Optional

from strategy_rollout.errors import InvalidState
from strategy_rollout.models.rollout_plan import (
    ACTIVE_PLAN_STATUSES,
    RolloutPlan,
    RolloutPlanStatus,
)
from strategy_rollout.store.records import RecordStore, _value

PLAN_TRANSITIONS: Dict[RolloutPlanStatus, FrozenSet[RolloutPlanStatus]] = {
    RolloutPlanStatus.NOT_STARTED: frozenset(
        {RolloutPlanStatus.RUNNING, RolloutPlanStatus.ROLLED_BACK}
    ),
    RolloutPlanStatus.RUNNING: frozenset(
        {RolloutPlanStatus.RUNNING, RolloutPlanStatus.COMPLETED, RolloutPlanStatus.ROLLED_BACK}
    ),
    RolloutPlanStatus.COMPLETED: frozenset({RolloutPlanStatus.ROLLED_BACK}),
    RolloutPlanStatus.ROLLED_BACK: frozenset(),
}


class RolloutPlanStore(RecordStore[RolloutPlan]):
    table = "rollout_plans"
    model = RolloutPlan
    json_fields = frozenset({"phases", "success_thresholds", "rollback_triggers"})
    immutable_fields = frozenset({"id", "strategy_update_id", "phases", "created_at"})
    label = "rollout plan"

    def _check_transition(self, from_status: str, to_status: str) -> None:
        if RolloutPlanStatus(to_status) not in PLAN_TRANSITIONS[RolloutPlanStatus(from_status)]:
            raise InvalidState(
                f"rollout plan cannot move from {from_status} to {to_status}",
                from_status=from_status,
                to_status=to_status,
            )

    def get_for_strategy_update(self, strategy_update_id: str) -> Optional[RolloutPlan]:
        """The active plan for an update, else its most recent plan."""
        plans = self._select([("strategy_update_id = ?", strategy_update_id)])
        for plan in plans:
            if plan.status in ACTIVE_PLAN_STATUSES:
                return plan
        return plans[0] if plans else None

    def list(
        self,
        status: Optional[RolloutPlanStatus] = None,
        app_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[RolloutPlan]:
        where = []
        if status:
            where.append(("status = ?", _value(status)))
        if app_id:
            where.append((
                "strategy_update_id IN (SELECT id FROM strategy_updates WHERE app_id = ?)",
                app_id,
            ))
        return self._select(where, limit=limit, offset=offset)

    def list_running(self) -> List[RolloutPlan]:
        return self._select(
            [("status = ?", RolloutPlanStatus.RUNNING.value)],
            order_by="phase_started_at ASC, rowid ASC",
        )
