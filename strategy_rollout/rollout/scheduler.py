"""
Rollout Scheduler: the heartbeat that promotes or halts running rollouts.

Operators can always advance a plan by hand. The scheduler does the same
thing on a timer: each tick it polls running plans and, per plan,
  1. asks the metrics source for the latest snapshot,
  2. rolls back if any rollback trigger fires,
  3. otherwise advances once the phase has run for phase_duration_hours,
     success thresholds are met, and the optional cron window is open.

A Conflict means an operator got there first; the plan is skipped this tick.
A failure on one plan, including one raised by the metrics source, never stops
the others from being processed.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from croniter import croniter

from strategy_rollout.config import SchedulerConfig
from strategy_rollout.errors import Conflict, DependencyFailure, InvalidState, RolloutError
from strategy_rollout.models.rollout_plan import RolloutPlan, RolloutPlanStatus
from strategy_rollout.rollout.controller import RolloutController
from strategy_rollout.rollout.rollback import StrategyUpdateTarget
from strategy_rollout.store.records import utcnow

logger = logging.getLogger(__name__)

MetricsSource = Callable[[RolloutPlan], Optional[Dict[str, float]]]


def _in_advance_window(schedule: Optional[str], current_time: datetime) -> bool:
    """Is `current_time` inside the cron window that allows promotions?"""
    if not schedule:
        return True
    try:
        return croniter.match(schedule, current_time)
    except (ValueError, KeyError):
        # Invalid cron expression: never auto-advance
        logger.warning("Invalid advance_window cron expression %r", schedule)
        return False


class RolloutScheduler:
    """
    States per plan and tick:
      running -> (rolled_back | advanced | completed | waiting | awaiting_metrics
                  | holding | outside_window | skipped | error)
    """

    def __init__(
        self,
        controller: RolloutController,
        metrics_source: Optional[MetricsSource] = None,
        config: Optional[SchedulerConfig] = None,
    ):
        self.controller = controller
        self.metrics_source = metrics_source
        self.config = config or SchedulerConfig()
        self._running = False

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def tick(self, current_time: Optional[datetime] = None) -> List[dict]:
        """Evaluate every running plan once. Returns one result per plan."""
        if current_time is None:
            current_time = utcnow()

        results = []
        for plan in self.controller.plans.list_running():
            try:
                result = self._evaluate(plan, current_time)
            except (Conflict, InvalidState) as e:
                logger.info("Skipping plan %s this tick: %s", plan.id, e, extra={"plan_id": plan.id})
                result = {"action": "skipped", "error": e.message}
            except RolloutError as e:
                logger.error("Scheduler failed on plan %s: %s", plan.id, e, extra={"plan_id": plan.id})
                result = {"action": "error", "error": e.message}
            result["plan_id"] = plan.id
            result["strategy_update_id"] = plan.strategy_update_id
            results.append(result)
        return results

    def _fetch_metrics(self, plan: RolloutPlan) -> Optional[Dict[str, float]]:
        if self.metrics_source is None:
            return None
        try:
            return self.metrics_source(plan)
        except Exception as e:
            raise DependencyFailure(f"metrics source failed for plan {plan.id}: {e}") from e

    def _evaluate(self, plan: RolloutPlan, current_time: datetime) -> dict:
        metrics = self._fetch_metrics(plan)

        if metrics:
            fired = plan.fired_triggers(metrics)
            if fired:
                reason = "Rollback trigger fired: " + ", ".join(str(t) for t in fired)
                outcome = self.controller.rollbacks.rollback(
                    StrategyUpdateTarget(strategy_update_id=plan.strategy_update_id),
                    reason=reason,
                    emergency=self.config.emergency_on_trigger,
                    now=current_time,
                )
                return {"action": "rolled_back", "reason": reason, "emergency": outcome.emergency}

        if not plan.phase_due(current_time):
            return {"action": "waiting", "phase": plan.current_phase}
        if metrics is None and self.config.require_metrics:
            return {"action": "awaiting_metrics", "phase": plan.current_phase}
        if metrics is not None and not plan.meets_success_thresholds(metrics):
            return {"action": "holding", "phase": plan.current_phase}
        if not _in_advance_window(self.config.advance_window, current_time):
            return {"action": "outside_window", "phase": plan.current_phase}

        outcome = self.controller.advance(plan.id, now=current_time)
        advanced = outcome.rollout_plan
        action = "completed" if advanced.status == RolloutPlanStatus.COMPLETED else "advanced"
        logger.info(
            "Scheduler %s plan %s (phase %d)", action, advanced.id, advanced.current_phase,
            extra={"plan_id": advanced.id, "phase": advanced.current_phase},
        )
        return {"action": action, "phase": advanced.current_phase, "percentage": advanced.user_percentage}

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the scheduler loop asynchronously."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                # tick() blocks on the store
                await asyncio.to_thread(self.tick)
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.poll_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
