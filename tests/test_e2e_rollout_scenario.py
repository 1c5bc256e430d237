"""
End-to-end scenario: a Chrome memory strategy goes from proposal to full rollout,
and a second strategy is caught by a rollback trigger mid-rollout.

Tests the complete flow:
1. A producer files a strategy update
2. A reviewer approves it; the default staged plan is created and the fleet notified
3. The rollout walks canary -> limited -> gradual -> full and completes
4. The ledger holds one record per transition and its chain verifies
5. A second update regresses in canary and the scheduler rolls it back
"""

from datetime import datetime, timedelta, timezone

from strategy_rollout.approval.intake import StrategyUpdateProposal, propose
from strategy_rollout.config import SchedulerConfig
from strategy_rollout.distribution.channel import RecordingDistributionChannel
from strategy_rollout.models import (
    DeploymentKind,
    DeploymentStatus,
    DeploymentType,
    RolloutPlanStatus,
    StrategyPayload,
    StrategyUpdateStatus,
    UpdateKind,
)
from strategy_rollout.pipeline import RolloutPipeline
from strategy_rollout.store.database import Database

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class TestStagedRolloutScenario:
    def setup_method(self):
        self.channel = RecordingDistributionChannel()
        self.snapshots = {}
        self.pipeline = RolloutPipeline(
            database=Database(":memory:"),
            channel=self.channel,
            metrics_source=lambda plan: self.snapshots.get(plan.id),
            scheduler_config=SchedulerConfig(),
        )

    def _propose(self, strategy_type: str):
        return propose(
            self.pipeline.updates,
            StrategyUpdateProposal(
                app_id="com.google.Chrome",
                strategy_type=strategy_type,
                update_type=UpdateKind.TUNING,
                payload=StrategyPayload(data={
                    "thresholdAdjustment": {"criticalThreshold": 100},
                    "suspendAfterMinutes": 20,
                }),
                confidence_score=0.82,
                sample_size=523,
                estimated_impact={"memory_savings_mb": 350},
            ),
            now=T0,
        )

    def test_full_rollout(self):
        # 1. Proposal; risk assessed from the update itself
        update = self._propose("balanced")
        assert update.status == StrategyUpdateStatus.PENDING
        assert update.risk_level.value == "low"

        # 2. Approval
        review = self.pipeline.gate.review(update.id, "approved", notes="Solid evidence", now=T0)
        plan = review.rollout_plan
        assert plan.status == RolloutPlanStatus.NOT_STARTED
        assert self.channel.latest("com.google.Chrome", "balanced")["strategies"]["balanced"]["version"] == 1

        # 3. Staged rollout
        start = self.pipeline.controller.start(plan.id, now=T0)
        assert start.strategy_update.status == StrategyUpdateStatus.DEPLOYING

        now = T0
        for _ in range(4):
            now += timedelta(hours=48)
            self.pipeline.controller.advance(plan.id, now=now)

        plan = self.pipeline.plans.get(plan.id)
        assert plan.status == RolloutPlanStatus.RUNNING
        assert plan.user_percentage == 1.0
        history = self.pipeline.ledger.history(update.id)
        assert len(history) == 5
        assert [r.kind for r in history] == [
            DeploymentKind.CANARY,
            DeploymentKind.LIMITED,
            DeploymentKind.GRADUAL,
            DeploymentKind.GRADUAL,
            DeploymentKind.FULL,
        ]

        finish = self.pipeline.controller.advance(plan.id, now=now + timedelta(hours=48))
        assert finish.rollout_plan.status == RolloutPlanStatus.COMPLETED
        assert self.pipeline.updates.get(update.id).status == StrategyUpdateStatus.DEPLOYED

        # 4. Audit trail
        history = self.pipeline.ledger.history(update.id)
        assert len(history) == 6
        assert history[-1].status == DeploymentStatus.DEPLOYED
        assert self.pipeline.ledger.verify_chain_integrity()

    def test_trigger_caught_in_canary(self):
        good = self._propose("balanced")
        bad = self._propose("aggressive")
        good_plan = self.pipeline.gate.review(good.id, "approved", now=T0).rollout_plan
        bad_plan = self.pipeline.gate.review(bad.id, "approved", now=T0).rollout_plan
        self.pipeline.controller.start(good_plan.id, now=T0)
        self.pipeline.controller.start(bad_plan.id, now=T0)

        healthy = {"effectiveness": 0.9, "user_satisfaction": 0.8, "stability": 0.97, "crash_rate": 0.002}
        self.snapshots[good_plan.id] = healthy
        self.snapshots[bad_plan.id] = dict(healthy, user_satisfaction=0.4)

        results = {
            r["plan_id"]: r for r in self.pipeline.scheduler.tick(current_time=T0 + timedelta(hours=48))
        }

        assert results[good_plan.id]["action"] == "advanced"
        assert results[bad_plan.id]["action"] == "rolled_back"

        assert self.pipeline.updates.get(bad.id).status == StrategyUpdateStatus.ROLLED_BACK
        assert self.pipeline.plans.get(bad_plan.id).user_percentage == 0.0
        rollback = self.pipeline.ledger.history(bad.id)[-1]
        assert rollback.deployment_type == DeploymentType.EMERGENCY_ROLLBACK
        assert "user_satisfaction < 0.6" in rollback.rollback_reason

        rollbacks = self.pipeline.reports.list_rollbacks()
        assert rollbacks.stats["emergency"] == 1
        assert self.pipeline.ledger.verify_chain_integrity()
