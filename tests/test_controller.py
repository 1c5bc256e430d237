"""Tests for the Rollout Controller phase state machine."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from strategy_rollout.approval.intake import StrategyUpdateProposal, propose
from strategy_rollout.distribution.channel import RecordingDistributionChannel
from strategy_rollout.errors import Conflict, DependencyFailure, InvalidArgument, InvalidState, NotFound
from strategy_rollout.models import (
    DeploymentKind,
    DeploymentStatus,
    RiskLevel,
    RollbackOutcome,
    RolloutPlanStatus,
    StrategyPayload,
    StrategyUpdateStatus,
    UpdateKind,
)
from strategy_rollout.pipeline import RolloutPipeline
from strategy_rollout.rollout.controller import deployment_phase_for
from strategy_rollout.store.database import Database

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _approved_plan(pipeline: RolloutPipeline):
    update = propose(
        pipeline.updates,
        StrategyUpdateProposal(
            app_id="com.google.Chrome",
            strategy_type="balanced",
            update_type=UpdateKind.TUNING,
            payload=StrategyPayload(data={"thresholdAdjustment": {"criticalThreshold": 100}}),
            confidence_score=0.82,
            sample_size=523,
            risk_level=RiskLevel.MEDIUM,
        ),
    )
    return pipeline.gate.review(update.id, "approved").rollout_plan


class TestDeploymentPhaseFor:
    def test_labels(self):
        assert deployment_phase_for(0.0005) == DeploymentKind.CANARY
        assert deployment_phase_for(0.01) == DeploymentKind.LIMITED
        assert deployment_phase_for(0.3) == DeploymentKind.GRADUAL
        assert deployment_phase_for(0.9) == DeploymentKind.FULL

    def test_boundaries_are_inclusive(self):
        assert deployment_phase_for(0.001) == DeploymentKind.CANARY
        assert deployment_phase_for(0.0011) == DeploymentKind.LIMITED
        assert deployment_phase_for(0.5) == DeploymentKind.GRADUAL
        assert deployment_phase_for(0.51) == DeploymentKind.FULL


class TestRolloutController:
    def setup_method(self):
        self.pipeline = RolloutPipeline(database=Database(":memory:"), channel=RecordingDistributionChannel())
        self.controller = self.pipeline.controller
        self.plan = _approved_plan(self.pipeline)

    def test_start_enters_canary(self):
        outcome = self.controller.start(self.plan.id, now=T0)

        plan = outcome.rollout_plan
        assert plan.status == RolloutPlanStatus.RUNNING
        assert plan.current_phase == 0
        assert plan.user_percentage == 0.001
        assert plan.phase_started_at == T0
        assert outcome.strategy_update.status == StrategyUpdateStatus.DEPLOYING
        assert outcome.strategy_update.rollout_status == "running"

        record = outcome.deployment
        assert record.kind == DeploymentKind.CANARY
        assert record.target_percentage == 0.001
        assert record.status == DeploymentStatus.DEPLOYING
        assert record.selection_criteria.include_beta_users is True
        assert record.success_metrics == plan.success_thresholds
        assert record.signature != ""
        assert outcome.warnings == []

    def test_start_twice(self):
        self.controller.start(self.plan.id)
        with pytest.raises(InvalidState):
            self.controller.start(self.plan.id)

    def test_start_missing_plan(self):
        with pytest.raises(NotFound):
            self.controller.start("plan_missing")

    def test_walk_through_every_phase(self):
        self.controller.start(self.plan.id, now=T0)
        percentages = []
        for _ in range(4):
            outcome = self.controller.advance(self.plan.id, now=T0)
            percentages.append(outcome.rollout_plan.user_percentage)

        assert percentages == [0.01, 0.1, 0.5, 1.0]
        plan = self.pipeline.plans.get(self.plan.id)
        assert plan.status == RolloutPlanStatus.RUNNING
        assert plan.current_phase == 4

        history = self.pipeline.ledger.history(plan.strategy_update_id)
        assert [r.kind for r in history] == [
            DeploymentKind.CANARY,
            DeploymentKind.LIMITED,
            DeploymentKind.GRADUAL,
            DeploymentKind.GRADUAL,
            DeploymentKind.FULL,
        ]
        assert [r.phase_index for r in history] == [0, 1, 2, 3, 4]

        # Advancing past the last phase completes the plan
        outcome = self.controller.advance(self.plan.id, now=T0)
        assert outcome.rollout_plan.status == RolloutPlanStatus.COMPLETED
        assert outcome.rollout_plan.user_percentage == 1.0
        assert outcome.strategy_update.status == StrategyUpdateStatus.DEPLOYED
        assert outcome.deployment.kind == DeploymentKind.FULL
        assert outcome.deployment.status == DeploymentStatus.DEPLOYED
        assert len(self.pipeline.ledger.history(plan.strategy_update_id)) == 6

    def test_advance_requires_running_plan(self):
        with pytest.raises(InvalidState):
            self.controller.advance(self.plan.id)

    def test_complete_early(self):
        self.controller.start(self.plan.id)
        self.controller.advance(self.plan.id)
        self.controller.record_participants(self.plan.id, 1200, successes=1100, failures=100)

        outcome = self.controller.complete(self.plan.id)

        plan = outcome.rollout_plan
        assert plan.status == RolloutPlanStatus.COMPLETED
        assert plan.current_phase == len(plan.phases) - 1
        assert plan.user_percentage == 1.0
        assert plan.success_count == 1200
        assert plan.conclusion.startswith("Successfully completed")
        assert outcome.strategy_update.status == StrategyUpdateStatus.DEPLOYED

        with pytest.raises(InvalidState):
            self.controller.complete(self.plan.id)

    def test_record_participants(self):
        self.controller.start(self.plan.id)
        plan = self.controller.record_participants(self.plan.id, 50, successes=45, failures=5)
        assert (plan.total_participants, plan.success_count, plan.failure_count) == (50, 45, 5)

        with pytest.raises(InvalidArgument):
            self.controller.record_participants(self.plan.id, -1)

    def test_concurrent_advance_exactly_one_wins(self):
        self.controller.start(self.plan.id)

        # Both threads read the plan at phase 0 before either writes
        original_get = self.pipeline.plans.get
        barrier = threading.Barrier(2)
        local = threading.local()

        def synced_get(plan_id):
            plan = original_get(plan_id)
            if not getattr(local, "synced", False):
                local.synced = True
                barrier.wait(timeout=5)
            return plan

        self.pipeline.plans.get = synced_get

        def advance(_):
            try:
                return self.controller.advance(self.plan.id)
            except Conflict as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(advance, range(2)))

        assert sum(isinstance(r, Conflict) for r in results) == 1
        plan = original_get(self.plan.id)
        assert plan.current_phase == 1
        assert plan.user_percentage == 0.01
        assert len(self.pipeline.ledger.history(plan.strategy_update_id)) == 2

    def test_ledger_failure_does_not_fail_transition(self, monkeypatch):
        self.controller.start(self.plan.id)

        def broken_append(record):
            raise DependencyFailure("ledger unavailable")

        monkeypatch.setattr(self.pipeline.ledger, "append", broken_append)
        outcome = self.controller.advance(self.plan.id)

        assert outcome.rollout_plan.current_phase == 1
        assert outcome.deployment is None
        assert not outcome.side_effects[0].ok
        assert len(outcome.warnings) == 1

    def test_store_failure_is_fatal(self):
        self.controller.start(self.plan.id)
        self.pipeline.database.close()
        with pytest.raises(DependencyFailure):
            self.controller.advance(self.plan.id)

    def test_apply_dispatch(self):
        outcome = self.controller.apply(self.plan.id, "start")
        assert outcome.rollout_plan.status == RolloutPlanStatus.RUNNING

        outcome = self.controller.apply(self.plan.id, "advance")
        assert outcome.rollout_plan.current_phase == 1

        outcome = self.controller.apply(self.plan.id, "rollback", reason="crash spike", emergency=True)
        assert isinstance(outcome, RollbackOutcome)
        assert outcome.rollout_plan.status == RolloutPlanStatus.ROLLED_BACK

        with pytest.raises(InvalidArgument):
            self.controller.apply(self.plan.id, "explode")
