"""Tests for strategy update intake and the Approval Gate."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from strategy_rollout.approval.gate import build_default_plan, parse_decision
from strategy_rollout.approval.intake import StrategyUpdateProposal, assess_risk_level, propose
from strategy_rollout.config import PipelineConfig
from strategy_rollout.distribution.channel import RecordingDistributionChannel
from strategy_rollout.errors import Conflict, DependencyFailure, InvalidArgument, NotFound
from strategy_rollout.models import (
    ReviewDecision,
    RiskLevel,
    RolloutPlanStatus,
    StrategyPayload,
    StrategyUpdateStatus,
    UpdateKind,
)
from strategy_rollout.pipeline import RolloutPipeline
from strategy_rollout.store.database import Database


def _proposal(**overrides) -> StrategyUpdateProposal:
    fields = dict(
        app_id="com.google.Chrome",
        strategy_type="balanced",
        update_type=UpdateKind.TUNING,
        payload=StrategyPayload(data={"thresholdAdjustment": {"criticalThreshold": 100}}),
        confidence_score=0.82,
        sample_size=523,
        risk_level=RiskLevel.MEDIUM,
    )
    fields.update(overrides)
    return StrategyUpdateProposal(**fields)


class TestIntake:
    def test_assess_risk_level(self):
        assert assess_risk_level(UpdateKind.NEW, "aggressive", {}) == RiskLevel.HIGH
        assert assess_risk_level(UpdateKind.TUNING, "balanced", {"memory_savings_mb": 2500}) == RiskLevel.HIGH
        assert assess_risk_level(UpdateKind.NEW, "balanced", {}) == RiskLevel.MEDIUM
        assert assess_risk_level(UpdateKind.TUNING, "aggressive", {}) == RiskLevel.MEDIUM
        assert assess_risk_level(UpdateKind.TUNING, "balanced", {"memory_savings_mb": 800}) == RiskLevel.MEDIUM
        assert assess_risk_level(UpdateKind.CORRECTION, "conservative", {}) == RiskLevel.LOW

    def test_proposal_without_risk_level_is_assessed(self):
        pipeline = RolloutPipeline(database=Database(":memory:"), channel=RecordingDistributionChannel())
        update = propose(pipeline.updates, _proposal(risk_level=None, update_type=UpdateKind.NEW))
        assert update.risk_level == RiskLevel.MEDIUM

    def test_statistical_significance(self):
        pipeline = RolloutPipeline(database=Database(":memory:"), channel=RecordingDistributionChannel())
        strong = propose(pipeline.updates, _proposal(confidence_score=0.96))
        weak = propose(pipeline.updates, _proposal(confidence_score=0.96, sample_size=40))
        assert strong.statistical_significance is True
        assert weak.statistical_significance is False

    def test_parse_decision(self):
        assert parse_decision("approved") == ReviewDecision.APPROVED
        assert parse_decision(ReviewDecision.REJECTED) == ReviewDecision.REJECTED
        with pytest.raises(InvalidArgument):
            parse_decision("maybe")


class TestApprovalGate:
    def setup_method(self):
        self.channel = RecordingDistributionChannel()
        self.pipeline = RolloutPipeline(database=Database(":memory:"), channel=self.channel)
        self.gate = self.pipeline.gate

    def _pending(self, **overrides):
        return propose(self.pipeline.updates, _proposal(**overrides))

    def test_approve_creates_default_plan(self):
        update = self._pending()
        outcome = self.gate.review(update.id, "approved", notes="looks good", reviewer="alice")

        plan = outcome.rollout_plan
        assert plan is not None
        assert plan.status == RolloutPlanStatus.NOT_STARTED
        assert plan.phases == [0.001, 0.01, 0.1, 0.5, 1.0]
        assert plan.current_phase == 0
        assert plan.phase_duration_hours == 48
        assert plan.success_thresholds == {"effectiveness": 0.8, "user_satisfaction": 0.75, "stability": 0.95}
        assert [str(t) for t in plan.rollback_triggers] == [
            "crash_rate > 0.01",
            "user_satisfaction < 0.6",
            "effectiveness < 0.5",
        ]
        assert plan.name == f"com.google.Chrome_balanced_v{update.version}"

        stored = self.pipeline.updates.get(update.id)
        assert stored.status == StrategyUpdateStatus.APPROVED
        assert stored.reviewed_by == "alice"
        assert stored.review_notes == "looks good"
        assert stored.reviewed_at is not None
        assert stored.rollout_plan_id == plan.id
        assert stored.rollout_status == "not_started"
        assert outcome.warnings == []

    def test_approve_pushes_to_distribution(self):
        update = self._pending()
        outcome = self.gate.review(update.id, ReviewDecision.APPROVED)

        assert outcome.distribution.ok
        assert len(self.channel.pushed) == 1
        artifact = self.channel.latest("com.google.Chrome", "balanced")
        assert artifact["strategyUpdateId"] == update.id

    def test_reject_creates_no_plan(self):
        update = self._pending()
        outcome = self.gate.review(update.id, "rejected", notes="too risky")

        assert outcome.strategy_update.status == StrategyUpdateStatus.REJECTED
        assert outcome.rollout_plan is None
        assert outcome.distribution is None
        assert self.pipeline.plans.count() == 0
        assert self.channel.pushed == []

    def test_second_review_conflicts(self):
        update = self._pending()
        self.gate.review(update.id, "approved")

        with pytest.raises(Conflict):
            self.gate.review(update.id, "rejected")
        assert self.pipeline.updates.get(update.id).status == StrategyUpdateStatus.APPROVED
        assert self.pipeline.plans.count() == 1

    def test_concurrent_reviews_exactly_one_wins(self):
        update = self._pending()

        def review(decision):
            try:
                return self.gate.review(update.id, decision, reviewer=decision)
            except Conflict as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(review, ["approved", "rejected"]))

        winners = [r for r in results if not isinstance(r, Conflict)]
        losers = [r for r in results if isinstance(r, Conflict)]
        assert len(winners) == 1
        assert len(losers) == 1
        stored = self.pipeline.updates.get(update.id)
        assert stored.status == winners[0].strategy_update.status
        assert stored.reviewed_by == stored.status.value

    def test_review_missing_update(self):
        with pytest.raises(NotFound):
            self.gate.review("su_missing", "approved")

    def test_invalid_decision(self):
        update = self._pending()
        with pytest.raises(InvalidArgument):
            self.gate.review(update.id, "maybe")
        assert self.pipeline.updates.get(update.id).status == StrategyUpdateStatus.PENDING

    def test_push_failure_keeps_approval(self):
        channel = RecordingDistributionChannel(fail_with=DependencyFailure("fleet endpoint down"))
        pipeline = RolloutPipeline(database=Database(":memory:"), channel=channel)
        update = propose(pipeline.updates, _proposal())

        outcome = pipeline.gate.review(update.id, "approved")

        assert not outcome.distribution.ok
        assert "fleet endpoint down" in outcome.distribution.error
        assert len(outcome.warnings) == 1
        assert outcome.rollout_plan is not None
        assert pipeline.updates.get(update.id).status == StrategyUpdateStatus.APPROVED

    def test_plan_creation_failure_keeps_approval(self):
        update = self._pending()
        # Occupy the one active-plan slot so the gate's insert collides
        self.pipeline.plans.create(build_default_plan(update, PipelineConfig()))

        outcome = self.gate.review(update.id, "approved")

        assert outcome.rollout_plan is None
        assert any("rollout plan not created" in w for w in outcome.warnings)
        assert self.pipeline.updates.get(update.id).status == StrategyUpdateStatus.APPROVED

    def test_pending_queue_and_history(self):
        first = self._pending(risk_level=RiskLevel.HIGH)
        second = self._pending(risk_level=RiskLevel.LOW)
        self._pending(app_id="com.microsoft.VSCode")

        assert len(self.gate.pending()) == 3
        assert [u.id for u in self.gate.pending(risk_level=RiskLevel.HIGH)] == [first.id]

        self.gate.review(first.id, "approved", reviewer="alice")
        self.gate.review(second.id, "rejected", reviewer="bob")

        history = self.gate.history()
        assert history["stats"]["approved"] == 1
        assert history["stats"]["rejected"] == 1
        assert history["stats"]["by_risk_level"] == {"high": 1, "low": 1}
        assert {u.id for u in history["data"]} == {first.id, second.id}
        assert [u.id for u in self.gate.history(reviewer="bob")["data"]] == [second.id]
        assert len(self.gate.pending()) == 1

    def test_history_keeps_updates_that_moved_past_approval(self):
        deployed = self._pending()
        rejected = self._pending()
        plan = self.gate.review(deployed.id, "approved", reviewer="alice").rollout_plan
        self.gate.review(rejected.id, "rejected", reviewer="bob")
        self.pipeline.controller.start(plan.id)
        assert self.pipeline.updates.get(deployed.id).status == StrategyUpdateStatus.DEPLOYING

        history = self.gate.history(limit=1)

        assert history["stats"]["approved"] == 1
        assert history["stats"]["rejected"] == 1
        assert history["stats"]["total"] == 2
        assert len(history["data"]) == 1
        assert history["pagination"]["has_more"] is True
        assert [u.id for u in self.gate.history(reviewer="alice")["data"]] == [deployed.id]
