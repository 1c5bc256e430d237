"""
Strategy Rollout API: FastAPI endpoints.

Exposes the pipeline for:
- Strategy update intake and the review queue
- Approval decisions
- Rollout phase control (start / advance / complete / rollback)
- Rollbacks by deployment or strategy update
- Deployment and rollback reporting, ledger verification
- Scheduler control
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from strategy_rollout.approval.intake import StrategyUpdateProposal, propose
from strategy_rollout.config import PipelineConfig, SchedulerConfig, configure_logging
from strategy_rollout.distribution.channel import DistributionChannel
from strategy_rollout.errors import InvalidArgument, RolloutError
from strategy_rollout.models.deployment import DeploymentStatus
from strategy_rollout.models.outcome import RollbackOutcome
from strategy_rollout.models.strategy_update import RiskLevel, StrategyUpdateStatus
from strategy_rollout.pipeline import RolloutPipeline
from strategy_rollout.rollout.rollback import DeploymentTarget, StrategyUpdateTarget
from strategy_rollout.rollout.scheduler import MetricsSource
from strategy_rollout.store.database import Database


# --- Request/Response Models ---

class ReviewRequest(BaseModel):
    strategy_update_id: str
    decision: str                           # "approved" | "rejected"
    review_notes: str = ""
    reviewer: str = "admin"


class RolloutActionRequest(BaseModel):
    reason: Optional[str] = None
    emergency: bool = False


class ParticipantsRequest(BaseModel):
    total: int = Field(ge=0)
    successes: int = Field(ge=0, default=0)
    failures: int = Field(ge=0, default=0)


class RollbackRequest(BaseModel):
    deployment_id: Optional[str] = None
    strategy_update_id: Optional[str] = None
    reason: Optional[str] = None
    emergency: bool = False


def _dump_outcome(outcome) -> dict:
    data = outcome.model_dump(mode="json")
    if isinstance(outcome, RollbackOutcome):
        data["completed_actions"] = outcome.completed_actions
    else:
        data["warnings"] = outcome.warnings
    return data


# --- Application Factory ---

def create_app(
    database: Optional[Database] = None,
    config: Optional[PipelineConfig] = None,
    channel: Optional[DistributionChannel] = None,
    metrics_source: Optional[MetricsSource] = None,
    scheduler_config: Optional[SchedulerConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    config = config or PipelineConfig()
    configure_logging(config.log_level)

    app = FastAPI(
        title="Strategy Rollout API",
        description="Approval, staged rollout and rollback of optimization strategies",
        version="0.1.0",
    )

    pipeline = RolloutPipeline(
        database=database,
        config=config,
        channel=channel,
        metrics_source=metrics_source,
        scheduler_config=scheduler_config,
    )
    app.state.pipeline = pipeline

    @app.exception_handler(RolloutError)
    def handle_rollout_error(request: Request, exc: RolloutError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # === STRATEGY UPDATES ===

    @app.post("/strategy-updates")
    def create_strategy_update(req: StrategyUpdateProposal):
        """File a strategy update for review."""
        update = propose(pipeline.updates, req)
        return {"success": True, "data": update.model_dump(mode="json")}

    @app.get("/strategy-updates/pending")
    def list_pending(
        risk_level: Optional[RiskLevel] = None,
        app_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ):
        """Updates awaiting human review."""
        pending = pipeline.gate.pending(risk_level=risk_level, app_id=app_id, limit=limit, offset=offset)
        return {
            "success": True,
            "data": [u.model_dump(mode="json") for u in pending],
            "pagination": {"limit": limit, "offset": offset, "has_more": len(pending) == limit},
        }

    @app.get("/strategy-updates")
    def list_by_status(status: StrategyUpdateStatus):
        return [u.model_dump(mode="json") for u in pipeline.updates.list_by_status(status)]

    @app.get("/strategy-updates/{strategy_update_id}")
    def get_strategy_update(strategy_update_id: str):
        return pipeline.updates.get(strategy_update_id).model_dump(mode="json")

    # === APPROVAL ===

    @app.post("/approval/review")
    def review_strategy_update(req: ReviewRequest):
        """Approve or reject a pending strategy update."""
        outcome = pipeline.gate.review(
            req.strategy_update_id, req.decision, notes=req.review_notes, reviewer=req.reviewer
        )
        decision = outcome.strategy_update.status.value
        return {
            "success": True,
            "data": outcome.strategy_update.model_dump(mode="json"),
            "rollout_plan": outcome.rollout_plan.model_dump(mode="json") if outcome.rollout_plan else None,
            "distribution": outcome.distribution.model_dump(mode="json") if outcome.distribution else None,
            "warnings": outcome.warnings,
            "message": f"Strategy update {decision} successfully",
        }

    @app.get("/approval/reviews")
    def review_history(reviewer: Optional[str] = None, limit: int = 20, offset: int = 0):
        """Review history and statistics."""
        history = pipeline.gate.history(reviewer=reviewer, limit=limit, offset=offset)
        history["data"] = [u.model_dump(mode="json") for u in history["data"]]
        return {"success": True, **history}

    # === ROLLOUTS ===

    @app.get("/rollouts/{plan_id}")
    def get_rollout(plan_id: str):
        return pipeline.plans.get(plan_id).model_dump(mode="json")

    @app.post("/rollouts/{plan_id}/participants")
    def record_participants(plan_id: str, req: ParticipantsRequest):
        plan = pipeline.controller.record_participants(
            plan_id, req.total, successes=req.successes, failures=req.failures
        )
        return plan.model_dump(mode="json")

    @app.post("/rollouts/{plan_id}/{action}")
    def apply_rollout_action(plan_id: str, action: str, req: Optional[RolloutActionRequest] = None):
        """start | advance | complete | rollback"""
        req = req or RolloutActionRequest()
        outcome = pipeline.controller.apply(plan_id, action, reason=req.reason, emergency=req.emergency)
        return {"success": True, "data": _dump_outcome(outcome)}

    # === ROLLBACKS ===

    @app.post("/rollbacks")
    def rollback(req: RollbackRequest):
        """Planned or emergency rollback of a deployed strategy."""
        if req.deployment_id:
            target = DeploymentTarget(deployment_id=req.deployment_id)
        elif req.strategy_update_id:
            target = StrategyUpdateTarget(strategy_update_id=req.strategy_update_id)
        else:
            raise InvalidArgument("Either deployment_id or strategy_update_id is required")
        outcome = pipeline.rollbacks.rollback(target, reason=req.reason, emergency=req.emergency)
        kind = "Emergency" if req.emergency else "Planned"
        return {
            "success": True,
            "data": _dump_outcome(outcome),
            "message": f"{kind} rollback completed",
        }

    @app.get("/rollbacks")
    def list_rollbacks(
        app_id: Optional[str] = None,
        emergency: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
    ):
        page = pipeline.reports.list_rollbacks(app_id=app_id, emergency=emergency, limit=limit, offset=offset)
        return {"success": True, **page.model_dump(mode="json")}

    # === DEPLOYMENTS / LEDGER ===

    @app.get("/deployments")
    def list_deployments(
        status: Optional[DeploymentStatus] = None,
        app_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ):
        page = pipeline.reports.list_deployments(status=status, app_id=app_id, limit=limit, offset=offset)
        return {"success": True, **page.model_dump(mode="json")}

    @app.get("/deployments/history/{strategy_update_id}")
    def deployment_history(strategy_update_id: str):
        pipeline.updates.get(strategy_update_id)
        return [r.model_dump(mode="json") for r in pipeline.ledger.history(strategy_update_id)]

    @app.get("/ledger/verify")
    def verify_ledger():
        """Verify chain integrity."""
        return {
            "integrity_valid": pipeline.ledger.verify_chain_integrity(),
            "total_records": pipeline.ledger.count(),
        }

    # === SCHEDULER ===

    @app.get("/scheduler/status")
    def scheduler_status():
        return {
            "status": pipeline.scheduler.status,
            "config": pipeline.scheduler.config.model_dump(),
            "running_plans": len(pipeline.plans.list_running()),
        }

    @app.post("/scheduler/tick")
    def scheduler_tick():
        """Force one scheduler pass."""
        results = pipeline.scheduler.tick()
        return {"results": results, "plan_count": len(results)}

    return app


# Default application instance
app = create_app(config=PipelineConfig.from_env())
