"""Read-only rollout reports: deployment and rollback listings with aggregate stats."""

from collections import Counter
from typing import Optional

from strategy_rollout.ledger.store import DeploymentLedger
from strategy_rollout.models.deployment import DeploymentKind, DeploymentStatus
from strategy_rollout.models.outcome import DeploymentPage, Pagination, RollbackPage
from strategy_rollout.store.rollout_plans import RolloutPlanStore

TOP_REASONS = 10


class RolloutReports:

    def __init__(self, ledger: DeploymentLedger, plans: RolloutPlanStore):
        self.ledger = ledger
        self.plans = plans

    def list_deployments(
        self,
        status: Optional[DeploymentStatus] = None,
        app_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> DeploymentPage:
        """Page of deployment records plus plan-level stats (counts by status, users, average phase)."""
        records = self.ledger.query(status=status, app_id=app_id, limit=limit, offset=offset)
        plans = self.plans.list(app_id=app_id)
        by_status = Counter(p.status.value for p in plans)
        stats = {
            "total": len(records),
            "by_status": dict(by_status),
            "total_users": sum(p.success_count for p in plans),
            "average_phase": (
                sum(p.current_phase for p in plans) / len(plans) if plans else 0.0
            ),
        }
        return DeploymentPage(
            data=records,
            stats=stats,
            pagination=Pagination(limit=limit, offset=offset, has_more=len(records) == limit),
        )

    def list_rollbacks(
        self,
        app_id: Optional[str] = None,
        emergency: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> RollbackPage:
        """Page of rollback records plus frequency-ranked rollback reasons."""
        records = self.ledger.query(
            status=DeploymentStatus.ROLLED_BACK,
            kind=DeploymentKind.ROLLBACK,
            app_id=app_id,
            emergency=emergency,
            limit=limit,
            offset=offset,
        )
        reasons = self.ledger.rollback_reasons(app_id=app_id)
        by_app = Counter(r["app_id"] for r in reasons if r["app_id"])
        stats = {
            "total": len(records),
            "emergency": sum(1 for r in reasons if r["emergency"]),
            "planned": sum(1 for r in reasons if not r["emergency"]),
            "by_app": dict(by_app),
            "common_reasons": top_rollback_reasons(reasons),
        }
        return RollbackPage(
            data=records,
            stats=stats,
            pagination=Pagination(limit=limit, offset=offset, has_more=len(records) == limit),
        )


def top_rollback_reasons(reasons, limit: int = TOP_REASONS):
    counts = Counter(r["reason"] or "Unknown" for r in reasons)
    # most_common keeps first-seen order among ties
    return [{"reason": reason, "count": count} for reason, count in counts.most_common(limit)]
