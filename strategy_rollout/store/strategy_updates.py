"""
Strategy Update Store: persistent record of proposed strategy changes.

Written only through create() (upstream producers) and the conditional
update() (approval gate, rollout controller, rollback manager).
"""

from typing import Dict, List, Optional

from strategy_rollout.errors import InvalidState
from strategy_rollout.models.strategy_update import (
    IMMUTABLE_FIELDS,
    STRATEGY_UPDATE_TRANSITIONS,
    RiskLevel,
    StrategyUpdate,
    StrategyUpdateStatus,
)
from strategy_rollout.store.records import RecordStore, _value


class StrategyUpdateStore(RecordStore[StrategyUpdate]):
    table = "strategy_updates"
    model = StrategyUpdate
    json_fields = frozenset({"payload", "estimated_impact", "potential_issues"})
    immutable_fields = IMMUTABLE_FIELDS
    label = "strategy update"

    def _check_transition(self, from_status: str, to_status: str) -> None:
        allowed = STRATEGY_UPDATE_TRANSITIONS[StrategyUpdateStatus(from_status)]
        if StrategyUpdateStatus(to_status) not in allowed:
            raise InvalidState(
                f"strategy update cannot move from {from_status} to {to_status}",
                from_status=from_status,
                to_status=to_status,
            )

    def next_version(self, app_id: str, strategy_type: str) -> int:
        """Next monotonic version for an (app, strategy type) pair."""
        row = self.db.fetch_one(
            "SELECT MAX(version) AS v FROM strategy_updates WHERE app_id = ? AND strategy_type = ?",
            (app_id, strategy_type),
        )
        return (row["v"] or 0) + 1

    def list_pending(
        self,
        risk_level: Optional[RiskLevel] = None,
        app_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[StrategyUpdate]:
        """Updates awaiting human review, newest first."""
        where = [("status = ?", StrategyUpdateStatus.PENDING.value)]
        if risk_level:
            where.append(("risk_level = ?", _value(risk_level)))
        if app_id:
            where.append(("app_id = ?", app_id))
        return self._select(where, limit=limit, offset=offset)

    def list_reviewed(
        self,
        reviewer: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[StrategyUpdate]:
        """Every reviewed update, whatever it has moved on to since; most recent first."""
        where = [("reviewed_at IS NOT NULL", ())]
        if reviewer:
            where.append(("reviewed_by = ?", reviewer))
        return self._select(where, order_by="reviewed_at DESC, rowid DESC", limit=limit, offset=offset)

    def review_stats(self) -> Dict[str, object]:
        # Anything reviewed and not rejected was approved
        rows = self.db.fetch_all(
            "SELECT CASE WHEN status = ? THEN 'rejected' ELSE 'approved' END AS decision, "
            "risk_level, COUNT(*) AS cnt FROM strategy_updates "
            "WHERE reviewed_at IS NOT NULL GROUP BY decision, risk_level",
            (StrategyUpdateStatus.REJECTED.value,),
        )
        stats = {"approved": 0, "rejected": 0, "by_risk_level": {}}
        for row in rows:
            stats[row["decision"]] += row["cnt"]
            by_risk = stats["by_risk_level"]
            by_risk[row["risk_level"]] = by_risk.get(row["risk_level"], 0) + row["cnt"]
        stats["total"] = stats["approved"] + stats["rejected"]
        return stats
