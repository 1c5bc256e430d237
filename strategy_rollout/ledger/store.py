"""
Deployment Ledger: append-only, hash-chained audit trail of rollout transitions.

Every phase start, advance, completion and rollback produces one DeploymentRecord.

Behavioral Contract:
- Append-only. No record is ever modified or deleted; there is no API for it.
- Each record is hashed and chained to the previous record (tamper-evident).
- Ordering by insertion reconstructs the full rollout history of a strategy update.
- Pipeline writes go through try_append()/log_event(): a ledger failure is
  logged and reported, never raised into the operation that caused it.
"""

import hashlib
import json
import logging
from typing import List, Optional

from strategy_rollout.errors import NotFound, RolloutError
from strategy_rollout.models.deployment import (
    DeploymentKind,
    DeploymentLogEntry,
    DeploymentRecord,
    DeploymentStatus,
)
from strategy_rollout.models.outcome import SideEffectResult
from strategy_rollout.store.database import Database

logger = logging.getLogger(__name__)


def _sign(record: DeploymentRecord) -> str:
    record_dict = record.model_dump(mode="json")
    # Signature is what we're computing
    record_dict["signature"] = ""
    record_bytes = json.dumps(record_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(record_bytes).hexdigest()


class DeploymentLedger:
    """Append-only deployment record store sharing the pipeline's Database."""

    def __init__(self, database: Database):
        self.db = database

    def append(self, record: DeploymentRecord) -> DeploymentRecord:
        """
        Append a deployment record. Computes its hash and chains it to the
        previous record. Raises on storage failure.
        """
        # Chain read and insert must not interleave with another append
        with self.db.exclusive():
            record.prior_record_hash = self._get_latest_hash()
            record.signature = _sign(record)

            self.db.write(
                """
                INSERT INTO deployment_records (
                    id, strategy_update_id, rollout_plan_id, app_id, kind,
                    deployment_type, status, target_percentage, emergency,
                    rollback_reason, signature, prior_record_hash, record_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.strategy_update_id,
                    record.rollout_plan_id,
                    record.selection_criteria.app_id,
                    record.kind.value,
                    record.deployment_type.value,
                    record.status.value,
                    record.target_percentage,
                    int(record.emergency),
                    record.rollback_reason,
                    record.signature,
                    record.prior_record_hash,
                    record.model_dump_json(),
                    record.created_at.isoformat(),
                ),
            )
        return record

    def try_append(self, record: DeploymentRecord) -> SideEffectResult:
        """Best-effort append used by the rollout pipeline."""
        try:
            stored = self.append(record)
        except RolloutError as e:
            logger.error(
                "Failed to create deployment record %s: %s", record.id, e,
                extra={"strategy_update_id": record.strategy_update_id, "kind": record.kind.value},
            )
            return SideEffectResult.failure("deployment_record", e, record_id=record.id)
        return SideEffectResult.success(
            "deployment_record", record_id=stored.id, kind=stored.kind.value, signature=stored.signature
        )

    def _get_latest_hash(self) -> Optional[str]:
        """Get the signature of the most recent record."""
        row = self.db.fetch_one(
            "SELECT signature FROM deployment_records ORDER BY rowid DESC LIMIT 1"
        )
        return row["signature"] if row else None

    def _deserialize(self, row) -> DeploymentRecord:
        return DeploymentRecord.model_validate_json(row["record_json"])

    # --- Queries ---

    def find(self, record_id: str) -> Optional[DeploymentRecord]:
        row = self.db.fetch_one(
            "SELECT record_json FROM deployment_records WHERE id = ?", (record_id,)
        )
        return self._deserialize(row) if row else None

    def get(self, record_id: str) -> DeploymentRecord:
        record = self.find(record_id)
        if record is None:
            raise NotFound(f"deployment record {record_id} not found", id=record_id)
        return record

    def history(self, strategy_update_id: str) -> List[DeploymentRecord]:
        """Full rollout history of one strategy update, oldest first."""
        rows = self.db.fetch_all(
            "SELECT record_json FROM deployment_records WHERE strategy_update_id = ? ORDER BY rowid",
            (strategy_update_id,),
        )
        return [self._deserialize(r) for r in rows]

    def query(
        self,
        status: Optional[DeploymentStatus] = None,
        app_id: Optional[str] = None,
        kind: Optional[DeploymentKind] = None,
        emergency: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[DeploymentRecord]:
        """Filtered page of records, newest first."""
        clauses, params = self._filters(status, app_id, kind, emergency)
        sql = "SELECT record_json FROM deployment_records"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY rowid DESC LIMIT ? OFFSET ?"
        rows = self.db.fetch_all(sql, params + [limit, offset])
        return [self._deserialize(r) for r in rows]

    def rollback_reasons(self, app_id: Optional[str] = None) -> List[dict]:
        """(reason, app_id, emergency) for every rollback record."""
        clauses, params = self._filters(DeploymentStatus.ROLLED_BACK, app_id, None, None)
        rows = self.db.fetch_all(
            "SELECT rollback_reason, app_id, emergency FROM deployment_records WHERE "
            + " AND ".join(clauses),
            params,
        )
        return [
            {"reason": r["rollback_reason"], "app_id": r["app_id"], "emergency": bool(r["emergency"])}
            for r in rows
        ]

    @staticmethod
    def _filters(status, app_id, kind, emergency):
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(getattr(status, "value", status))
        if app_id:
            clauses.append("app_id = ?")
            params.append(app_id)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(getattr(kind, "value", kind))
        if emergency is not None:
            clauses.append("emergency = ?")
            params.append(int(emergency))
        return clauses, params

    def verify_chain_integrity(self) -> bool:
        """Verify no records have been tampered with."""
        rows = self.db.fetch_all(
            "SELECT record_json, signature FROM deployment_records ORDER BY rowid"
        )
        prior_sig = None
        for row in rows:
            record = self._deserialize(row)
            if record.signature != row["signature"] or _sign(record) != record.signature:
                return False
            if record.prior_record_hash != prior_sig:
                return False
            prior_sig = record.signature
        return True

    def count(self) -> int:
        """Total number of deployment records."""
        row = self.db.fetch_one("SELECT COUNT(*) AS cnt FROM deployment_records")
        return row["cnt"]

    # --- Structured deployment log ---

    def log_event(self, entry: DeploymentLogEntry) -> SideEffectResult:
        """Persist a structured log entry. Best-effort."""
        try:
            self.db.write(
                """
                INSERT INTO deployment_logs (
                    id, deployment_id, strategy_update_id, app_id, level, message, data, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.deployment_id,
                    entry.strategy_update_id,
                    entry.app_id,
                    entry.level.value,
                    entry.message,
                    json.dumps(entry.data, sort_keys=True, default=str),
                    entry.created_at.isoformat(),
                ),
            )
        except RolloutError as e:
            logger.error("Failed to persist deployment log %s: %s", entry.id, e)
            return SideEffectResult.failure("deployment_log", e, log_id=entry.id)
        return SideEffectResult.success("deployment_log", log_id=entry.id, level=entry.level.value)

    def logs(self, strategy_update_id: Optional[str] = None) -> List[DeploymentLogEntry]:
        if strategy_update_id:
            rows = self.db.fetch_all(
                "SELECT * FROM deployment_logs WHERE strategy_update_id = ? ORDER BY rowid",
                (strategy_update_id,),
            )
        else:
            rows = self.db.fetch_all("SELECT * FROM deployment_logs ORDER BY rowid")
        entries = []
        for row in rows:
            data = dict(row)
            data["data"] = json.loads(data["data"])
            entries.append(DeploymentLogEntry.model_validate(data))
        return entries
