"""
Record store base: row <-> model mapping and the conditional-update primitive.

Behavioral Contract:
- update(id, expected_status, patch) is a single UPDATE ... WHERE id = ? AND
  status = ? statement. Zero affected rows means the caller lost a race
  (Conflict) or the row does not exist (NotFound).
- Extra compare-and-swap keys (e.g. current_phase) go in `expected`.
- A patch is validated against the model before it is written, so an
  invariant-breaking patch never reaches the table.
- Nothing is ever deleted.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError
from pydantic_core import to_jsonable_python

from strategy_rollout.errors import Conflict, InvalidArgument, NotFound
from strategy_rollout.store.database import Database

ModelT = TypeVar("ModelT", bound=BaseModel)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordStore(Generic[ModelT]):
    """Plain persistence for one pydantic model in one table."""

    table: str = ""
    model: Type[ModelT]
    json_fields: FrozenSet[str] = frozenset()
    immutable_fields: FrozenSet[str] = frozenset({"id", "created_at"})
    label: str = "record"

    def __init__(self, database: Database):
        self.db = database

    # --- Encoding ---

    @property
    def columns(self) -> List[str]:
        return list(self.model.model_fields)

    def _encode(self, field: str, value: Any) -> Any:
        value = to_jsonable_python(value)
        if field in self.json_fields:
            return json.dumps(value, sort_keys=True)
        if isinstance(value, bool):
            return int(value)
        return value

    def _decode(self, row) -> ModelT:
        data = dict(row)
        for field in self.json_fields:
            if data.get(field) is not None:
                data[field] = json.loads(data[field])
        return self.model.model_validate(data)

    # --- Reads ---

    def find(self, record_id: str) -> Optional[ModelT]:
        row = self.db.fetch_one(f"SELECT * FROM {self.table} WHERE id = ?", (record_id,))
        return self._decode(row) if row else None

    def get(self, record_id: str) -> ModelT:
        record = self.find(record_id)
        if record is None:
            raise NotFound(f"{self.label} {record_id} not found", id=record_id)
        return record

    def _select(
        self,
        where: Sequence[Tuple[str, Any]] = (),
        order_by: str = "created_at DESC, rowid DESC",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ModelT]:
        sql = f"SELECT * FROM {self.table}"
        params: List[Any] = []
        if where:
            sql += " WHERE " + " AND ".join(clause for clause, _ in where)
            for _, value in where:
                if isinstance(value, (list, tuple)):
                    params.extend(value)
                else:
                    params.append(value)
        sql += f" ORDER BY {order_by}"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        return [self._decode(r) for r in self.db.fetch_all(sql, params)]

    def list_by_status(self, status: str) -> List[ModelT]:
        return self._select([("status = ?", _value(status))])

    # --- Writes ---

    def create(self, record: ModelT) -> ModelT:
        """Insert a new record. Duplicate keys surface as Conflict."""
        data = record.model_dump()
        columns = self.columns
        self.db.write(
            f"INSERT INTO {self.table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            [self._encode(c, data[c]) for c in columns],
        )
        return record

    def update(
        self,
        record_id: str,
        expected_status: str,
        patch: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> ModelT:
        """
        Conditional update: applies `patch` only if the stored status still
        equals `expected_status` (and every column in `expected` still matches).
        """
        if not patch:
            raise InvalidArgument("empty patch")
        unknown = set(patch) - set(self.columns)
        if unknown:
            raise InvalidArgument(f"unknown fields: {sorted(unknown)}")
        frozen = set(patch) & self.immutable_fields
        if frozen:
            raise InvalidArgument(f"immutable fields cannot be patched: {sorted(frozen)}")

        current = self.get(record_id)
        if "status" in patch:
            self._check_transition(_value(expected_status), _value(patch["status"]))

        patch = dict(patch)
        patch.setdefault("updated_at", utcnow())
        try:
            merged = self.model.model_validate({**current.model_dump(), **patch})
        except ValidationError as e:
            raise InvalidArgument(f"patch violates {self.label} invariants: {e}") from e
        merged_data = merged.model_dump()

        assignments = ", ".join(f"{field} = ?" for field in patch)
        params = [self._encode(field, merged_data[field]) for field in patch]
        conditions = ["id = ?", "status = ?"]
        params.extend([record_id, _value(expected_status)])
        for field, value in (expected or {}).items():
            conditions.append(f"{field} = ?")
            params.append(self._encode(field, value))

        affected = self.db.write(
            f"UPDATE {self.table} SET {assignments} WHERE {' AND '.join(conditions)}",
            params,
        )
        if affected == 0:
            if self.find(record_id) is None:
                raise NotFound(f"{self.label} {record_id} not found", id=record_id)
            raise Conflict(
                f"{self.label} {record_id} is no longer in the expected state "
                f"(status={_value(expected_status)}, {expected or {}})",
                id=record_id,
            )
        return self.get(record_id)

    def _check_transition(self, from_status: str, to_status: str) -> None:
        """Subclasses reject transitions their lifecycle graph does not allow."""

    def count(self) -> int:
        row = self.db.fetch_one(f"SELECT COUNT(*) AS cnt FROM {self.table}")
        return row["cnt"]


def _value(status: Any) -> Any:
    """Enum members are stored by value."""
    return getattr(status, "value", status)
