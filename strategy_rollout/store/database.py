"""
Database handle: the single process-wide persistence connection.

Constructed once at process start and passed into every store. Nothing in
the pipeline looks a connection up globally.

Prototype: SQLite. Production: PostgreSQL (the conditional UPDATE ... WHERE
status = ? pattern carries over unchanged).
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Generator, List, Optional, Sequence

from strategy_rollout.errors import Conflict, DependencyFailure

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS strategy_updates (
        id TEXT PRIMARY KEY,
        app_id TEXT NOT NULL,
        strategy_type TEXT NOT NULL,
        update_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        version INTEGER NOT NULL,
        risk_level TEXT NOT NULL,
        confidence_score REAL NOT NULL,
        status TEXT NOT NULL,
        reviewed_by TEXT,
        reviewed_at TEXT,
        review_notes TEXT NOT NULL DEFAULT '',
        rollout_plan_id TEXT,
        rollout_status TEXT,
        sample_size INTEGER NOT NULL DEFAULT 0,
        statistical_significance INTEGER NOT NULL DEFAULT 0,
        estimated_impact TEXT NOT NULL DEFAULT '{}',
        safety_score REAL NOT NULL DEFAULT 0.5,
        potential_issues TEXT NOT NULL DEFAULT '[]',
        base_strategy_version TEXT NOT NULL DEFAULT '1.0.0',
        created_at TEXT NOT NULL,
        updated_at TEXT,
        UNIQUE (app_id, strategy_type, version)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_strategy_updates_status ON strategy_updates(status)",
    "CREATE INDEX IF NOT EXISTS idx_strategy_updates_app_id ON strategy_updates(app_id)",
    """
    CREATE TABLE IF NOT EXISTS rollout_plans (
        id TEXT PRIMARY KEY,
        strategy_update_id TEXT NOT NULL REFERENCES strategy_updates(id),
        name TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        phases TEXT NOT NULL,
        current_phase INTEGER NOT NULL DEFAULT 0,
        user_percentage REAL NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        phase_duration_hours REAL NOT NULL,
        phase_started_at TEXT,
        success_thresholds TEXT NOT NULL DEFAULT '{}',
        rollback_triggers TEXT NOT NULL DEFAULT '[]',
        conclusion TEXT,
        total_participants INTEGER NOT NULL DEFAULT 0,
        success_count INTEGER NOT NULL DEFAULT 0,
        failure_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_rollout_plans_status ON rollout_plans(status)",
    # At most one active plan per strategy update
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_rollout_plans_active
    ON rollout_plans(strategy_update_id)
    WHERE status IN ('not_started', 'running')
    """,
    """
    CREATE TABLE IF NOT EXISTS deployment_records (
        id TEXT PRIMARY KEY,
        strategy_update_id TEXT NOT NULL,
        rollout_plan_id TEXT,
        app_id TEXT,
        kind TEXT NOT NULL,
        deployment_type TEXT NOT NULL,
        status TEXT NOT NULL,
        target_percentage REAL NOT NULL,
        emergency INTEGER NOT NULL DEFAULT 0,
        rollback_reason TEXT,
        signature TEXT NOT NULL,
        prior_record_hash TEXT,
        record_json TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deployments_update ON deployment_records(strategy_update_id)",
    "CREATE INDEX IF NOT EXISTS idx_deployments_status ON deployment_records(status)",
    """
    CREATE TABLE IF NOT EXISTS deployment_logs (
        id TEXT PRIMARY KEY,
        deployment_id TEXT,
        strategy_update_id TEXT,
        app_id TEXT,
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        data TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
]


class Database:
    """
    Owns the SQLite connection.

    The connection object is shared by request handlers running on different
    threads, so each statement runs under a connection mutex. Correctness of
    concurrent transitions still comes from the conditional writes the stores
    issue, not from this mutex.
    """

    def __init__(self, path: str = ":memory:"):
        self.path = path
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
        except sqlite3.Error as e:
            raise DependencyFailure(f"cannot open database {path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.RLock()
        self._closed = False
        self._init_schema()

    def _init_schema(self) -> None:
        with self._mutex:
            for statement in SCHEMA:
                self._conn.execute(statement)
            self._conn.commit()

    @contextmanager
    def exclusive(self) -> Generator["Database", None, None]:
        """
        Hold the connection mutex across several statements.

        Usage:
            with db.exclusive():
                row = db.fetch_one(...)
                db.write(...)
        """
        with self._mutex:
            yield self

    def write(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one INSERT/UPDATE and commit. Returns the affected row count."""
        with self._mutex:
            try:
                cursor = self._conn.execute(sql, params)
                self._conn.commit()
                return cursor.rowcount
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise Conflict(f"integrity constraint violated: {e}") from e
            except sqlite3.Error as e:
                self._conn.rollback()
                logger.error("Database write failed: %s", e)
                raise DependencyFailure(f"database write failed: {e}") from e

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._mutex:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                logger.error("Database read failed: %s", e)
                raise DependencyFailure(f"database read failed: {e}") from e

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the database connection."""
        with self._mutex:
            if not self._closed:
                self._conn.close()
                self._closed = True

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
