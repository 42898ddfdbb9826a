"""
history.py - DuckDB-backed Metrics & History Store.

This module keeps the process-wide, append-only record of finished
workflows:
- Workflow outcomes (status, performance metrics, full JSON snapshot)
- Per-step final statuses by environment
- Decisions recorded at adaptation checkpoints
- Evolution generations

Design Philosophy:
    - Entries are immutable snapshots written once, when a workflow reaches
      a terminal state (or is cancelled, as a partial outcome)
    - One workflow's rows are written inside a single transaction under the
      store lock, so concurrent appends never interleave
    - ``aggregate()`` feeds read-only running averages to the Plan Builder

Usage:
    from conductor.runtime.history import HistoryStore

    store = HistoryStore()              # in-memory
    store = HistoryStore(Path("history.duckdb"))
    store.record(outcome)

    recent = store.query_recent(limit=10)
    summary = store.aggregate()
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import duckdb

from .errors import DuplicateOutcomeError, HistoryError
from .types import (
    HistorySummary,
    WorkflowOutcome,
    workflow_outcome_from_dict,
    workflow_outcome_to_dict,
)
from .types._time import _datetime_to_iso

logger = logging.getLogger(__name__)

# =============================================================================
# Schema
# =============================================================================

SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS workflows (
    seq BIGINT PRIMARY KEY,
    workflow_id VARCHAR NOT NULL UNIQUE,
    goal VARCHAR,
    mode VARCHAR,
    status VARCHAR NOT NULL,
    started_at VARCHAR,
    completed_at VARCHAR,
    duration_ms BIGINT,
    success_rate DOUBLE,
    adaptations INTEGER,
    evolution_generations INTEGER,
    confidence_mean DOUBLE,
    errors_detected INTEGER,
    recovery_attempts INTEGER,
    payload VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS step_results (
    workflow_id VARCHAR NOT NULL,
    step_id VARCHAR NOT NULL,
    environment VARCHAR NOT NULL,
    status VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS decisions (
    workflow_id VARCHAR NOT NULL,
    idx INTEGER NOT NULL,
    checkpoint_step_id VARCHAR,
    confidence DOUBLE,
    risk VARCHAR,
    strategy VARCHAR,
    triggered BOOLEAN,
    applied VARCHAR
);

CREATE TABLE IF NOT EXISTS generations (
    workflow_id VARCHAR NOT NULL,
    idx INTEGER NOT NULL,
    accepted BOOLEAN,
    error VARCHAR,
    code_quality DOUBLE,
    user_satisfaction DOUBLE,
    market_alignment DOUBLE,
    autonomy_level DOUBLE
);
"""


class HistoryStore:
    """Thread-safe, append-only DuckDB store of workflow outcomes.

    Attributes:
        db_path: Path to the DuckDB database file (None for in-memory).
    """

    def __init__(self, db_path: Optional[Union[Path, str]] = None):
        """Initialize the store.

        Args:
            db_path: Path to the DuckDB file. If None, uses an in-memory database.
        """
        self.db_path = Path(db_path) if db_path else None
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._next_seq = 1

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection (schema created on first use)."""
        if self._connection is None:
            with self._lock:
                if self._connection is None:
                    if self.db_path:
                        self.db_path.parent.mkdir(parents=True, exist_ok=True)
                        conn = duckdb.connect(str(self.db_path))
                    else:
                        conn = duckdb.connect(":memory:")
                    self._init_schema(conn)
                    self._connection = conn
        return self._connection

    def _init_schema(self, conn: duckdb.DuckDBPyConnection) -> None:
        conn.execute(CREATE_TABLES_SQL)
        row = conn.execute(
            "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
        ).fetchone()
        if row is None:
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", [SCHEMA_VERSION])
        elif row[0] != SCHEMA_VERSION:
            raise HistoryError(
                f"History schema version {row[0]} does not match expected {SCHEMA_VERSION}"
            )
        max_seq = conn.execute("SELECT COALESCE(MAX(seq), 0) FROM workflows").fetchone()[0]
        self._next_seq = int(max_seq) + 1
        logger.debug("HistoryStore schema initialized (schema_version=%d)", SCHEMA_VERSION)

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run a block atomically under the store lock."""
        with self._lock:
            conn = self.connection
            conn.begin()
            try:
                yield conn
            except Exception as e:
                conn.rollback()
                logger.warning("History transaction rolled back: %s", e)
                raise
            else:
                conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            with self._lock:
                self._connection.close()
                self._connection = None

    # =========================================================================
    # Append
    # =========================================================================

    def record(self, outcome: WorkflowOutcome) -> int:
        """Append one workflow outcome atomically.

        Args:
            outcome: Immutable outcome snapshot.

        Returns:
            The sequence number assigned to the entry.

        Raises:
            DuplicateOutcomeError: If the workflow was already recorded.
        """
        payload = json.dumps(workflow_outcome_to_dict(outcome), sort_keys=True, default=str)
        metrics = outcome.metrics

        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM workflows WHERE workflow_id = ?", [outcome.workflow_id]
            ).fetchone()
            if exists:
                raise DuplicateOutcomeError(outcome.workflow_id)

            seq = self._next_seq
            conn.execute(
                """
                INSERT INTO workflows (
                    seq, workflow_id, goal, mode, status, started_at, completed_at,
                    duration_ms, success_rate, adaptations, evolution_generations,
                    confidence_mean, errors_detected, recovery_attempts, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    seq,
                    outcome.workflow_id,
                    outcome.goal,
                    outcome.mode,
                    outcome.status.value,
                    _datetime_to_iso(outcome.started_at),
                    _datetime_to_iso(outcome.completed_at),
                    metrics.duration_ms,
                    metrics.success_rate,
                    metrics.adaptations,
                    metrics.evolution_generations,
                    metrics.confidence_mean,
                    metrics.errors_detected,
                    metrics.recovery_attempts,
                    payload,
                ],
            )
            if outcome.step_statuses:
                conn.executemany(
                    "INSERT INTO step_results VALUES (?, ?, ?, ?)",
                    [[outcome.workflow_id, sid, env, status] for sid, env, status in outcome.step_statuses],
                )
            if outcome.decisions:
                conn.executemany(
                    "INSERT INTO decisions VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        [
                            outcome.workflow_id,
                            idx,
                            d.get("checkpoint_step_id"),
                            d.get("confidence"),
                            d.get("risk"),
                            d.get("strategy"),
                            d.get("triggered"),
                            d.get("applied"),
                        ]
                        for idx, d in enumerate(outcome.decisions)
                    ],
                )
            if outcome.generations:
                conn.executemany(
                    "INSERT INTO generations VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    [_generation_row(outcome.workflow_id, g) for g in outcome.generations],
                )
            self._next_seq = seq + 1

        logger.info(
            "Recorded workflow %s (%s) as history entry %d",
            outcome.workflow_id,
            outcome.status.value,
            seq,
        )
        return seq

    # =========================================================================
    # Queries
    # =========================================================================

    def query_recent(self, limit: int = 20) -> List[WorkflowOutcome]:
        """Most recent outcomes, newest first."""
        with self._lock:
            rows = self.connection.execute(
                "SELECT payload FROM workflows ORDER BY seq DESC LIMIT ?", [max(limit, 0)]
            ).fetchall()
        return [workflow_outcome_from_dict(json.loads(row[0])) for row in rows]

    def count(self) -> int:
        with self._lock:
            return int(self.connection.execute("SELECT COUNT(*) FROM workflows").fetchone()[0])

    def aggregate(self) -> HistorySummary:
        """Running averages over every recorded workflow."""
        with self._lock:
            conn = self.connection
            row = conn.execute(
                """
                SELECT
                    COUNT(*),
                    AVG(success_rate),
                    AVG(CASE WHEN status = 'completed' THEN 1.0 ELSE 0.0 END),
                    AVG(confidence_mean),
                    AVG(adaptations),
                    AVG(duration_ms)
                FROM workflows
                """
            ).fetchone()
            env_rows = conn.execute(
                """
                SELECT
                    environment,
                    COUNT(*),
                    AVG(CASE WHEN status = 'succeeded' THEN 1.0 ELSE 0.0 END)
                FROM step_results
                GROUP BY environment
                ORDER BY environment
                """
            ).fetchall()

        workflows = int(row[0] or 0)
        if workflows == 0:
            return HistorySummary()
        return HistorySummary(
            workflows=workflows,
            success_rate=float(row[1] or 0.0),
            completed_ratio=float(row[2] or 0.0),
            confidence_mean=float(row[3]) if row[3] is not None else None,
            adaptations_per_workflow=float(row[4] or 0.0),
            duration_ms_mean=float(row[5] or 0.0),
            environment_success={r[0]: float(r[2]) for r in env_rows},
            environment_samples={r[0]: int(r[1]) for r in env_rows},
        )

    def decision_rows(self, workflow_id: str) -> List[Dict[str, Any]]:
        """Decision rows recorded for a workflow, in checkpoint order."""
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT idx, checkpoint_step_id, confidence, risk, strategy, triggered, applied
                FROM decisions WHERE workflow_id = ? ORDER BY idx
                """,
                [workflow_id],
            ).fetchall()
        keys = ("idx", "checkpoint_step_id", "confidence", "risk", "strategy", "triggered", "applied")
        return [dict(zip(keys, r)) for r in rows]


def _generation_row(workflow_id: str, generation: Dict[str, Any]) -> List[Any]:
    metrics = generation.get("metrics") or {}
    return [
        workflow_id,
        generation.get("index"),
        generation.get("accepted"),
        generation.get("error"),
        metrics.get("code_quality"),
        metrics.get("user_satisfaction"),
        metrics.get("market_alignment"),
        metrics.get("autonomy_level"),
    ]
