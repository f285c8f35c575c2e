"""SQLite state management for workflow definitions, runs and steps.

Every piece of run state lives in the database; workers hold nothing in
memory between steps. The ``steps`` table doubles as the durable work queue:
pending rows are claimed with guarded updates, scheduled rows are timers.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from layerflow.core.graph_schema import (
    DefinitionStatus,
    RunStatus,
    StepOutcome,
    StepState,
    WorkflowDefinition,
    WorkflowGraph,
)

T = TypeVar("T")


class EventType(str, Enum):
    """Types of events in the run event log."""

    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"

    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SCHEDULED = "step_scheduled"  # Delay handed to the timer subsystem
    STEP_RETRY_SCHEDULED = "step_retry_scheduled"
    STEP_DEDUPLICATED = "step_deduplicated"  # Completed from a recorded side effect

    MERGE_FIRED = "merge_fired"
    MERGE_ARRIVAL_DROPPED = "merge_arrival_dropped"
    LOOP_COMPLETED = "loop_completed"

    # Actionable alert for the org owning the run
    BUDGET_EXCEEDED = "budget_exceeded"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC ISO string so lexical order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and Pydantic models.

    Behavior outputs and event payloads are arbitrary user data, so they may
    contain values the stock encoder rejects.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, set | frozenset):
            return sorted(obj)
        return super().default(obj)


def safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


def _loads(value: str | None, default: Any = None) -> Any:
    return json.loads(value) if value else default


class RunEvent(BaseModel):
    """Immutable entry in a run's event log."""

    id: int | None = None
    run_id: str
    event_type: EventType
    step_id: str | None = None
    node_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


class Run(BaseModel):
    """One execution instance of a workflow definition."""

    id: str
    definition_id: str
    org_id: str
    status: RunStatus
    trigger_node_id: str
    event_kind: str
    context: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None


class Step(BaseModel):
    """A step instance: one scheduled execution of one node in one run."""

    id: str
    run_id: str
    node_id: str
    scope: str = ""  # Fan-out branch index, "" for the root branch
    state: StepState
    outcome: StepOutcome | None = None
    attempt: int = 1
    due_at: datetime | None = None
    claimed_at: datetime | None = None
    overlay: dict[str, Any] = Field(default_factory=dict)  # Loop variables for item branches
    output: Any = None
    error: str | None = None
    fired_handles: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class Database:
    """SQLite database holding all durable workflow state."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS definitions (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'draft',
        version INTEGER NOT NULL DEFAULT 1,
        graph JSON NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        activated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        definition_id TEXT NOT NULL REFERENCES definitions(id),
        org_id TEXT NOT NULL,
        status TEXT NOT NULL,
        trigger_node_id TEXT NOT NULL,
        event_kind TEXT NOT NULL,
        context JSON NOT NULL,
        error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        finished_at TEXT
    );

    -- Flat step table: the durable queue and the timer store
    CREATE TABLE IF NOT EXISTS steps (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        node_id TEXT NOT NULL,
        scope TEXT NOT NULL DEFAULT '',
        state TEXT NOT NULL,
        outcome TEXT,
        attempt INTEGER NOT NULL DEFAULT 1,
        due_at TEXT,
        claimed_at TEXT,
        overlay JSON,
        output JSON,
        error TEXT,
        fired_handles JSON,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(run_id, node_id, scope)
    );

    -- Dispatcher dedup: one run per (definition, event idempotency key)
    CREATE TABLE IF NOT EXISTS event_receipts (
        definition_id TEXT NOT NULL,
        idempotency_key TEXT NOT NULL,
        run_id TEXT NOT NULL,
        event_kind TEXT NOT NULL,
        received_at TEXT NOT NULL,
        PRIMARY KEY (definition_id, idempotency_key)
    );

    -- Behaviors that already reported success, keyed by step identity
    CREATE TABLE IF NOT EXISTS side_effects (
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        node_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        output JSON,
        recorded_at TEXT NOT NULL,
        PRIMARY KEY (run_id, node_id, scope)
    );

    CREATE TABLE IF NOT EXISTS merge_wait_sets (
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        node_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        arrivals JSON NOT NULL,
        fired INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (run_id, node_id, scope)
    );

    CREATE TABLE IF NOT EXISTS loop_cursors (
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        node_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        array_ref TEXT NOT NULL,
        idx INTEGER NOT NULL DEFAULT 0,
        total INTEGER NOT NULL,
        max_iterations INTEGER NOT NULL,
        finished JSON NOT NULL,
        completed INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (run_id, node_id, scope)
    );

    -- Recurring cron triggers
    CREATE TABLE IF NOT EXISTS schedules (
        definition_id TEXT NOT NULL REFERENCES definitions(id),
        node_id TEXT NOT NULL,
        cron_expression TEXT NOT NULL,
        timezone TEXT NOT NULL,
        next_fire_at TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (definition_id, node_id)
    );

    CREATE TABLE IF NOT EXISTS credit_balances (
        org_id TEXT PRIMARY KEY,
        daily_total INTEGER NOT NULL DEFAULT 0,
        daily_used INTEGER NOT NULL DEFAULT 0,
        daily_period TEXT,
        monthly_total INTEGER NOT NULL DEFAULT 0,
        monthly_used INTEGER NOT NULL DEFAULT 0,
        monthly_period TEXT,
        purchased INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS credit_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        org_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        kind TEXT NOT NULL,
        reference TEXT,
        breakdown JSON,
        balance_after INTEGER,
        created_at TEXT NOT NULL,
        UNIQUE(org_id, reference)
    );

    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        event_type TEXT NOT NULL,
        step_id TEXT,
        node_id TEXT,
        payload JSON,
        timestamp TEXT NOT NULL
    );

    -- Business objects read and mutated by behaviors
    CREATE TABLE IF NOT EXISTS records (
        id TEXT PRIMARY KEY,
        collection TEXT NOT NULL,
        key TEXT,
        data JSON NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(collection, key)
    );

    CREATE INDEX IF NOT EXISTS idx_steps_state_due ON steps(state, due_at);
    CREATE INDEX IF NOT EXISTS idx_steps_run_state ON steps(run_id, state);
    CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status, updated_at);
    CREATE INDEX IF NOT EXISTS idx_definitions_status ON definitions(status);
    CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id, id);
    CREATE INDEX IF NOT EXISTS idx_schedules_due ON schedules(enabled, next_fire_at);
    CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection);
    """

    def __init__(self, db_path: str | Path = ".layerflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            # WAL allows readers and writers to operate simultaneously without blocking
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        # Enable foreign key enforcement so run deletion cascades
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def run_in_transaction(self, func: Callable[..., T], *args: Any) -> T:
        """Execute ``func(conn, *args)`` inside a BEGIN IMMEDIATE transaction.

        IMMEDIATE takes the write lock up front, so read-then-write sequences
        (claims, merge arrivals, ledger debits) cannot interleave between
        workers.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = func(conn, *args)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    # --- Event log ---

    def append_event(self, conn: sqlite3.Connection, event: RunEvent) -> int:
        """Append an event inside the caller's transaction."""
        cursor = conn.execute(
            """
            INSERT INTO events (run_id, event_type, step_id, node_id, payload, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                event.run_id,
                event.event_type.value,
                event.step_id,
                event.node_id,
                safe_json_dumps(event.payload),
                to_db_time(event.timestamp),
            ),
        )
        return cursor.lastrowid  # type: ignore

    def get_events(self, run_id: str, event_types: list[EventType] | None = None) -> list[RunEvent]:
        """Get events for a run, optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE run_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [run_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE run_id = ? ORDER BY id", (run_id,)
                ).fetchall()
            return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> RunEvent:
        return RunEvent(
            id=row["id"],
            run_id=row["run_id"],
            event_type=EventType(row["event_type"]),
            step_id=row["step_id"],
            node_id=row["node_id"],
            payload=_loads(row["payload"], {}),
            timestamp=from_db_time(row["timestamp"]),
        )

    # --- Definitions ---

    def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM definitions WHERE id = ?", (definition_id,)
            ).fetchone()
            return self.row_to_definition(row) if row else None

    def list_definitions(self, status: DefinitionStatus | None = None) -> list[WorkflowDefinition]:
        with self._connect() as conn:
            if status is not None:
                rows = conn.execute(
                    "SELECT * FROM definitions WHERE status = ? ORDER BY created_at",
                    (status.value,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM definitions ORDER BY created_at").fetchall()
            return [self.row_to_definition(row) for row in rows]

    @staticmethod
    def row_to_definition(row: sqlite3.Row) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=row["id"],
            org_id=row["org_id"],
            name=row["name"],
            description=row["description"],
            status=DefinitionStatus(row["status"]),
            version=row["version"],
            graph=WorkflowGraph.model_validate_json(row["graph"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            activated_at=from_db_time(row["activated_at"]),
        )

    # --- Runs and steps ---

    def get_run(self, run_id: str) -> Run | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
            return self.row_to_run(row) if row else None

    def list_runs(
        self, definition_id: str | None = None, status: RunStatus | None = None
    ) -> list[Run]:
        clauses, params = [], []
        if definition_id:
            clauses.append("definition_id = ?")
            params.append(definition_id)
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM runs {where} ORDER BY created_at", params
            ).fetchall()
            return [self.row_to_run(row) for row in rows]

    @staticmethod
    def row_to_run(row: sqlite3.Row) -> Run:
        return Run(
            id=row["id"],
            definition_id=row["definition_id"],
            org_id=row["org_id"],
            status=RunStatus(row["status"]),
            trigger_node_id=row["trigger_node_id"],
            event_kind=row["event_kind"],
            context=_loads(row["context"], {}),
            error=row["error"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            finished_at=from_db_time(row["finished_at"]),
        )

    def get_step(self, step_id: str) -> Step | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM steps WHERE id = ?", (step_id,)).fetchone()
            return self.row_to_step(row) if row else None

    def get_steps(self, run_id: str, node_id: str | None = None) -> list[Step]:
        """All steps of a run in creation order, optionally for one node."""
        with self._connect() as conn:
            if node_id is not None:
                rows = conn.execute(
                    "SELECT * FROM steps WHERE run_id = ? AND node_id = ? ORDER BY created_at, rowid",
                    (run_id, node_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM steps WHERE run_id = ? ORDER BY created_at, rowid", (run_id,)
                ).fetchall()
            return [self.row_to_step(row) for row in rows]

    @staticmethod
    def row_to_step(row: sqlite3.Row) -> Step:
        return Step(
            id=row["id"],
            run_id=row["run_id"],
            node_id=row["node_id"],
            scope=row["scope"],
            state=StepState(row["state"]),
            outcome=StepOutcome(row["outcome"]) if row["outcome"] else None,
            attempt=row["attempt"],
            due_at=from_db_time(row["due_at"]),
            claimed_at=from_db_time(row["claimed_at"]),
            overlay=_loads(row["overlay"], {}),
            output=_loads(row["output"]),
            error=row["error"],
            fired_handles=_loads(row["fired_handles"], []),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    def purge_finished_runs(self, finished_before: datetime) -> int:
        """Delete terminal runs finished before the cutoff.

        Steps, wait sets, loop cursors, side-effect records and events cascade
        through their foreign keys. Returns the number of runs removed.
        """
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id FROM runs
                WHERE status IN ('completed', 'failed', 'cancelled')
                  AND finished_at IS NOT NULL AND finished_at < ?
                """,
                (to_db_time(finished_before),),
            ).fetchall()
            run_ids = [row["id"] for row in rows]
            for run_id in run_ids:
                conn.execute("DELETE FROM runs WHERE id = ?", (run_id,))
            return len(run_ids)
