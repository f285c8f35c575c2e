"""Durable timers and cron schedules.

A pending delay is never held in memory: it is a ``steps`` row with
``state='scheduled'`` and a ``due_at``. A periodic sweep flips due rows back
to ``pending``, so waits survive process restarts. Cron triggers are rows in
``schedules`` that perform a fresh dispatch on every fire.

Time is read through an injected :class:`Clock` so tests can fast-forward.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from layerflow.core.graph_schema import (
    ScheduleConfig,
    StepState,
    WorkflowDefinition,
)
from layerflow.core.state import Database, from_db_time, to_db_time

if TYPE_CHECKING:
    from layerflow.core.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock:
    """Manually advanced clock for tests and simulations."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 1, 1, tzinfo=UTC)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        """Move time forward by ``delta`` or by timedelta keyword arguments."""
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("Clock cannot move backwards")
        with self._lock:
            self._now = self._now + step
            return self._now

    def set(self, moment: datetime) -> None:
        with self._lock:
            self._now = moment


class TimerService:
    """Schedules step wake-ups and fires recurring cron triggers."""

    def __init__(self, db: Database, clock: Clock):
        self.db = db
        self.clock = clock

    # ========== Step wake-ups ==========

    def schedule_wake(
        self, conn: sqlite3.Connection, step_id: str, due_at: datetime
    ) -> bool:
        """Park an executing step until ``due_at`` (inside the caller's transaction).

        Returns False if the step was no longer executing.
        """
        result = conn.execute(
            """
            UPDATE steps SET state = ?, due_at = ?, claimed_at = NULL, updated_at = ?
            WHERE id = ? AND state = ?
            """,
            (
                StepState.SCHEDULED.value,
                to_db_time(due_at),
                to_db_time(self.clock.now()),
                step_id,
                StepState.EXECUTING.value,
            ),
        )
        return result.rowcount > 0

    def poll_due(self, limit: int = 500) -> list[str]:
        """Re-enqueue every scheduled step whose due time has passed.

        Returns the ids of steps moved back to ``pending``.
        """
        now = to_db_time(self.clock.now())

        def release(conn: sqlite3.Connection) -> list[str]:
            rows = conn.execute(
                """
                SELECT id FROM steps
                WHERE state = ? AND due_at <= ?
                ORDER BY due_at LIMIT ?
                """,
                (StepState.SCHEDULED.value, now, limit),
            ).fetchall()
            released = []
            for row in rows:
                # Guarded update: another sweeper may have released it already
                result = conn.execute(
                    "UPDATE steps SET state = ?, updated_at = ? WHERE id = ? AND state = ?",
                    (StepState.PENDING.value, now, row["id"], StepState.SCHEDULED.value),
                )
                if result.rowcount > 0:
                    released.append(row["id"])
            if released:
                # Waiting runs become running again
                conn.execute(
                    f"""
                    UPDATE runs SET status = 'running', updated_at = ?
                    WHERE status = 'waiting' AND id IN (
                        SELECT run_id FROM steps WHERE id IN ({",".join("?" * len(released))})
                    )
                    """,
                    [now, *released],
                )
            return released

        released = self.db.run_in_transaction(release)
        if released:
            logger.info(f"Released {len(released)} due step(s)")
        return released

    # ========== Cron schedules ==========

    def sync_schedules(self, conn: sqlite3.Connection, definition: WorkflowDefinition) -> int:
        """Register the cron triggers of an activated definition.

        Existing rows keep their next fire time if the expression is
        unchanged. Slots that passed while the definition was paused are
        skipped: the next fire is the first one after reactivation.
        """
        now = self.clock.now()
        count = 0
        for node in definition.graph.nodes:
            if not isinstance(node.config, ScheduleConfig):
                continue
            row = conn.execute(
                "SELECT * FROM schedules WHERE definition_id = ? AND node_id = ?",
                (definition.id, node.id),
            ).fetchone()
            if (
                row
                and row["cron_expression"] == node.config.cron_expression
                and row["timezone"] == node.config.timezone
            ):
                next_fire_at = from_db_time(row["next_fire_at"])
                if not row["enabled"] and next_fire_at <= now:
                    next_fire_at = node.config.next_fire_after(now)
                conn.execute(
                    """
                    UPDATE schedules SET enabled = 1, next_fire_at = ?
                    WHERE definition_id = ? AND node_id = ?
                    """,
                    (to_db_time(next_fire_at), definition.id, node.id),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO schedules (definition_id, node_id, cron_expression, timezone,
                                           next_fire_at, enabled)
                    VALUES (?, ?, ?, ?, ?, 1)
                    ON CONFLICT(definition_id, node_id) DO UPDATE SET
                        cron_expression = excluded.cron_expression,
                        timezone = excluded.timezone,
                        next_fire_at = excluded.next_fire_at,
                        enabled = 1
                    """,
                    (
                        definition.id,
                        node.id,
                        node.config.cron_expression,
                        node.config.timezone,
                        to_db_time(node.config.next_fire_after(now)),
                    ),
                )
            count += 1
        return count

    def disable_schedules(self, conn: sqlite3.Connection, definition_id: str) -> None:
        conn.execute("UPDATE schedules SET enabled = 0 WHERE definition_id = ?", (definition_id,))

    def fire_due_schedules(self, dispatcher: Dispatcher) -> list[str]:
        """Dispatch a run for every cron trigger whose fire time has passed.

        Each fire claims its row by advancing ``next_fire_at`` with a guarded
        update, so concurrent sweepers fire it once. Fires missed while no
        worker was running collapse into a single run.
        """
        now = self.clock.now()
        with self.db._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM schedules
                WHERE enabled = 1 AND next_fire_at <= ?
                ORDER BY next_fire_at
                """,
                (to_db_time(now),),
            ).fetchall()

        run_ids: list[str] = []
        for row in rows:
            fire_at = datetime.fromisoformat(row["next_fire_at"])
            config = ScheduleConfig(
                cron_expression=row["cron_expression"], timezone=row["timezone"]
            )
            following = config.next_fire_after(max(now, fire_at))

            def claim(conn: sqlite3.Connection) -> bool:
                result = conn.execute(
                    """
                    UPDATE schedules SET next_fire_at = ?
                    WHERE definition_id = ? AND node_id = ? AND next_fire_at = ? AND enabled = 1
                    """,
                    (to_db_time(following), row["definition_id"], row["node_id"], row["next_fire_at"]),
                )
                return result.rowcount > 0

            if not self.db.run_in_transaction(claim):
                continue

            result = dispatcher.dispatch(
                "schedule",
                {"scheduled_for": fire_at.isoformat(), "fired_at": now.isoformat()},
                idempotency_key=f"schedule:{row['node_id']}:{row['next_fire_at']}",
                definition_id=row["definition_id"],
                node_id=row["node_id"],
            )
            logger.info(
                f"Schedule {row['definition_id']}/{row['node_id']} fired for {fire_at.isoformat()}"
            )
            run_ids.extend(result.run_ids)
        return run_ids
