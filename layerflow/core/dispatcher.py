"""Run dispatcher: turns trigger events into workflow runs.

Exactly one run is created per (definition, event idempotency key); a
redelivered event returns the run created the first time.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any

from pydantic import BaseModel, Field

from layerflow.core.coordinator import Coordinator
from layerflow.core.graph_schema import (
    TRIGGER_OUT,
    DefinitionStatus,
    RunStatus,
    TriggerConfig,
    WorkflowDefinition,
)
from layerflow.core.state import Database, EventType, RunEvent, safe_json_dumps, to_db_time
from layerflow.core.timers import Clock

logger = logging.getLogger(__name__)


class DispatchResult(BaseModel):
    """Runs matched by one event."""

    event_kind: str
    idempotency_key: str
    run_ids: list[str] = Field(default_factory=list)  # New and previously created runs
    created: list[str] = Field(default_factory=list)
    deduplicated: list[str] = Field(default_factory=list)

    @property
    def matched(self) -> bool:
        return bool(self.run_ids)


class Dispatcher:
    def __init__(self, db: Database, coordinator: Coordinator, clock: Clock):
        self.db = db
        self.coordinator = coordinator
        self.clock = clock

    def dispatch(
        self,
        event_kind: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
        *,
        definition_id: str | None = None,
        node_id: str | None = None,
    ) -> DispatchResult:
        """Start a run for every active definition whose trigger matches the event.

        Args:
            event_kind: External event name, e.g. ``formSubmitted``.
            payload: Event body, stored in the run context under the trigger node id.
            idempotency_key: Caller-supplied dedup key. Without one, every
                call is a distinct event.
            definition_id: Restrict matching to one definition (cron fires).
            node_id: Restrict matching to one trigger node (cron fires).
        """
        key = idempotency_key or f"auto:{uuid.uuid4()}"
        result = DispatchResult(event_kind=event_kind, idempotency_key=key)

        for definition in self.db.list_definitions(DefinitionStatus.ACTIVE):
            if definition_id is not None and definition.id != definition_id:
                continue
            for spec in definition.graph.triggers_for(event_kind):
                if node_id is not None and spec.node_id != node_id:
                    continue
                trigger = definition.graph.get_node(spec.node_id)
                if isinstance(trigger.config, TriggerConfig) and not trigger.config.matches(payload):
                    continue

                run_id, created = self.db.run_in_transaction(
                    self._start_run, definition, spec.node_id, event_kind, payload, key
                )
                result.run_ids.append(run_id)
                (result.created if created else result.deduplicated).append(run_id)
                if created:
                    logger.info(
                        f"Run {run_id} started for '{definition.name}' ({event_kind}, key {key})"
                    )
                else:
                    logger.info(f"Duplicate event {key} for '{definition.name}' -> run {run_id}")
                # One run per definition and event, even with several matching triggers
                break

        if not result.run_ids:
            logger.debug(f"No active definition matches event '{event_kind}'")
        return result

    def _start_run(
        self,
        conn: sqlite3.Connection,
        definition: WorkflowDefinition,
        trigger_node_id: str,
        event_kind: str,
        payload: dict[str, Any],
        key: str,
    ) -> tuple[str, bool]:
        existing = conn.execute(
            "SELECT run_id FROM event_receipts WHERE definition_id = ? AND idempotency_key = ?",
            (definition.id, key),
        ).fetchone()
        if existing is not None:
            return existing["run_id"], False

        run_id = str(uuid.uuid4())
        now = self.clock.now()
        conn.execute(
            """
            INSERT INTO runs (id, definition_id, org_id, status, trigger_node_id, event_kind,
                              context, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                definition.id,
                definition.org_id,
                RunStatus.RUNNING.value,
                trigger_node_id,
                event_kind,
                safe_json_dumps({trigger_node_id: payload}),
                to_db_time(now),
                to_db_time(now),
            ),
        )
        conn.execute(
            """
            INSERT INTO event_receipts (definition_id, idempotency_key, run_id, event_kind, received_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (definition.id, key, run_id, event_kind, to_db_time(now)),
        )
        self.db.append_event(
            conn,
            RunEvent(
                run_id=run_id,
                event_type=EventType.RUN_STARTED,
                node_id=trigger_node_id,
                payload={"event_kind": event_kind, "idempotency_key": key},
                timestamp=now,
            ),
        )
        self.coordinator.route(
            conn, run_id, definition.graph, trigger_node_id, [TRIGGER_OUT], "", {}, payload
        )
        # A trigger marked terminal (or leading only into unfired merges) ends here
        self.coordinator.refresh_run_status(conn, run_id)
        return run_id, True
