"""Workflow definition lifecycle: create, save and status transitions."""

from __future__ import annotations

import logging
import sqlite3
import uuid

from layerflow.core.behaviors import BehaviorRegistry
from layerflow.core.errors import (
    DefinitionLockedError,
    DefinitionNotFoundError,
    GraphValidationError,
    InvalidTransitionError,
)
from layerflow.core.graph_schema import DefinitionStatus, WorkflowDefinition, WorkflowGraph
from layerflow.core.state import Database, to_db_time
from layerflow.core.timers import Clock, TimerService
from layerflow.core.validator import GraphValidator, ValidationResult, check_savable

logger = logging.getLogger(__name__)

S = DefinitionStatus

TRANSITIONS: dict[DefinitionStatus, frozenset[DefinitionStatus]] = {
    S.DRAFT: frozenset({S.READY, S.ACTIVE, S.ARCHIVED}),
    S.READY: frozenset({S.DRAFT, S.ACTIVE, S.ARCHIVED}),
    S.ACTIVE: frozenset({S.PAUSED, S.ERROR, S.ARCHIVED}),
    S.PAUSED: frozenset({S.ACTIVE, S.ERROR, S.ARCHIVED}),
    S.ERROR: frozenset({S.ACTIVE, S.PAUSED, S.ARCHIVED}),
    S.ARCHIVED: frozenset(),
}

EDITABLE_STATUSES = frozenset({S.DRAFT, S.READY})


class DefinitionService:
    """Owns every write to the ``definitions`` table."""

    def __init__(
        self,
        db: Database,
        registry: BehaviorRegistry,
        timers: TimerService,
        clock: Clock,
        max_handler_timeout: float | None = None,
    ):
        self.db = db
        self.registry = registry
        self.timers = timers
        self.clock = clock
        self.max_handler_timeout = max_handler_timeout
        self.validator = GraphValidator(registry, max_handler_timeout)

    def create(
        self,
        name: str,
        org_id: str,
        description: str | None = None,
        graph: WorkflowGraph | None = None,
    ) -> WorkflowDefinition:
        """Create a draft definition, optionally with an initial graph."""
        graph = graph or WorkflowGraph()
        self._check_savable(graph)
        now = self.clock.now()
        definition = WorkflowDefinition(
            id=str(uuid.uuid4()),
            org_id=org_id,
            name=name,
            description=description,
            graph=graph,
            created_at=now,
            updated_at=now,
        )
        with self.db._connect() as conn:
            conn.execute(
                """
                INSERT INTO definitions (id, org_id, name, description, status, version, graph,
                                         created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
                """,
                (
                    definition.id,
                    org_id,
                    name,
                    description,
                    S.DRAFT.value,
                    graph.model_dump_json(),
                    to_db_time(now),
                    to_db_time(now),
                ),
            )
        logger.info(f"Created definition '{name}' ({definition.id}) for org '{org_id}'")
        return definition

    def get(self, definition_id: str) -> WorkflowDefinition:
        definition = self.db.get_definition(definition_id)
        if definition is None:
            raise DefinitionNotFoundError(f"Definition {definition_id} not found")
        return definition

    def list_definitions(self, status: DefinitionStatus | None = None) -> list[WorkflowDefinition]:
        return self.db.list_definitions(status)

    def save(self, definition_id: str, graph: WorkflowGraph) -> WorkflowDefinition:
        """Replace the graph of an editable definition.

        Saving a ``ready`` definition returns it to ``draft``; it must pass
        validation again to become active.
        """
        self._check_savable(graph)

        def apply(conn: sqlite3.Connection) -> None:
            row = conn.execute(
                "SELECT status FROM definitions WHERE id = ?", (definition_id,)
            ).fetchone()
            if row is None:
                raise DefinitionNotFoundError(f"Definition {definition_id} not found")
            status = S(row["status"])
            if status not in EDITABLE_STATUSES:
                raise DefinitionLockedError(
                    f"Definition {definition_id} is {status.value}; only draft or ready "
                    "definitions can be edited"
                )
            conn.execute(
                """
                UPDATE definitions SET graph = ?, status = ?, version = version + 1, updated_at = ?
                WHERE id = ?
                """,
                (
                    graph.model_dump_json(),
                    S.DRAFT.value,
                    to_db_time(self.clock.now()),
                    definition_id,
                ),
            )

        self.db.run_in_transaction(apply)
        definition = self.get(definition_id)
        logger.info(f"Saved definition {definition_id} (version {definition.version})")
        return definition

    def validate(self, definition_id: str) -> ValidationResult:
        return self.validator.validate(self.get(definition_id).graph)

    def set_status(self, definition_id: str, status: DefinitionStatus) -> WorkflowDefinition:
        """Move a definition through its lifecycle.

        Raises:
            InvalidTransitionError: The transition is not allowed.
            GraphValidationError: Activation failed validation; carries the violations.
        """
        status = S(status)
        definition = self.get(definition_id)
        if status == definition.status:
            return definition
        if status not in TRANSITIONS[definition.status]:
            raise InvalidTransitionError(
                f"Cannot move definition {definition_id} from {definition.status.value} "
                f"to {status.value}"
            )
        if status == S.ACTIVE:
            result = self.validator.validate(definition.graph)
            if not result.ok:
                raise GraphValidationError(
                    f"Definition {definition_id} failed validation with "
                    f"{len(result.violations)} violation(s)",
                    result.violations,
                )

        def apply(conn: sqlite3.Connection) -> None:
            now = to_db_time(self.clock.now())
            result = conn.execute(
                """
                UPDATE definitions SET status = ?, updated_at = ?,
                       activated_at = CASE WHEN ? = 'active' THEN ? ELSE activated_at END
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    now,
                    status.value,
                    now,
                    definition_id,
                    definition.status.value,
                ),
            )
            if result.rowcount == 0:
                raise InvalidTransitionError(
                    f"Definition {definition_id} changed status concurrently"
                )
            if status == S.ACTIVE:
                self.timers.sync_schedules(conn, definition)
            elif definition.status == S.ACTIVE:
                self.timers.disable_schedules(conn, definition_id)

        self.db.run_in_transaction(apply)
        logger.info(
            f"Definition {definition_id}: {definition.status.value} -> {status.value}"
        )
        return self.get(definition_id)

    def _check_savable(self, graph: WorkflowGraph) -> None:
        violations = check_savable(graph, self.registry, self.max_handler_timeout)
        if violations:
            raise GraphValidationError(
                "; ".join(v.message for v in violations), violations
            )
