"""Branch, merge and loop coordination.

Decides which outgoing handles of a logic node fire and turns fired handles
into new step instances. All methods taking a connection run inside the
caller's BEGIN IMMEDIATE transaction, so successor creation, merge arrivals
and loop progress commit atomically with the step that caused them.

Scopes: every step has a fan-out scope. The root branch is ``""``; each
``each_item`` branch of a loop node appends ``/<loop_node>[<index>]`` to its
parent's scope. Step identity is ``(run_id, node_id, scope)``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import sqlite3
import uuid
from collections.abc import Mapping
from typing import Any, NamedTuple

from layerflow.core.conditions import evaluate_group, resolve_path
from layerflow.core.graph_schema import (
    OUTPUT,
    FilterConfig,
    IfThenConfig,
    LoopIteratorConfig,
    Node,
    RunStatus,
    SplitABConfig,
    StepOutcome,
    StepState,
    TransformDataConfig,
    WorkflowGraph,
)
from layerflow.core.state import Database, EventType, RunEvent, safe_json_dumps, to_db_time
from layerflow.core.templating import render_value
from layerflow.core.timers import Clock

logger = logging.getLogger(__name__)

_SEGMENT = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\[(\d+)\]$")

# Overlay key holding the fields an edge mapped out of its source output
MAPPED_INPUT = "input"


class InvalidStepInput(Exception):
    """A logic node's config cannot be applied to the run context. Not retried."""

    pass


class ScopeSegment(NamedTuple):
    loop_node_id: str
    index: int
    parent_scope: str
    item_scope: str


def item_scope(parent_scope: str, loop_node_id: str, index: int) -> str:
    return f"{parent_scope}/{loop_node_id}[{index}]"


def parse_scope(scope: str) -> list[ScopeSegment]:
    """Split a scope into its loop item segments, outermost first."""
    segments = []
    parent = ""
    for part in scope.split("/")[1:]:
        match = _SEGMENT.match(part)
        if not match:
            raise ValueError(f"Malformed scope: '{scope}'")
        current = f"{parent}/{part}"
        segments.append(ScopeSegment(match.group(1), int(match.group(2)), parent, current))
        parent = current
    return segments


def map_edge_data(mapping: Mapping[str, str], source_output: Any) -> dict[str, Any]:
    """Pick fields out of a source output; missing paths map to None."""
    return {field: resolve_path(source_output, path) for field, path in mapping.items()}


def split_bucket(run_id: str) -> int:
    """Stable 0-99 bucket for a run.

    Uses sha256 rather than hash() so the bucket is identical across processes
    and interpreter restarts.
    """
    digest = hashlib.sha256(run_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % 100


def split_branch(run_id: str, split_percentage: int) -> str:
    """Route ``split_percentage`` percent of runs to branch_a, the rest to branch_b."""
    return "branch_a" if split_bucket(run_id) < split_percentage else "branch_b"


class Coordinator:
    """Successor resolution for the step executor and the dispatcher."""

    def __init__(self, db: Database, clock: Clock):
        self.db = db
        self.clock = clock

    # ========== Context ==========

    def build_context(
        self, conn: sqlite3.Connection, run_id: str, scope: str, overlay: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Context visible to a step.

        Run context (root outputs), then outputs of done steps in each
        enclosing item scope from outer to inner, then the loop overlay.
        Item branches never write to the run context.
        """
        row = conn.execute("SELECT context FROM runs WHERE id = ?", (run_id,)).fetchone()
        context = json.loads(row["context"]) if row else {}
        if scope:
            prefixes = [seg.item_scope for seg in parse_scope(scope)]
            rows = conn.execute(
                f"""
                SELECT node_id, scope, output FROM steps
                WHERE run_id = ? AND state = ? AND scope IN ({",".join("?" * len(prefixes))})
                """,
                [run_id, StepState.DONE.value, *prefixes],
            ).fetchall()
            by_scope: dict[str, list[sqlite3.Row]] = {}
            for r in rows:
                by_scope.setdefault(r["scope"], []).append(r)
            for prefix in prefixes:
                for r in by_scope.get(prefix, []):
                    context[r["node_id"]] = json.loads(r["output"]) if r["output"] else None
        context.update(overlay)
        return context

    def record_output(
        self, conn: sqlite3.Connection, run_id: str, node_id: str, scope: str, output: Any
    ) -> None:
        """Add a root-branch output to the run context (append-only)."""
        if scope:
            return
        conn.execute(
            """
            UPDATE runs SET context = json_set(context, ?, json(?))
            WHERE id = ? AND json_type(context, ?) IS NULL
            """,
            (f"$.{node_id}", safe_json_dumps(output), run_id, f"$.{node_id}"),
        )

    # ========== Logic evaluation ==========

    def evaluate(self, node: Node, run_id: str, context: Mapping[str, Any]) -> tuple[Any, list[str]]:
        """Evaluate a stateless logic node. Returns ``(output, fired_handles)``."""
        config = node.config
        if isinstance(config, FilterConfig):
            matched = evaluate_group(config.conditions, context, config.match)
            return {"matched": matched}, ["match" if matched else "no_match"]
        if isinstance(config, IfThenConfig):
            result = evaluate_group(config.conditions, context, config.match)
            return {"result": result}, ["true" if result else "false"]
        if isinstance(config, SplitABConfig):
            branch = split_branch(run_id, config.split_percentage)
            return {"bucket": split_bucket(run_id), "branch": branch}, [branch]
        if isinstance(config, TransformDataConfig):
            try:
                output = {key: render_value(tpl, context) for key, tpl in config.mapping.items()}
            except Exception as e:
                raise InvalidStepInput(str(e)) from e
            return output, [OUTPUT]
        raise InvalidStepInput(f"Node kind '{node.kind}' is not a stateless logic node")

    # ========== Step creation and routing ==========

    def enqueue(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        node_id: str,
        scope: str,
        overlay: Mapping[str, Any],
    ) -> str | None:
        """Create a pending step unless one already exists for this identity."""
        now = to_db_time(self.clock.now())
        step_id = str(uuid.uuid4())
        result = conn.execute(
            """
            INSERT OR IGNORE INTO steps (id, run_id, node_id, scope, state, attempt, overlay,
                                         created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                step_id,
                run_id,
                node_id,
                scope,
                StepState.PENDING.value,
                safe_json_dumps(dict(overlay)),
                now,
                now,
            ),
        )
        if result.rowcount == 0:
            logger.debug(f"Step {node_id}@'{scope}' already exists in run {run_id}")
            return None
        return step_id

    def route(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        graph: WorkflowGraph,
        source_node_id: str,
        handles: list[str],
        scope: str,
        overlay: Mapping[str, Any],
        source_output: Any,
    ) -> list[str]:
        """Turn fired handles of ``source_node_id`` into successor steps.

        Returns the ids of steps that became pending. Cancelled runs get no
        new steps.
        """
        status = conn.execute("SELECT status FROM runs WHERE id = ?", (run_id,)).fetchone()
        if status is None or status["status"] == RunStatus.CANCELLED.value:
            return []

        inherited = {k: v for k, v in overlay.items() if k != MAPPED_INPUT}
        created: list[str] = []
        for handle in handles:
            for edge in graph.outgoing(source_node_id, handle):
                target = graph.get_node(edge.target_node_id)
                edge_overlay = inherited
                arrival = source_output
                if edge.data_mapping:
                    arrival = map_edge_data(edge.data_mapping, source_output)
                    edge_overlay = {**inherited, MAPPED_INPUT: arrival}
                if target.kind == "merge":
                    created += self._arrive(
                        conn, run_id, graph, target, edge.target_handle, source_node_id,
                        scope, edge_overlay, arrival,
                    )
                else:
                    step_id = self.enqueue(conn, run_id, target.id, scope, edge_overlay)
                    if step_id:
                        created.append(step_id)
        return created

    def _arrive(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        graph: WorkflowGraph,
        merge: Node,
        handle: str,
        source_node_id: str,
        scope: str,
        overlay: Mapping[str, Any],
        source_output: Any,
    ) -> list[str]:
        """Record an arrival at a merge node and fire it when ready."""
        row = conn.execute(
            "SELECT * FROM merge_wait_sets WHERE run_id = ? AND node_id = ? AND scope = ?",
            (run_id, merge.id, scope),
        ).fetchone()
        if row is not None and row["fired"]:
            logger.info(f"Merge '{merge.id}' already fired; dropping arrival on '{handle}'")
            self.db.append_event(
                conn,
                RunEvent(
                    run_id=run_id,
                    event_type=EventType.MERGE_ARRIVAL_DROPPED,
                    node_id=merge.id,
                    payload={"handle": handle, "source": source_node_id, "scope": scope},
                    timestamp=self.clock.now(),
                ),
            )
            return []

        arrivals = json.loads(row["arrivals"]) if row is not None else {}
        if handle in arrivals:
            return []
        arrivals[handle] = {"node_id": source_node_id, "output": source_output}

        strategy = merge.config.strategy
        fires = strategy == "first" or all(h in arrivals for h in merge.handles.inputs)
        if not fires:
            conn.execute(
                """
                INSERT INTO merge_wait_sets (run_id, node_id, scope, arrivals, fired)
                VALUES (?, ?, ?, ?, 0)
                ON CONFLICT(run_id, node_id, scope) DO UPDATE SET arrivals = excluded.arrivals
                """,
                (run_id, merge.id, scope, safe_json_dumps(arrivals)),
            )
            return []

        # Keep a tombstone so later arrivals, on any input, are dropped
        conn.execute(
            """
            INSERT INTO merge_wait_sets (run_id, node_id, scope, arrivals, fired)
            VALUES (?, ?, ?, ?, 1)
            ON CONFLICT(run_id, node_id, scope) DO UPDATE SET
                arrivals = excluded.arrivals, fired = 1
            """,
            (run_id, merge.id, scope, safe_json_dumps(arrivals)),
        )

        output = {
            "inputs": {h: a["output"] for h, a in arrivals.items()},
            "sources": {h: a["node_id"] for h, a in arrivals.items()},
        }
        # Firing completes the merge step in place; it has no behavior to run
        now = to_db_time(self.clock.now())
        result = conn.execute(
            """
            INSERT OR IGNORE INTO steps (id, run_id, node_id, scope, state, outcome, attempt,
                                         overlay, output, fired_handles, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                run_id,
                merge.id,
                scope,
                StepState.DONE.value,
                StepOutcome.SUCCEEDED.value,
                safe_json_dumps(dict(overlay)),
                safe_json_dumps(output),
                safe_json_dumps([OUTPUT]),
                now,
                now,
            ),
        )
        if result.rowcount == 0:
            return []
        self.record_output(conn, run_id, merge.id, scope, output)
        self.db.append_event(
            conn,
            RunEvent(
                run_id=run_id,
                event_type=EventType.MERGE_FIRED,
                node_id=merge.id,
                payload={"strategy": strategy, "sources": output["sources"], "scope": scope},
                timestamp=self.clock.now(),
            ),
        )
        logger.info(f"Merge '{merge.id}' fired in run {run_id} ({strategy})")
        return self.route(conn, run_id, graph, merge.id, [OUTPUT], scope, overlay, output)

    # ========== Loops ==========

    def start_loop(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        graph: WorkflowGraph,
        node: Node,
        scope: str,
        overlay: Mapping[str, Any],
        context: Mapping[str, Any],
    ) -> tuple[dict[str, Any], list[str], list[str]]:
        """Create the loop cursor and spawn one item branch per element.

        Returns ``(output, fired_handles, new_step_ids)``. Item branches run
        independently; ``completed`` fires from :meth:`settle_scopes` once
        every item branch is terminal.
        """
        config: LoopIteratorConfig = node.config  # type: ignore[assignment]
        array = resolve_path(context, config.array_field)
        if array is None:
            array = []
        if not isinstance(array, list):
            raise InvalidStepInput(
                f"Loop '{node.id}': '{config.array_field}' is a {type(array).__name__}, not a list"
            )

        total = min(len(array), config.max_iterations)
        output = {"length": len(array), "total": total, "truncated": len(array) > total}
        has_items = bool(graph.outgoing(node.id, "each_item"))

        conn.execute(
            """
            INSERT OR IGNORE INTO loop_cursors (run_id, node_id, scope, array_ref, idx, total,
                                                max_iterations, finished, completed)
            VALUES (?, ?, ?, ?, 0, ?, ?, '[]', 0)
            """,
            (run_id, node.id, scope, config.array_field, total, config.max_iterations),
        )

        if total == 0 or not has_items:
            conn.execute(
                "UPDATE loop_cursors SET completed = 1 WHERE run_id = ? AND node_id = ? AND scope = ?",
                (run_id, node.id, scope),
            )
            created = self.route(conn, run_id, graph, node.id, ["completed"], scope, overlay, output)
            return output, ["completed"], created

        created: list[str] = []
        empty_items: list[str] = []
        for index in range(total):
            child_scope = item_scope(scope, node.id, index)
            child_overlay = {
                **overlay,
                "item": array[index],
                "loop": {"node_id": node.id, "index": index, "total": total},
            }
            spawned = self.route(
                conn, run_id, graph, node.id, ["each_item"], child_scope, child_overlay, output
            )
            if not spawned:
                empty_items.append(child_scope)
            created += spawned

        fired = ["each_item"]
        for child_scope in empty_items:
            # Item branches that produced no steps are finished already
            more = self.settle_scopes(conn, run_id, graph, child_scope)
            created += more
        if self._loop_completed(conn, run_id, node.id, scope):
            fired.append("completed")
        return output, fired, created

    def _loop_completed(self, conn: sqlite3.Connection, run_id: str, node_id: str, scope: str) -> bool:
        row = conn.execute(
            "SELECT completed FROM loop_cursors WHERE run_id = ? AND node_id = ? AND scope = ?",
            (run_id, node_id, scope),
        ).fetchone()
        return bool(row and row["completed"])

    def settle_scopes(
        self, conn: sqlite3.Connection, run_id: str, graph: WorkflowGraph, scope: str
    ) -> list[str]:
        """Advance loop cursors for item branches that have no live steps left.

        Walks the scope from the innermost item outwards. Each finished item
        advances its cursor by one; a cursor reaching its total fires the
        loop's ``completed`` handle in the parent scope.
        """
        created: list[str] = []
        for segment in reversed(parse_scope(scope)):
            live = conn.execute(
                """
                SELECT COUNT(*) FROM steps
                WHERE run_id = ? AND state NOT IN ('done', 'failed')
                  AND (scope = ? OR substr(scope, 1, ?) = ?)
                """,
                (run_id, segment.item_scope, len(segment.item_scope) + 1, segment.item_scope + "/"),
            ).fetchone()[0]
            if live:
                break

            cursor = conn.execute(
                "SELECT * FROM loop_cursors WHERE run_id = ? AND node_id = ? AND scope = ?",
                (run_id, segment.loop_node_id, segment.parent_scope),
            ).fetchone()
            if cursor is None or cursor["completed"]:
                continue
            finished = json.loads(cursor["finished"])
            if segment.index in finished:
                continue
            finished.append(segment.index)
            idx = cursor["idx"] + 1
            completed = idx >= cursor["total"]
            conn.execute(
                """
                UPDATE loop_cursors SET idx = ?, finished = ?, completed = ?
                WHERE run_id = ? AND node_id = ? AND scope = ?
                """,
                (
                    idx,
                    json.dumps(finished),
                    int(completed),
                    run_id,
                    segment.loop_node_id,
                    segment.parent_scope,
                ),
            )
            if not completed:
                continue

            loop_step = conn.execute(
                "SELECT * FROM steps WHERE run_id = ? AND node_id = ? AND scope = ?",
                (run_id, segment.loop_node_id, segment.parent_scope),
            ).fetchone()
            loop_overlay = json.loads(loop_step["overlay"]) if loop_step and loop_step["overlay"] else {}
            loop_output = json.loads(loop_step["output"]) if loop_step and loop_step["output"] else {}
            if loop_step is not None:
                fired = json.loads(loop_step["fired_handles"] or "[]")
                if "completed" not in fired:
                    fired.append("completed")
                conn.execute(
                    "UPDATE steps SET fired_handles = ? WHERE id = ?",
                    (json.dumps(fired), loop_step["id"]),
                )
            self.db.append_event(
                conn,
                RunEvent(
                    run_id=run_id,
                    event_type=EventType.LOOP_COMPLETED,
                    node_id=segment.loop_node_id,
                    payload={"iterations": idx, "scope": segment.parent_scope},
                    timestamp=self.clock.now(),
                ),
            )
            logger.info(f"Loop '{segment.loop_node_id}' completed {idx} iteration(s) in run {run_id}")
            created += self.route(
                conn,
                run_id,
                graph,
                segment.loop_node_id,
                ["completed"],
                segment.parent_scope,
                loop_overlay,
                loop_output,
            )
        return created

    # ========== Run status ==========

    def refresh_run_status(self, conn: sqlite3.Connection, run_id: str) -> RunStatus | None:
        """Recompute a run's status from its steps.

        Returns the new status when the run reached a terminal state during
        this call, otherwise None.
        """
        run = conn.execute("SELECT status FROM runs WHERE id = ?", (run_id,)).fetchone()
        if run is None or run["status"] in ("completed", "failed", "cancelled"):
            return None

        counts = {
            row["state"]: row["n"]
            for row in conn.execute(
                "SELECT state, COUNT(*) AS n FROM steps WHERE run_id = ? GROUP BY state", (run_id,)
            ).fetchall()
        }
        now = to_db_time(self.clock.now())

        if counts.get("pending", 0) or counts.get("executing", 0):
            new_status, error = RunStatus.RUNNING, None
        elif counts.get("scheduled", 0):
            new_status, error = RunStatus.WAITING, None
        elif counts.get("failed", 0):
            failed = conn.execute(
                "SELECT node_id, error FROM steps WHERE run_id = ? AND state = 'failed' ORDER BY updated_at",
                (run_id,),
            ).fetchall()
            new_status = RunStatus.FAILED
            error = "; ".join(f"{r['node_id']}: {r['error']}" for r in failed)
        else:
            open_merges = conn.execute(
                "SELECT COUNT(*) FROM merge_wait_sets WHERE run_id = ? AND fired = 0", (run_id,)
            ).fetchone()[0]
            # An unfired wait_all never fires on its own; the stall timeout ends the run
            if open_merges:
                new_status, error = RunStatus.WAITING, None
            else:
                new_status, error = RunStatus.COMPLETED, None

        terminal = new_status in (RunStatus.COMPLETED, RunStatus.FAILED)
        if new_status.value == run["status"] and not terminal:
            return None
        conn.execute(
            "UPDATE runs SET status = ?, error = ?, updated_at = ?, finished_at = ? WHERE id = ?",
            (new_status.value, error, now, now if terminal else None, run_id),
        )
        if not terminal:
            return None
        self.db.append_event(
            conn,
            RunEvent(
                run_id=run_id,
                event_type=EventType.RUN_COMPLETED
                if new_status == RunStatus.COMPLETED
                else EventType.RUN_FAILED,
                payload={"error": error} if error else {},
                timestamp=self.clock.now(),
            ),
        )
        logger.info(f"Run {run_id} {new_status.value}")
        return new_status
