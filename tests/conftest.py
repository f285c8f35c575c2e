# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the layerflow test suite.

This module provides foundational fixtures used across all test modules:
- Test databases on tmp_path
- A frozen clock for time travel
- An engine wired to spy behaviors and a funded org
- Helpers to build, deploy and drive workflows

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Any

import pytest

from layerflow.core.behaviors import (
    BehaviorContext,
    BehaviorRegistry,
    CreateContactParams,
    create_contact,
)
from layerflow.core.config import EngineConfig, RetryPolicy
from layerflow.core.engine import WorkflowEngine
from layerflow.core.graph_schema import DefinitionStatus, WorkflowDefinition, WorkflowGraph
from layerflow.core.metering import UNLIMITED
from layerflow.core.state import Database
from layerflow.core.timers import FrozenClock

ORG = "org-acme"


class SpyBehavior:
    """Records every invocation; optionally fails the first ``fail_times`` calls."""

    def __init__(self, result: dict[str, Any] | None = None, fail_times: int = 0):
        self.result = result
        self.fail_times = fail_times
        self.calls: list[BehaviorContext] = []
        self._lock = threading.Lock()

    def __call__(self, ctx: BehaviorContext) -> dict[str, Any]:
        with self._lock:
            self.calls.append(ctx)
            count = len(self.calls)
        if count <= self.fail_times:
            raise RuntimeError(f"boom #{count}")
        return dict(self.result) if self.result is not None else {"call": count}

    @property
    def call_count(self) -> int:
        return len(self.calls)


# =============================================================================
# Database and Clock Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create an empty database in a temporary directory."""
    return Database(tmp_path / "state.db")


@pytest.fixture
def clock() -> FrozenClock:
    """Clock frozen at 2026-01-01T00:00:00Z; advance it explicitly."""
    return FrozenClock()


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def spies() -> dict[str, SpyBehavior]:
    """Spy behaviors registered in the test registry, by kind."""
    return {
        "send_email": SpyBehavior({"sent": "email"}),
        "send_sms": SpyBehavior({"sent": "sms"}),
        "notify": SpyBehavior(),
        "step_a": SpyBehavior({"from": "a"}),
        "step_b": SpyBehavior({"from": "b"}),
        "after": SpyBehavior(),
        "per_item": SpyBehavior(),
    }


@pytest.fixture
def registry(spies: dict[str, SpyBehavior]) -> BehaviorRegistry:
    registry = BehaviorRegistry()
    registry.register("create_contact", create_contact, params_model=CreateContactParams)
    for kind, spy in spies.items():
        registry.register(kind, spy)
    return registry


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    config = EngineConfig(database_path=tmp_path / "engine.db")
    config.retry = RetryPolicy(max_attempts=3, initial_delay=2.0, backoff_multiplier=2.0, jitter=0.0)
    config.handler_timeout = 5.0
    return config


@pytest.fixture
def engine(engine_config: EngineConfig, clock: FrozenClock, registry: BehaviorRegistry) -> WorkflowEngine:
    """Engine on a temp database with an org holding unlimited credit."""
    engine = WorkflowEngine.from_config(engine_config, clock=clock, registry=registry)
    engine.ledger.set_plan(ORG, monthly=UNLIMITED)
    return engine


# =============================================================================
# Workflow Helpers
# =============================================================================


def make_graph(nodes: list[dict[str, Any]], edges: list[tuple]) -> WorkflowGraph:
    """Build a graph from node dicts and ``(source, target[, source_handle[, target_handle]])`` tuples."""
    edge_dicts = []
    for i, edge in enumerate(edges):
        source, target, *handles = edge
        edge_dicts.append(
            {
                "id": f"e{i}",
                "source_node_id": source,
                "target_node_id": target,
                "source_handle": handles[0] if len(handles) > 0 else None,
                "target_handle": handles[1] if len(handles) > 1 else None,
            }
        )
    return WorkflowGraph.model_validate({"nodes": nodes, "edges": edge_dicts})


def deploy(
    engine: WorkflowEngine,
    nodes: list[dict[str, Any]],
    edges: list[tuple],
    org_id: str = ORG,
    activate: bool = True,
) -> WorkflowDefinition:
    definition = engine.definitions.create("test workflow", org_id, graph=make_graph(nodes, edges))
    if activate:
        definition = engine.definitions.set_status(definition.id, DefinitionStatus.ACTIVE)
    return definition


def drain(engine: WorkflowEngine) -> int:
    """Execute steps until nothing is ready at the current (frozen) time."""
    return asyncio.run(engine.worker.run_until_idle())


def step_states(engine: WorkflowEngine, run_id: str) -> dict[str, str]:
    """Map ``node_id@scope`` (or ``node_id`` at the root) to step state."""
    return {
        (f"{s.node_id}@{s.scope}" if s.scope else s.node_id): s.state.value
        for s in engine.db.get_steps(run_id)
    }


FORM_TRIGGER = {"id": "trigger", "kind": "trigger_form_submitted"}


@pytest.fixture
def contact_workflow(engine: WorkflowEngine) -> WorkflowDefinition:
    """formSubmitted -> create_contact -> if_then(has phone) -> send_sms | send_email."""
    return deploy(
        engine,
        [
            FORM_TRIGGER,
            {
                "id": "create_contact",
                "kind": "create_contact",
                "config": {
                    "params": {
                        "email": "{{ trigger.email }}",
                        "phone": "{{ trigger.phone | default('') }}",
                    }
                },
            },
            {
                "id": "has_phone",
                "kind": "if_then",
                "config": {"conditions": [{"field": "trigger.phone", "operator": "exists"}]},
            },
            {
                "id": "send_sms",
                "kind": "send_sms",
                "config": {"params": {"to": "{{ trigger.phone }}"}},
            },
            {
                "id": "send_email",
                "kind": "send_email",
                "config": {"params": {"to": "{{ create_contact.email }}"}},
            },
        ],
        [
            ("trigger", "create_contact"),
            ("create_contact", "has_phone"),
            ("has_phone", "send_sms", "true"),
            ("has_phone", "send_email", "false"),
        ],
    )
