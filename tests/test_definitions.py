"""Tests for the workflow definition lifecycle.

Tests cover:
- Create / save with versioning
- Allowed and refused status transitions
- Activation gated by validation
- Editing locked once a definition has been activated
"""

from __future__ import annotations

import pytest

from layerflow.core.definitions import TRANSITIONS
from layerflow.core.errors import (
    DefinitionLockedError,
    DefinitionNotFoundError,
    GraphValidationError,
    InvalidTransitionError,
)
from layerflow.core.graph_schema import DefinitionStatus

from conftest import FORM_TRIGGER, ORG, make_graph

S = DefinitionStatus

VALID = make_graph([FORM_TRIGGER, {"id": "notify", "kind": "notify"}], [("trigger", "notify")])
DEAD_END = make_graph(
    [
        FORM_TRIGGER,
        {
            "id": "check",
            "kind": "if_then",
            "config": {"conditions": [{"field": "trigger.email", "operator": "exists"}]},
        },
    ],
    [("trigger", "check")],
)


class TestCreateAndSave:
    def test_create_starts_as_draft(self, engine):
        definition = engine.definitions.create("Welcome", ORG, "Greets new leads", VALID)
        assert definition.status == S.DRAFT
        assert definition.version == 1

        stored = engine.definitions.get(definition.id)
        assert stored.name == "Welcome"
        assert stored.graph.get_node("notify").kind == "notify"

    def test_create_empty_definition(self, engine):
        definition = engine.definitions.create("Empty", ORG)
        assert engine.definitions.get(definition.id).graph.nodes == []

    def test_invalid_draft_can_be_saved(self, engine):
        definition = engine.definitions.create("Draft", ORG, graph=DEAD_END)
        assert engine.definitions.validate(definition.id).ok is False

    def test_unregistered_kind_blocks_save(self, engine):
        graph = make_graph([FORM_TRIGGER, {"id": "fax", "kind": "send_fax"}], [("trigger", "fax")])
        with pytest.raises(GraphValidationError) as exc_info:
            engine.definitions.create("Fax", ORG, graph=graph)
        assert exc_info.value.violations[0].code == "unregistered_kind"

    def test_save_bumps_version_and_returns_to_draft(self, engine):
        definition = engine.definitions.create("Flow", ORG, graph=DEAD_END)
        engine.definitions.set_status(definition.id, S.READY)

        saved = engine.definitions.save(definition.id, VALID)

        assert saved.version == 2
        assert saved.status == S.DRAFT
        assert saved.graph.get_node("notify").kind == "notify"

    def test_save_unknown_definition(self, engine):
        with pytest.raises(DefinitionNotFoundError):
            engine.definitions.save("nope", VALID)

    def test_list_by_status(self, engine):
        first = engine.definitions.create("One", ORG, graph=VALID)
        engine.definitions.create("Two", ORG, graph=VALID)
        engine.definitions.set_status(first.id, S.ACTIVE)

        active = engine.definitions.list_definitions(S.ACTIVE)
        assert [d.name for d in active] == ["One"]
        assert len(engine.definitions.list_definitions()) == 2


class TestStatusTransitions:
    def test_activate_valid_definition(self, engine, clock):
        definition = engine.definitions.create("Flow", ORG, graph=VALID)
        active = engine.definitions.set_status(definition.id, S.ACTIVE)
        assert active.status == S.ACTIVE
        assert active.activated_at == clock.now()

    def test_activation_blocked_by_violations(self, engine):
        definition = engine.definitions.create("Flow", ORG, graph=DEAD_END)
        with pytest.raises(GraphValidationError) as exc_info:
            engine.definitions.set_status(definition.id, S.ACTIVE)

        assert [v.code for v in exc_info.value.violations] == ["dead_end"]
        assert engine.definitions.get(definition.id).status == S.DRAFT

    def test_active_definition_is_locked(self, engine):
        definition = engine.definitions.create("Flow", ORG, graph=VALID)
        engine.definitions.set_status(definition.id, S.ACTIVE)
        with pytest.raises(DefinitionLockedError):
            engine.definitions.save(definition.id, VALID)

    def test_pause_and_resume(self, engine):
        definition = engine.definitions.create("Flow", ORG, graph=VALID)
        engine.definitions.set_status(definition.id, S.ACTIVE)
        assert engine.definitions.set_status(definition.id, S.PAUSED).status == S.PAUSED
        assert engine.definitions.set_status(definition.id, S.ACTIVE).status == S.ACTIVE

    def test_archived_is_final(self, engine):
        definition = engine.definitions.create("Flow", ORG, graph=VALID)
        engine.definitions.set_status(definition.id, S.ARCHIVED)
        with pytest.raises(InvalidTransitionError):
            engine.definitions.set_status(definition.id, S.ACTIVE)

    def test_active_cannot_return_to_draft(self, engine):
        definition = engine.definitions.create("Flow", ORG, graph=VALID)
        engine.definitions.set_status(definition.id, S.ACTIVE)
        with pytest.raises(InvalidTransitionError):
            engine.definitions.set_status(definition.id, S.DRAFT)

    def test_same_status_is_noop(self, engine):
        definition = engine.definitions.create("Flow", ORG, graph=VALID)
        assert engine.definitions.set_status(definition.id, S.DRAFT).version == 1

    def test_every_status_has_transition_rules(self):
        assert set(TRANSITIONS) == set(DefinitionStatus)
        assert TRANSITIONS[S.ARCHIVED] == frozenset()
