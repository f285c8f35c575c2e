"""FastAPI surface for layerflow.

This module provides:
- Event ingestion that starts runs (``POST /events/{event_kind}``)
- Definition CRUD and lifecycle transitions
- Run inspection and cancellation

The engine is created lazily from ``.layerflow/config.yaml`` on first use.
Steps are executed by ``layerflow worker``, not by request handlers.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from layerflow import __version__
from layerflow.core.config import load_config
from layerflow.core.engine import WorkflowEngine
from layerflow.core.errors import (
    DefinitionLockedError,
    DefinitionNotFoundError,
    GraphValidationError,
    InvalidTransitionError,
    RunNotFoundError,
)
from layerflow.core.graph_schema import DefinitionStatus, WorkflowGraph

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Layerflow API",
    description="Event-driven workflow execution engine",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=load_config().server.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global instance - initialized lazily
_engine: WorkflowEngine | None = None


def get_engine() -> WorkflowEngine:
    """Get or create the engine instance."""
    global _engine
    if _engine is None:
        _engine = WorkflowEngine.from_config(load_config())
    return _engine


def set_engine(engine: WorkflowEngine | None) -> None:
    """Install a pre-built engine (tests, embedding applications)."""
    global _engine
    _engine = engine


# ========== API Models ==========


class DefinitionCreateRequest(BaseModel):
    """Request to create a new definition"""

    name: str = Field(min_length=1)
    org_id: str = Field(min_length=1)
    description: str | None = None
    graph: WorkflowGraph | None = None


class DefinitionUpdateRequest(BaseModel):
    """Request to replace a definition's graph"""

    graph: WorkflowGraph


class StatusChangeRequest(BaseModel):
    status: DefinitionStatus


class CancelRequest(BaseModel):
    reason: str = "Cancelled by user"


def _validation_detail(e: GraphValidationError) -> dict[str, Any]:
    return {
        "message": str(e),
        "violations": [v.model_dump() for v in e.violations],
    }


# ========== Events ==========


@app.post("/events/{event_kind}", status_code=202)
def ingest_event(
    event_kind: str,
    payload: dict[str, Any] | None = Body(default=None),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    """Start a run for every active definition listening for this event."""
    result = get_engine().emit(event_kind, payload or {}, idempotency_key)
    return {
        "run_ids": result.run_ids,
        "created": result.created,
        "deduplicated": result.deduplicated,
    }


# ========== Definitions ==========


@app.post("/definitions", status_code=201)
def create_definition(request: DefinitionCreateRequest) -> dict[str, Any]:
    try:
        definition = get_engine().definitions.create(
            request.name, request.org_id, request.description, request.graph
        )
    except GraphValidationError as e:
        raise HTTPException(status_code=422, detail=_validation_detail(e)) from e
    return definition.model_dump(mode="json")


@app.get("/definitions")
def list_definitions(status: DefinitionStatus | None = None) -> list[dict[str, Any]]:
    return [
        d.model_dump(mode="json") for d in get_engine().definitions.list_definitions(status)
    ]


@app.get("/definitions/{definition_id}")
def get_definition(definition_id: str) -> dict[str, Any]:
    try:
        return get_engine().definitions.get(definition_id).model_dump(mode="json")
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.put("/definitions/{definition_id}")
def save_definition(definition_id: str, request: DefinitionUpdateRequest) -> dict[str, Any]:
    try:
        definition = get_engine().definitions.save(definition_id, request.graph)
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except DefinitionLockedError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except GraphValidationError as e:
        raise HTTPException(status_code=422, detail=_validation_detail(e)) from e
    return definition.model_dump(mode="json")


@app.post("/definitions/{definition_id}/status")
def change_status(definition_id: str, request: StatusChangeRequest) -> dict[str, Any]:
    try:
        definition = get_engine().definitions.set_status(definition_id, request.status)
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except GraphValidationError as e:
        raise HTTPException(status_code=422, detail=_validation_detail(e)) from e
    return definition.model_dump(mode="json")


@app.post("/definitions/{definition_id}/validate")
def validate_definition(definition_id: str) -> dict[str, Any]:
    try:
        result = get_engine().definitions.validate(definition_id)
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return result.model_dump()


# ========== Runs ==========


@app.get("/runs/{run_id}")
def get_run(run_id: str) -> dict[str, Any]:
    try:
        run, steps, events = get_engine().inspect_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {
        **run.model_dump(mode="json"),
        "steps": [
            step.model_dump(
                mode="json",
                include={
                    "id", "node_id", "scope", "state", "outcome", "attempt",
                    "due_at", "output", "error", "fired_handles",
                },
            )
            for step in steps
        ],
        "events": [event.model_dump(mode="json") for event in events],
    }


@app.post("/runs/{run_id}/cancel")
def cancel_run(run_id: str, request: CancelRequest | None = None) -> dict[str, Any]:
    reason = request.reason if request else "Cancelled by user"
    try:
        run = get_engine().cancel_run(run_id, reason)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return run.model_dump(mode="json")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}
