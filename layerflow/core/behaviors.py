"""Behavior handler registry and invocation contract.

Each action node kind maps to exactly one registered handler. A handler
receives a :class:`BehaviorContext` and returns a dict output (sync or async);
it signals failure by raising. Kinds without a registered handler fail
validation when the definition is saved.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from layerflow.core.conditions import resolve_path
from layerflow.core.errors import HandlerError, StepTimeoutError, UnknownBehaviorError
from layerflow.core.graph_schema import LOGIC_HANDLES, TRIGGER_EVENT_KINDS
from layerflow.core.records import RecordStore

logger = logging.getLogger(__name__)

Handler = Callable[["BehaviorContext"], Any]


@dataclass
class BehaviorContext:
    """Everything a handler may read while executing one step."""

    run_id: str
    step_id: str
    node_id: str
    org_id: str
    attempt: int
    idempotency_key: str  # Stable across retries and redeliveries of this step
    params: dict[str, Any]  # Rendered and validated node params
    context: Mapping[str, Any]  # Read-only view of earlier node outputs
    records: RecordStore
    now: datetime

    def get(self, path: str, default: Any = None) -> Any:
        """Resolve a dotted path against the run context."""
        return resolve_path(self.context, path, default)


@dataclass(frozen=True)
class Behavior:
    """A registered handler and its metadata."""

    kind: str
    handler: Handler
    params_model: type[BaseModel] | None = None
    cost: int | None = None  # Credits charged once per step instance; None uses the gate default
    side_effect: bool = True  # False for pure handlers that may safely run again
    description: str = ""


@dataclass
class BehaviorRegistry:
    """Maps action node kinds to their handlers."""

    _behaviors: dict[str, Behavior] = field(default_factory=dict)

    def register(
        self,
        kind: str,
        handler: Handler,
        *,
        params_model: type[BaseModel] | None = None,
        cost: int | None = None,
        side_effect: bool = True,
        description: str = "",
    ) -> Behavior:
        if kind in TRIGGER_EVENT_KINDS or kind in LOGIC_HANDLES:
            raise ValueError(f"'{kind}' is a built-in node kind and cannot be a behavior")
        if not kind.isidentifier():
            raise ValueError(f"Invalid behavior kind: '{kind}'")
        if kind in self._behaviors:
            raise ValueError(f"Behavior '{kind}' is already registered")
        if cost is not None and cost < 0:
            raise ValueError("Behavior cost cannot be negative")
        behavior = Behavior(
            kind=kind,
            handler=handler,
            params_model=params_model,
            cost=cost,
            side_effect=side_effect,
            description=description or (handler.__doc__ or "").strip().split("\n")[0],
        )
        self._behaviors[kind] = behavior
        return behavior

    def behavior(self, kind: str, **kwargs: Any) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: Handler) -> Handler:
            self.register(kind, func, **kwargs)
            return func

        return decorator

    def get(self, kind: str) -> Behavior:
        try:
            return self._behaviors[kind]
        except KeyError:
            raise UnknownBehaviorError(f"No behavior registered for kind '{kind}'") from None

    def __contains__(self, kind: str) -> bool:
        return kind in self._behaviors

    def kinds(self) -> list[str]:
        return sorted(self._behaviors)

    def check_params(self, kind: str, params: dict[str, Any]) -> list[str]:
        """Validate node params against the behavior's params model.

        Returns a list of error messages (empty when valid or unmodelled).
        """
        behavior = self._behaviors.get(kind)
        if behavior is None or behavior.params_model is None:
            return []
        try:
            behavior.params_model.model_validate(params)
        except ValidationError as e:
            return [
                f"{'.'.join(str(x) for x in err['loc']) or 'params'}: {err['msg']}"
                for err in e.errors()
            ]
        return []


async def call_handler(
    behavior: Behavior, ctx: BehaviorContext, timeout: float | None
) -> dict[str, Any]:
    """Invoke a handler with an execution budget.

    Sync handlers run in a worker thread. When the timeout fires,
    asyncio.wait_for abandons the thread but cannot stop it; the step is
    failed and may be retried, which is why handlers receive a stable
    ``idempotency_key``.
    """

    async def invoke() -> Any:
        if inspect.iscoroutinefunction(behavior.handler):
            return await behavior.handler(ctx)
        result = await asyncio.to_thread(behavior.handler, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result

    try:
        if timeout:
            result = await asyncio.wait_for(invoke(), timeout=timeout)
        else:
            result = await invoke()
    except TimeoutError:
        raise StepTimeoutError(
            f"Behavior '{behavior.kind}' on node '{ctx.node_id}' timed out after {timeout}s"
        ) from None
    except HandlerError:
        raise
    except Exception as e:
        raise HandlerError(f"Behavior '{behavior.kind}' failed: {e}") from e

    if result is None:
        return {}
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if not isinstance(result, dict):
        return {"result": result}
    return result


# ========== Built-in behaviors ==========


class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CreateContactParams(_Params):
    email: str | None = None
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    tags: list[str] = []
    fields: dict[str, Any] = {}


class UpdateContactParams(_Params):
    contact_id: str
    fields: dict[str, Any]


class SendEmailParams(_Params):
    to: str
    subject: str
    body: str = ""


class SendSmsParams(_Params):
    to: str
    body: str


def create_contact(ctx: BehaviorContext) -> dict[str, Any]:
    """Create or update a contact, keyed by email (or phone)."""
    params = ctx.params
    email = (params.get("email") or "").strip().lower() or None
    phone = (params.get("phone") or "").strip() or None
    if not email and not phone:
        raise HandlerError("create_contact requires an email or a phone number")

    data: dict[str, Any] = {
        k: v
        for k, v in {
            "email": email,
            "phone": phone,
            "first_name": params.get("first_name"),
            "last_name": params.get("last_name"),
        }.items()
        if v
    }
    if params.get("tags"):
        data["tags"] = params["tags"]
    data.update(params.get("fields") or {})

    record, created = ctx.records.upsert("contacts", email or phone, data)
    return {
        "contact_id": record.id,
        "created": created,
        "email": record.data.get("email"),
        "phone": record.data.get("phone"),
    }


def update_contact(ctx: BehaviorContext) -> dict[str, Any]:
    """Merge fields into an existing contact."""
    contact_id = ctx.params["contact_id"]
    record = ctx.records.update("contacts", contact_id, ctx.params["fields"])
    if record is None:
        raise HandlerError(f"Contact '{contact_id}' not found")
    return {"contact_id": record.id, "fields": sorted(ctx.params["fields"])}


def _queue_message(ctx: BehaviorContext, channel: str, message: dict[str, Any]) -> dict[str, Any]:
    # Keyed by the step's idempotency key: a duplicate invocation never queues twice
    record, created = ctx.records.upsert(
        "outbox",
        ctx.idempotency_key,
        {"channel": channel, "run_id": ctx.run_id, "node_id": ctx.node_id, **message},
    )
    if not created:
        logger.warning(f"Message for {ctx.idempotency_key} was already queued")
    return {"message_id": record.id, "channel": channel, "to": message["to"]}


def send_email(ctx: BehaviorContext) -> dict[str, Any]:
    """Queue an email in the outbox."""
    return _queue_message(
        ctx,
        "email",
        {"to": ctx.params["to"], "subject": ctx.params["subject"], "body": ctx.params["body"]},
    )


def send_sms(ctx: BehaviorContext) -> dict[str, Any]:
    """Queue a text message in the outbox."""
    return _queue_message(ctx, "sms", {"to": ctx.params["to"], "body": ctx.params["body"]})


def register_builtin_behaviors(registry: BehaviorRegistry) -> BehaviorRegistry:
    """Register the stock contact and messaging behaviors."""
    registry.register("create_contact", create_contact, params_model=CreateContactParams)
    registry.register("update_contact", update_contact, params_model=UpdateContactParams)
    registry.register("send_email", send_email, params_model=SendEmailParams)
    registry.register("send_sms", send_sms, params_model=SendSmsParams)
    return registry
