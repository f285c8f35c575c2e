"""Workflow graph schema definitions using Pydantic models.

Workflows are directed graphs of typed nodes (triggers, logic constructs and
behavior actions) connected by edges between named handles. Node config is a
tagged union keyed by ``kind``: every kind owns a strongly-typed config model
that is validated when the definition is saved.

Security-first design:
- No arbitrary code execution in conditions (structured operators only)
- Iteration only through loop nodes with a bounded max_iterations
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal, NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializeAsAny,
    ValidationInfo,
    field_validator,
    model_validator,
)

_FIELD_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z0-9_]+)*$"

# Context keys injected into item branches and mapped edges; nodes may not use them as ids.
RESERVED_NODE_IDS = frozenset({"item", "loop", "input"})


class NodeCategory(str, Enum):
    """Broad families of node kinds"""

    TRIGGER = "trigger"  # Starts a run, no incoming edges
    LOGIC = "logic"  # Built-in routing construct
    ACTION = "action"  # Registered behavior with a side effect


class DefinitionStatus(str, Enum):
    """Lifecycle of a workflow definition"""

    DRAFT = "draft"
    READY = "ready"
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    ARCHIVED = "archived"


class RunStatus(str, Enum):
    """Status of a workflow run"""

    RUNNING = "running"  # At least one step is pending or executing
    WAITING = "waiting"  # Only timers or merges outstanding
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class StepState(str, Enum):
    """Execution state of a step instance"""

    PENDING = "pending"  # Ready to be claimed by a worker
    SCHEDULED = "scheduled"  # Waiting for its due time (delay or retry backoff)
    EXECUTING = "executing"  # Claimed by a worker
    DONE = "done"
    FAILED = "failed"


TERMINAL_STEP_STATES = frozenset({StepState.DONE, StepState.FAILED})


class StepOutcome(str, Enum):
    """Why a step reached its terminal state"""

    SUCCEEDED = "succeeded"
    HANDLER_ERROR = "handler_error"
    TIMEOUT = "timeout"
    BUDGET_EXCEEDED = "budget_exceeded"
    CANCELLED = "cancelled"
    INVALID = "invalid"  # Logic node could not evaluate its config against the context


# ========== Handles ==========

TRIGGER_OUT = "trigger_out"
INPUT = "input"
OUTPUT = "output"


class NodeHandles(NamedTuple):
    inputs: tuple[str, ...]
    outputs: tuple[str, ...]


TRIGGER_EVENT_KINDS: dict[str, str] = {
    "trigger_form_submitted": "formSubmitted",
    "trigger_payment_received": "paymentReceived",
    "trigger_booking_created": "bookingCreated",
    "trigger_contact_created": "contactCreated",
    "trigger_contact_updated": "contactUpdated",
    "trigger_webhook": "webhook",
    "trigger_schedule": "schedule",
    "trigger_manual": "manual",
    "trigger_email_received": "emailReceived",
    "trigger_chat_message": "chatMessage",
}

LOGIC_HANDLES: dict[str, NodeHandles] = {
    "if_then": NodeHandles((INPUT,), ("true", "false")),
    "filter": NodeHandles((INPUT,), ("match", "no_match")),
    "split_ab": NodeHandles((INPUT,), ("branch_a", "branch_b")),
    "merge": NodeHandles(("a", "b"), (OUTPUT,)),
    "loop_iterator": NodeHandles((INPUT,), ("each_item", "completed")),
    "wait_delay": NodeHandles((INPUT,), (OUTPUT,)),
    "transform_data": NodeHandles((INPUT,), (OUTPUT,)),
}

_TRIGGER_HANDLES = NodeHandles((), (TRIGGER_OUT,))
_ACTION_HANDLES = NodeHandles((INPUT,), (OUTPUT,))


def category_for(kind: str) -> NodeCategory:
    if kind in TRIGGER_EVENT_KINDS:
        return NodeCategory.TRIGGER
    if kind in LOGIC_HANDLES:
        return NodeCategory.LOGIC
    return NodeCategory.ACTION


def handles_for(kind: str) -> NodeHandles:
    """Return the input/output handles a node kind declares."""
    if kind in TRIGGER_EVENT_KINDS:
        return _TRIGGER_HANDLES
    return LOGIC_HANDLES.get(kind, _ACTION_HANDLES)


# ========== Conditions ==========


class Condition(BaseModel):
    """
    Safe, declarative condition evaluated against the run context.
    NO arbitrary code execution - only structured operators.
    """

    field: str  # Dotted path: "trigger.email", "create_contact.id", "item.sku"
    operator: Literal[
        "==",
        "!=",
        ">",
        "<",
        ">=",
        "<=",
        "in",
        "not_in",
        "contains",
        "starts_with",
        "ends_with",
        "exists",
        "not_exists",
    ]
    value: str | int | float | bool | list[str | int | float | bool] | None = None

    @field_validator("field")
    @classmethod
    def validate_field(cls, v):
        """Ensure field paths are safe dot-separated identifiers.

        Valid: "trigger", "trigger.phone", "items.0.sku"
        Invalid: "..", "a..b", ".foo", "foo.", "a-b"
        """
        if not re.match(_FIELD_PATTERN, v):
            raise ValueError(f"Invalid field name: {v}")
        return v

    @model_validator(mode="after")
    def check_value_type_for_operator(self) -> Condition:
        """Ensure value type is compatible with the operator."""
        list_operators = {"in", "not_in"}
        unary_operators = {"exists", "not_exists"}
        is_list_val = isinstance(self.value, list)

        if self.operator in unary_operators:
            if self.value is not None:
                raise ValueError(f"Operator '{self.operator}' does not take a value.")
            return self
        if self.value is None:
            raise ValueError(f"Operator '{self.operator}' requires a value.")
        if self.operator in list_operators and not is_list_val:
            raise ValueError(f"Operator '{self.operator}' requires value to be a list.")
        if self.operator not in list_operators and is_list_val:
            raise ValueError(f"Operator '{self.operator}' does not support list values.")
        return self


# ========== Node configs ==========


class NodeConfig(BaseModel):
    """Base for all per-kind node configuration models"""

    model_config = ConfigDict(extra="forbid")


class TriggerConfig(NodeConfig):
    """Configuration shared by trigger nodes without filters"""

    def matches(self, payload: dict[str, Any]) -> bool:
        """Return True if an event payload passes this trigger's filter."""
        return True


class FormSubmittedConfig(TriggerConfig):
    form_id: str | None = None  # Only runs for this form when set

    def matches(self, payload: dict[str, Any]) -> bool:
        return self.form_id is None or payload.get("form_id") == self.form_id


class PaymentReceivedConfig(TriggerConfig):
    payment_provider: Literal["any", "stripe", "lc_checkout"] = "any"

    def matches(self, payload: dict[str, Any]) -> bool:
        return self.payment_provider == "any" or payload.get("provider") == self.payment_provider


class WebhookConfig(TriggerConfig):
    path: str | None = None

    def matches(self, payload: dict[str, Any]) -> bool:
        return self.path is None or payload.get("path") == self.path


class ScheduleConfig(TriggerConfig):
    """Cron trigger, evaluated in the configured timezone"""

    cron_expression: str
    timezone: str = "Europe/Berlin"

    @field_validator("cron_expression")
    @classmethod
    def validate_cron(cls, v):
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: '{v}'")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: '{v}'") from e
        return v

    def next_fire_after(self, moment: datetime) -> datetime:
        """Next fire time strictly after ``moment``, returned in UTC."""
        local = moment.astimezone(ZoneInfo(self.timezone))
        nxt = croniter(self.cron_expression, local).get_next(datetime)
        return nxt.astimezone(UTC)


class ManualConfig(TriggerConfig):
    sample_data: dict[str, Any] = Field(default_factory=dict)


class EmailReceivedConfig(TriggerConfig):
    filter_from: str | None = None  # Case-insensitive substring of the sender
    filter_subject: str | None = None  # Case-insensitive substring of the subject

    def matches(self, payload: dict[str, Any]) -> bool:
        sender = str(payload.get("from", "")).lower()
        subject = str(payload.get("subject", "")).lower()
        if self.filter_from and self.filter_from.lower() not in sender:
            return False
        if self.filter_subject and self.filter_subject.lower() not in subject:
            return False
        return True


class ChatMessageConfig(TriggerConfig):
    channel: Literal["any", "whatsapp", "webchat", "instagram", "telegram"] = "any"

    def matches(self, payload: dict[str, Any]) -> bool:
        return self.channel == "any" or payload.get("channel") == self.channel


class IfThenConfig(NodeConfig):
    """Conditional routing: fires ``true`` or ``false``"""

    conditions: list[Condition] = Field(min_length=1)
    match: Literal["all", "any"] = "all"


class FilterConfig(IfThenConfig):
    """Same evaluation as if_then, fires ``match`` or ``no_match``"""

    pass


class SplitABConfig(NodeConfig):
    split_percentage: int = Field(default=50, ge=0, le=100)  # Share routed to branch_a


class MergeConfig(NodeConfig):
    strategy: Literal["wait_all", "first"] = "wait_all"


class LoopIteratorConfig(NodeConfig):
    array_field: str  # Dotted path to a list in the run context
    max_iterations: int = Field(default=100, ge=1, le=10_000)  # CRITICAL: bounds fan-out

    @field_validator("array_field")
    @classmethod
    def validate_array_field(cls, v):
        if not re.match(_FIELD_PATTERN, v):
            raise ValueError(f"Invalid field name: {v}")
        return v


class WaitDelayConfig(NodeConfig):
    duration: float = Field(ge=0)
    unit: Literal["seconds", "minutes", "hours", "days"] = "minutes"

    def as_timedelta(self) -> timedelta:
        return timedelta(**{self.unit: self.duration})


class TransformDataConfig(NodeConfig):
    """Output keys mapped to templates rendered against the run context"""

    mapping: dict[str, str] = Field(min_length=1)


class BehaviorConfig(NodeConfig):
    """Configuration for action nodes backed by a registered behavior"""

    params: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)
    max_attempts: int | None = Field(default=None, ge=1)
    cost: int | None = Field(default=None, ge=0)  # Overrides the behavior's credit cost


CONFIG_MODELS: dict[str, type[NodeConfig]] = {
    "trigger_form_submitted": FormSubmittedConfig,
    "trigger_payment_received": PaymentReceivedConfig,
    "trigger_booking_created": TriggerConfig,
    "trigger_contact_created": TriggerConfig,
    "trigger_contact_updated": TriggerConfig,
    "trigger_webhook": WebhookConfig,
    "trigger_schedule": ScheduleConfig,
    "trigger_manual": ManualConfig,
    "trigger_email_received": EmailReceivedConfig,
    "trigger_chat_message": ChatMessageConfig,
    "if_then": IfThenConfig,
    "filter": FilterConfig,
    "split_ab": SplitABConfig,
    "merge": MergeConfig,
    "loop_iterator": LoopIteratorConfig,
    "wait_delay": WaitDelayConfig,
    "transform_data": TransformDataConfig,
}


# ========== Graph ==========


class Node(BaseModel):
    """Graph node with kind-specific configuration"""

    id: str
    kind: str
    label: str | None = None

    # Parsed into the model registered for ``kind`` (behaviors use BehaviorConfig)
    config: SerializeAsAny[NodeConfig] = Field(default_factory=dict, validate_default=True)

    # Logic and trigger nodes without outgoing edges must opt in explicitly
    terminal: bool = False

    # UI metadata (position, styling) for visual editors
    ui_metadata: dict | None = None

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        """Ensure node ID is a valid Python identifier.

        Node ids double as keys of the run context and as the first segment
        of condition field paths, so they must be clean identifiers.
        """
        if not v.isidentifier():
            raise ValueError(f"Invalid node ID: '{v}'. Must be a valid Python identifier.")
        if v in RESERVED_NODE_IDS:
            raise ValueError(f"Node ID '{v}' is reserved")
        return v

    @field_validator("config", mode="before")
    @classmethod
    def parse_config_for_kind(cls, v: Any, info: ValidationInfo) -> Any:
        """Select the config model from the node kind."""
        kind = info.data.get("kind")
        if kind is None:
            return v
        model = CONFIG_MODELS.get(kind, BehaviorConfig)
        if isinstance(v, model):
            return v
        if isinstance(v, BaseModel):
            v = v.model_dump()
        return model.model_validate(v or {})

    @property
    def category(self) -> NodeCategory:
        return category_for(self.kind)

    @property
    def handles(self) -> NodeHandles:
        return handles_for(self.kind)


class Edge(BaseModel):
    """Directed edge between two node handles"""

    id: str
    source_node_id: str
    source_handle: str | None = None  # Defaults to the source's only output handle
    target_node_id: str
    target_handle: str | None = None  # Defaults to the target's only input handle
    # Target field -> dotted path into the source output, exposed to the target as ``input``
    data_mapping: dict[str, str] = Field(default_factory=dict)

    @field_validator("data_mapping")
    @classmethod
    def validate_data_mapping(cls, v):
        for target_field, path in v.items():
            if not target_field.isidentifier():
                raise ValueError(f"Invalid mapped field name: {target_field}")
            if not re.match(_FIELD_PATTERN, path):
                raise ValueError(f"Invalid source path: {path}")
        return v


class TriggerSpec(BaseModel):
    """Which external event kind starts a run at which trigger node"""

    node_id: str
    event_kind: str


class WorkflowGraph(BaseModel):
    """The editable body of a workflow definition"""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    triggers: list[TriggerSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def fill_defaults(self) -> WorkflowGraph:
        """Resolve unambiguous edge handles and derive trigger specs."""
        by_id = {n.id: n for n in self.nodes}
        for edge in self.edges:
            source = by_id.get(edge.source_node_id)
            target = by_id.get(edge.target_node_id)
            if edge.source_handle is None and source and len(source.handles.outputs) == 1:
                edge.source_handle = source.handles.outputs[0]
            if edge.target_handle is None and target and len(target.handles.inputs) == 1:
                edge.target_handle = target.handles.inputs[0]

        if not self.triggers:
            self.triggers = [
                TriggerSpec(node_id=n.id, event_kind=TRIGGER_EVENT_KINDS[n.kind])
                for n in self.nodes
                if n.category == NodeCategory.TRIGGER
            ]
        return self

    def get_node(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def outgoing(self, node_id: str, handle: str | None = None) -> list[Edge]:
        """Edges leaving ``node_id``, optionally only those from ``handle``."""
        return [
            e
            for e in self.edges
            if e.source_node_id == node_id and (handle is None or e.source_handle == handle)
        ]

    def incoming(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target_node_id == node_id]

    def triggers_for(self, event_kind: str) -> list[TriggerSpec]:
        return [t for t in self.triggers if t.event_kind == event_kind]


class WorkflowDefinition(BaseModel):
    """A stored workflow definition and its lifecycle status"""

    id: str
    org_id: str
    name: str
    description: str | None = None
    status: DefinitionStatus = DefinitionStatus.DRAFT
    version: int = 1
    graph: WorkflowGraph = Field(default_factory=WorkflowGraph)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    activated_at: datetime | None = None
