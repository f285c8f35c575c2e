"""Workflow execution engine core."""

from layerflow.core.behaviors import BehaviorContext, BehaviorRegistry, register_builtin_behaviors
from layerflow.core.config import EngineConfig, RetryPolicy, load_config
from layerflow.core.engine import WorkflowEngine
from layerflow.core.errors import (
    BudgetExceeded,
    DefinitionLockedError,
    DefinitionNotFoundError,
    GraphValidationError,
    HandlerError,
    InvalidTransitionError,
    LayerflowError,
    RunNotFoundError,
    StepTimeoutError,
    UnknownBehaviorError,
)
from layerflow.core.graph_schema import (
    DefinitionStatus,
    Edge,
    Node,
    RunStatus,
    StepOutcome,
    StepState,
    TriggerSpec,
    WorkflowDefinition,
    WorkflowGraph,
)
from layerflow.core.timers import FrozenClock, SystemClock

__all__ = [
    "BehaviorContext",
    "BehaviorRegistry",
    "BudgetExceeded",
    "DefinitionLockedError",
    "DefinitionNotFoundError",
    "DefinitionStatus",
    "Edge",
    "EngineConfig",
    "FrozenClock",
    "GraphValidationError",
    "HandlerError",
    "InvalidTransitionError",
    "LayerflowError",
    "Node",
    "RetryPolicy",
    "RunNotFoundError",
    "RunStatus",
    "StepOutcome",
    "StepState",
    "StepTimeoutError",
    "SystemClock",
    "TriggerSpec",
    "UnknownBehaviorError",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowGraph",
    "load_config",
    "register_builtin_behaviors",
]
