"""Error taxonomy for the workflow engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from layerflow.core.validator import Violation


class LayerflowError(Exception):
    """Base class for engine errors."""

    pass


class GraphValidationError(LayerflowError):
    """Workflow definition is malformed.

    Raised at save or activation time, never while a run executes.
    """

    def __init__(self, message: str, violations: list[Violation] | None = None):
        super().__init__(message)
        self.violations = violations or []


class HandlerError(LayerflowError):
    """A behavior handler failed. Retried locally with backoff."""

    pass


class StepTimeoutError(HandlerError):
    """A behavior handler exceeded its execution budget."""

    pass


class BudgetExceeded(LayerflowError):
    """Metering gate rejected the charge for a step. Never retried."""

    def __init__(self, org_id: str, amount: int, available: int):
        super().__init__(
            f"Insufficient credit for org '{org_id}': needs {amount}, has {available}"
        )
        self.org_id = org_id
        self.amount = amount
        self.available = available


class DefinitionNotFoundError(LayerflowError):
    """Workflow definition does not exist."""

    pass


class DefinitionLockedError(LayerflowError):
    """Definition has been activated and can no longer be edited."""

    pass


class InvalidTransitionError(LayerflowError):
    """Requested definition status change is not allowed."""

    pass


class RunNotFoundError(LayerflowError):
    """Workflow run does not exist."""

    pass


class UnknownBehaviorError(LayerflowError):
    """No behavior handler is registered for a node kind."""

    pass
