"""Layerflow - durable workflow execution engine.

Turns external events into executed side-effecting steps of a declarative
trigger/action/logic graph, with durable timers, retries and metering.
"""

__version__ = "0.1.0"
