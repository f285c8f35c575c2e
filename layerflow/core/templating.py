"""Render behavior params and transform mappings against the run context."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from layerflow.core.errors import HandlerError

# SECURITY: Use SandboxedEnvironment to prevent arbitrary code execution
# StrictUndefined raises errors on undefined variables (catches typos)
_env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)


def render_value(value: Any, context: Mapping[str, Any]) -> Any:
    """Recursively render template strings inside ``value``.

    Strings without ``{{``/``{%`` markers are returned unchanged so plain
    params never pay for template compilation. Use the ``default`` filter for
    optional fields: ``{{ trigger.phone | default('') }}``.
    """
    if isinstance(value, str):
        if "{{" not in value and "{%" not in value:
            return value
        try:
            return _env.from_string(value).render(**context)
        except TemplateError as e:
            raise HandlerError(f"Could not render template '{value}': {e}") from e
    if isinstance(value, dict):
        return {k: render_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, context) for v in value]
    return value
