# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Built-in node handlers.

Small, dependency-free handlers every installation ships with. Anything
heavier (HTTP, LLM, scripting) is registered by plugins at startup.

Handler parameters are read from the merged input first, so upstream data
overrides a node's static config; the parameters themselves are not passed
downstream.
"""

import asyncio
from typing import Any, Dict, Iterable

from .models import BRANCH_KEY
from .registry import HandlerRegistry


def _param(name: str, input: Dict[str, Any], config: Dict[str, Any], default: Any = None) -> Any:
    if name in input:
        return input[name]
    return config.get(name, default)


def _passthrough(input: Dict[str, Any], params: Iterable[str] = ()) -> Dict[str, Any]:
    return {k: v for k, v in input.items() if k not in params}


class ManualTriggerHandler:
    """Start node: forwards the caller's run input unchanged"""

    def invoke(self, input: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        return _passthrough(input)


class NoopHandler:
    """Passes its merged input through"""

    def invoke(self, input: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        return dict(input)


class SetHandler:
    """
    Sets fields on the data flowing through.

    config:
        values: mapping of fields to set
        keep_only_set: drop incoming fields, output only `values`
    """

    params = ("values", "keep_only_set")

    def invoke(self, input: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        values = _param("values", input, config) or {}
        if not isinstance(values, dict):
            raise ValueError("'values' must be a mapping")

        if _param("keep_only_set", input, config):
            return dict(values)

        output = _passthrough(input, self.params)
        output.update(values)
        return output


class DelayHandler:
    """
    Waits before passing its input through.

    config:
        seconds: how long to wait (default 1)
    """

    params = ("seconds",)

    async def invoke(self, input: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        seconds = float(_param("seconds", input, config, 1))
        if seconds < 0:
            raise ValueError("'seconds' cannot be negative")
        await asyncio.sleep(seconds)
        return _passthrough(input, self.params)


class SwitchHandler:
    """
    Routes the data flowing through to one output port.

    config:
        field: input field whose value names the port to route to
        fallback: port used when the field is missing (optional)
    """

    params = ("field", "fallback")

    def invoke(self, input: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        field = _param("field", input, config)
        if not field:
            raise ValueError("'field' is required")

        branch = input.get(field)
        if branch is None:
            branch = _param("fallback", input, config)
        if branch is None:
            raise ValueError(f"Input has no '{field}' and no fallback is configured")

        output = _passthrough(input, self.params)
        output[BRANCH_KEY] = str(branch)
        return output


BUILTIN_HANDLERS = {
    "manual_trigger": ManualTriggerHandler,
    "noop": NoopHandler,
    "set": SetHandler,
    "delay": DelayHandler,
    "switch": SwitchHandler,
}


def register_builtin_handlers(registry: HandlerRegistry, replace: bool = False) -> HandlerRegistry:
    """Register the built-in handlers; returns the registry for chaining"""
    for type_tag, handler_cls in BUILTIN_HANDLERS.items():
        if replace or not registry.has_handler(type_tag):
            registry.register(type_tag, handler_cls(), replace=replace)
    return registry
