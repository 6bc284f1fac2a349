# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Node Handler Registry

Maps a node's type tag to the handler that performs its work. The engine
only ever talks to handlers through `invoke(input, config)`.
"""

import threading
from typing import Any, Callable, Dict, FrozenSet, Optional, Protocol, runtime_checkable

from flowrunner.core.errors import ConflictError, ValidationError


@runtime_checkable
class NodeHandler(Protocol):
    """
    Handler contract.

    `invoke` may be a plain function (run on the worker pool) or a
    coroutine function (awaited on the event loop). It returns the node's
    output mapping or raises.
    """

    def invoke(self, input: Dict[str, Any], config: Dict[str, Any]) -> Any:
        ...


class FunctionHandler:
    """Adapts a bare callable to the handler contract"""

    def __init__(self, func: Callable[..., Any]):
        self.func = func
        self.invoke = func

    def __repr__(self) -> str:
        return f"FunctionHandler({getattr(self.func, '__name__', self.func)!r})"


class HandlerRegistry:
    """
    Capability-keyed handler registry.

    Populated at startup, read concurrently by every execution afterwards.

    Usage:
        registry = HandlerRegistry()

        @registry.handler("uppercase")
        def uppercase(input, config):
            return {"text": input["text"].upper()}

        registry.resolve_handler("uppercase")
    """

    def __init__(self, handlers: Optional[Dict[str, Any]] = None):
        self._handlers: Dict[str, NodeHandler] = {}
        self._lock = threading.Lock()
        for type_tag, handler in (handlers or {}).items():
            self.register(type_tag, handler)

    def register(self, type_tag: str, handler: Any, replace: bool = False) -> None:
        """
        Register a handler for a type tag.

        Accepts an object with an `invoke` method or a bare callable.
        Raises ConflictError if the tag is taken and `replace` is False.
        """
        if not type_tag:
            raise ValidationError("Handler type tag cannot be empty", field="type_tag")

        if not isinstance(handler, NodeHandler):
            if not callable(handler):
                raise ValidationError(
                    f"Handler for '{type_tag}' must be callable or define invoke()",
                    field="handler"
                )
            handler = FunctionHandler(handler)

        with self._lock:
            if type_tag in self._handlers and not replace:
                raise ConflictError(
                    f"Handler already registered for node type: {type_tag}",
                    resource=type_tag
                )
            # Copy-on-write so readers never see a dict mid-update
            handlers = dict(self._handlers)
            handlers[type_tag] = handler
            self._handlers = handlers

    def handler(self, type_tag: str, replace: bool = False) -> Callable:
        """Decorator form of register()"""
        def decorator(func):
            self.register(type_tag, func, replace=replace)
            return func
        return decorator

    def unregister(self, type_tag: str) -> bool:
        with self._lock:
            if type_tag not in self._handlers:
                return False
            handlers = dict(self._handlers)
            del handlers[type_tag]
            self._handlers = handlers
            return True

    def resolve_handler(self, type_tag: str) -> Optional[NodeHandler]:
        """Return the handler for a type tag, or None if nothing is registered"""
        return self._handlers.get(type_tag)

    def has_handler(self, type_tag: str) -> bool:
        return type_tag in self._handlers

    def registered_types(self) -> FrozenSet[str]:
        return frozenset(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)
