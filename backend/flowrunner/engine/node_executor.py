# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Node Executor

Runs one node's handler with its merged input and turns whatever happens
into a NodeResult. Handler faults never escape as exceptions.
"""

import asyncio
import copy
import functools
import inspect
from concurrent.futures import Executor
from collections.abc import Mapping
from typing import Any, Dict, Iterable, Optional

from flowrunner.core.errors import sanitize_error_for_user
from .models import (
    BRANCH_KEY,
    DEFAULT_PORT,
    Edge,
    ErrorDetail,
    Node,
    NodeErrorCode,
    NodeResult,
    NodeStatus,
    utcnow,
)
from .exceptions import NodeExecutionException, NodeTimeoutException
from .registry import HandlerRegistry, NodeHandler


def routed_branch(output: Optional[Mapping]) -> Optional[str]:
    """Branch a node's output routes to, or None when it feeds every edge"""
    if not output or output.get(BRANCH_KEY) is None:
        return None
    return str(output[BRANCH_KEY])


def is_edge_taken(edge: Edge, output: Optional[Mapping]) -> bool:
    """
    Whether data flows along an edge given its source's output.

    A routing output only feeds edges leaving the chosen port; edges from
    the unnamed or default port are always taken.
    """
    branch = routed_branch(output)
    if branch is None:
        return True
    return edge.source_port in (None, DEFAULT_PORT) or edge.source_port == branch


def merge_inputs(
    node: Node,
    incoming: Iterable[Edge],
    outputs: Mapping,
    run_input: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Build a node's input from its static config and upstream outputs.

    Start from the node's config; runtime data overrides it:
    - trigger nodes receive the caller's run input
    - each edge contributes the source's output (or one named output port);
      on the default target port a mapping is spread into the top level,
      otherwise the value lands under the target port name

    Edges whose source has no entry in `outputs` are ignored, as are edges a
    routing output did not take. The routed branch port carries the whole
    output, without its routing field.
    """
    merged: Dict[str, Any] = dict(node.config)

    if run_input:
        merged.update(run_input)

    for edge in incoming:
        if edge.source not in outputs:
            continue
        output = outputs[edge.source] or {}
        if not is_edge_taken(edge, output):
            continue

        branch = routed_branch(output)
        if branch is not None:
            output = {k: v for k, v in output.items() if k != BRANCH_KEY}

        if edge.source_port is None or edge.source_port == branch:
            value = output
        else:
            value = output.get(edge.source_port)
        port = edge.target_port or DEFAULT_PORT

        if port == DEFAULT_PORT and isinstance(value, Mapping):
            merged.update(value)
        elif port == DEFAULT_PORT and edge.source_port is not None:
            merged[edge.source_port] = value
        else:
            merged[port] = value

    return merged


def normalize_output(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    return {"result": value}


class NodeExecutor:
    """
    Stateless node runner shared by every execution.

    Coroutine handlers are awaited on the event loop; plain handlers run on
    the injected worker pool so they never block the coordinator.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        default_timeout: float = 30.0,
        worker_pool: Optional[Executor] = None,
        retry_attempts: int = 0,
        retry_delay: float = 1.0,
        max_retry_delay: float = 10.0,
        backoff_multiplier: float = 2.0
    ):
        self.registry = registry
        self.default_timeout = default_timeout
        self.worker_pool = worker_pool
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.backoff_multiplier = backoff_multiplier

    async def execute(
        self,
        node: Node,
        merged_input: Dict[str, Any],
        timeout: Optional[float] = None
    ) -> NodeResult:
        """
        Execute a single node.

        Returns a SUCCEEDED or FAILED NodeResult; never raises for handler
        faults (cancellation of the awaiting task still propagates).
        """
        started_at = utcnow()

        if node.disabled:
            return NodeResult(
                node_id=node.node_id,
                status=NodeStatus.SUCCEEDED,
                started_at=started_at,
                finished_at=utcnow(),
            )

        handler = self.registry.resolve_handler(node.type)
        if handler is None:
            return NodeResult(
                node_id=node.node_id,
                status=NodeStatus.FAILED,
                error=ErrorDetail(
                    code=NodeErrorCode.HANDLER_NOT_FOUND.value,
                    message=f"No handler registered for node type '{node.type}'",
                    subject=node.node_id,
                ),
                started_at=started_at,
                finished_at=utcnow(),
            )

        timeout = timeout or node.timeout or self.default_timeout
        retries = node.retry_attempts if node.retry_attempts is not None else self.retry_attempts
        delay = self.retry_delay

        attempt = 0
        while True:
            attempt += 1
            try:
                output = await self._run_with_timeout(node, handler, merged_input, timeout)
            except NodeExecutionException as e:
                error = e.to_detail()
            else:
                return NodeResult(
                    node_id=node.node_id,
                    status=NodeStatus.SUCCEEDED,
                    output=output,
                    started_at=started_at,
                    finished_at=utcnow(),
                    attempts=attempt,
                )

            if attempt > retries:
                return NodeResult(
                    node_id=node.node_id,
                    status=NodeStatus.FAILED,
                    error=error,
                    started_at=started_at,
                    finished_at=utcnow(),
                    attempts=attempt,
                )

            if delay > 0:
                await asyncio.sleep(delay)
            delay = min(delay * self.backoff_multiplier, self.max_retry_delay)

    async def _run_with_timeout(
        self,
        node: Node,
        handler: NodeHandler,
        merged_input: Dict[str, Any],
        timeout: float
    ) -> Dict[str, Any]:
        """Invoke the handler once; failures come back as NodeExecutionException"""
        # Handlers get private copies; upstream outputs are shared between siblings
        handler_input = copy.deepcopy(merged_input)
        handler_config = copy.deepcopy(node.config)

        # Handler gets its own task: a TimeoutError or CancelledError it raises
        # itself is a handler fault, not our deadline or our cancellation
        task = asyncio.ensure_future(self._invoke(handler, handler_input, handler_config))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise NodeTimeoutException(node.node_id, timeout)

        try:
            result = task.result()
        except asyncio.CancelledError:
            raise NodeExecutionException(node.node_id, NodeErrorCode.HANDLER_FAILURE, "Handler was cancelled")
        except Exception as e:
            raise NodeExecutionException(
                node.node_id,
                NodeErrorCode.HANDLER_FAILURE,
                sanitize_error_for_user(e, include_type=False)
            )

        return normalize_output(result)

    async def _invoke(self, handler: NodeHandler, input: Dict[str, Any], config: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(handler.invoke):
            return await handler.invoke(input, config)

        # Sync handler: a thread we cannot interrupt, so the deadline bounds
        # how long we wait, not how long it runs
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            self.worker_pool,
            functools.partial(handler.invoke, input, config)
        )
        if inspect.isawaitable(result):
            result = await result
        return result
