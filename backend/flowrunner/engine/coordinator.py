# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Execution Coordinator

Drives one workflow run from RUNNING to a terminal status: dispatches nodes
as their predecessors finish, skips everything downstream of a failure,
and honors cancellation at dispatch boundaries.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from flowrunner.core.errors import ConflictError, NotFoundError, sanitize_error_for_user
from flowrunner.core.logging import EngineLogger
from flowrunner.execution_store import ExecutionRecordStore
from .context import ExecutionContext
from .exceptions import RecordStoreError
from .logging import ExecutionLogger
from .models import ErrorDetail, Execution, ExecutionStatus, NodeResult, NodeStatus, RunErrorCode
from .node_executor import NodeExecutor, is_edge_taken, merge_inputs

logger = logging.getLogger("flowrunner.coordinator")


class StoreWriter:
    """
    Record-store writes with retry and exponential backoff.

    Missing or already-terminal records are not transient and fail at once.
    """

    def __init__(
        self,
        store: ExecutionRecordStore,
        retry_attempts: int = 3,
        retry_delay: float = 0.1,
        max_retry_delay: float = 2.0,
        backoff_multiplier: float = 2.0
    ):
        self.store = store
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.backoff_multiplier = backoff_multiplier

    async def create(self, execution: Execution) -> None:
        await self._call(execution.execution_id, "create", self.store.create, execution)

    async def update_status(self, execution_id: str, status: ExecutionStatus, **fields: Any) -> None:
        await self._call(execution_id, "update_status", self.store.update_status, execution_id, status, **fields)

    async def update_node_result(self, execution_id: str, result: NodeResult) -> None:
        await self._call(
            execution_id, "update_node_result",
            self.store.update_node_result, execution_id, result.node_id, result
        )

    async def _call(self, execution_id: str, operation_name: str, func: Callable[..., Awaitable], *args, **kwargs):
        delay = self.retry_delay
        last_error: Optional[Exception] = None

        for attempt in range(self.retry_attempts + 1):
            try:
                return await func(*args, **kwargs)
            except (ConflictError, NotFoundError) as e:
                raise RecordStoreError(execution_id, f"{operation_name} rejected: {e}") from e
            except Exception as e:
                last_error = e
                if attempt < self.retry_attempts:
                    logger.warning(
                        f"Store {operation_name} attempt {attempt + 1}/{self.retry_attempts + 1} "
                        f"failed: {e}",
                        extra={"execution_id": execution_id}
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * self.backoff_multiplier, self.max_retry_delay)

        raise RecordStoreError(
            execution_id,
            f"{operation_name} failed after {self.retry_attempts + 1} attempts: {last_error}"
        ) from last_error


class ExecutionCoordinator:
    """
    Owns one execution for its whole life.

    Nodes become ready when every predecessor is terminal and at least one
    succeeded along an edge its output routes to. Ready nodes run
    concurrently up to `max_parallel_nodes`; completions are handled in
    whatever order they arrive.
    """

    def __init__(
        self,
        context: ExecutionContext,
        node_executor: NodeExecutor,
        writer: StoreWriter,
        execution_logger: Optional[ExecutionLogger] = None,
        max_parallel_nodes: int = 10
    ):
        self.context = context
        self.plan = context.plan
        self.node_executor = node_executor
        self.writer = writer
        self.execution_logger = execution_logger or ExecutionLogger()
        self.max_parallel_nodes = max_parallel_nodes
        self._position = {node_id: i for i, node_id in enumerate(self.plan.order)}
        self._queued: Set[str] = set()
        self._recorded_terminal = False
        self.log = EngineLogger(logger, {
            "workflow_id": context.workflow_id,
            "execution_id": context.execution_id,
        })

    @property
    def execution_id(self) -> str:
        return self.context.execution_id

    async def run(self) -> Execution:
        """
        Execute the workflow to a terminal status.

        Returns a snapshot of the finished Execution; persistence failures
        and engine faults end the run as FAILED instead of raising. If the
        task itself is cancelled the run is recorded CANCELLED and the
        cancellation propagates.
        """
        try:
            await self._transition_running()
            await self.execution_logger.execution_start(self.context.snapshot())
            await self._drive()
            await self._finish()
        except RecordStoreError as e:
            self.log.error(f"Execution failed: {e}")
            await self._abort(
                ExecutionStatus.FAILED,
                ErrorDetail(code=RunErrorCode.RECORD_STORE_FAILURE.value, message=e.message)
            )
        except asyncio.CancelledError:
            self.log.warning("Execution interrupted")
            await self._abort(ExecutionStatus.CANCELLED)
            raise
        except Exception as e:
            self.log.exception("Execution failed unexpectedly")
            await self._abort(
                ExecutionStatus.FAILED,
                ErrorDetail(code=RunErrorCode.ENGINE_FAILURE.value, message=sanitize_error_for_user(e))
            )

        return self.context.snapshot()

    async def _transition_running(self) -> None:
        self.context.set_status(ExecutionStatus.RUNNING)
        await self.writer.update_status(
            self.execution_id,
            ExecutionStatus.RUNNING,
            started_at=self.context.execution.started_at
        )

    async def _drive(self) -> None:
        """Dispatch loop; returns once nothing is running and nothing is ready"""
        ready: Deque[str] = deque()
        self._enqueue(ready, self.plan.triggers)
        in_flight: Dict[asyncio.Task, str] = {}

        try:
            while True:
                # Dispatch boundary: cancellation stops new work here
                while ready and len(in_flight) < self.max_parallel_nodes and not self.context.token.cancelled:
                    node_id = ready.popleft()
                    task = await self._dispatch(node_id)
                    in_flight[task] = node_id

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: self._position[in_flight[t]]):
                    node_id = in_flight.pop(task)
                    result = task.result()
                    await self._complete(node_id, result)
                    self._enqueue(ready, await self._advance(node_id, result))
        finally:
            # Only reached with work in flight if we are failing or being cancelled
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    def _enqueue(self, ready: Deque[str], node_ids) -> None:
        for node_id in node_ids:
            if node_id not in self._queued:
                self._queued.add(node_id)
                ready.append(node_id)

    async def _dispatch(self, node_id: str) -> asyncio.Task:
        node = self.plan.node(node_id)
        running = self.context.mark_dispatched(node_id)
        await self.writer.update_node_result(self.execution_id, running)
        await self.execution_logger.node_start(self.execution_id, node)

        outputs = {
            pred: self.context.output_of(pred)
            for pred in self.plan.predecessors[node_id]
            if self.context.status_of(pred) == NodeStatus.SUCCEEDED
        }
        run_input = self.context.execution.input if node_id in self.plan.triggers else None
        merged = merge_inputs(node, self.plan.incoming[node_id], outputs, run_input)

        return asyncio.create_task(
            self.node_executor.execute(node, merged),
            name=f"{self.execution_id}:{node_id}"
        )

    async def _complete(self, node_id: str, result: NodeResult) -> None:
        self.context.record(result)
        await self.writer.update_node_result(self.execution_id, result)
        await self.execution_logger.node_end(self.execution_id, self.plan.node(node_id), result)

    async def _advance(self, node_id: str, result: NodeResult) -> List[str]:
        """Apply a finished node to its successors; returns newly ready nodes"""
        if result.status == NodeStatus.FAILED:
            # Everything downstream of a failure is skipped, however else it is fed
            descendants = self.plan.descendants(node_id)
            for candidate in self.plan.order:
                if candidate in descendants and self.context.status_of(candidate) == NodeStatus.PENDING:
                    await self._skip(candidate, f"upstream node '{node_id}' failed")
            return []

        newly_ready = []
        worklist = deque(sorted(self.plan.successors[node_id], key=self._position.__getitem__))
        while worklist:
            candidate = worklist.popleft()
            if self.context.status_of(candidate) != NodeStatus.PENDING or candidate in self._queued:
                continue

            statuses = [self.context.status_of(p) for p in self.plan.predecessors[candidate]]
            if not all(status.is_terminal for status in statuses):
                continue

            if self._is_fed(candidate):
                newly_ready.append(candidate)
            else:
                # Nothing will ever feed this node
                await self._skip(candidate, "no upstream node routed to it")
                worklist.extend(sorted(self.plan.successors[candidate], key=self._position.__getitem__))

        return newly_ready

    def _is_fed(self, node_id: str) -> bool:
        return any(
            self.context.status_of(edge.source) == NodeStatus.SUCCEEDED
            and is_edge_taken(edge, self.context.output_of(edge.source))
            for edge in self.plan.incoming[node_id]
        )

    async def _skip(self, node_id: str, reason: str) -> None:
        result = self.context.mark_skipped(node_id)
        await self.writer.update_node_result(self.execution_id, result)
        await self.execution_logger.node_skip(self.execution_id, node_id, reason)

    async def _finish(self) -> None:
        execution = self.context.execution

        if self.context.token.cancelled:
            for node_id in self.context.pending_nodes():
                await self._skip(node_id, "execution cancelled")
            status = ExecutionStatus.CANCELLED
        elif self.context.has_failures():
            failed = [
                node_id for node_id in self.plan.order
                if self.context.status_of(node_id) == NodeStatus.FAILED
            ]
            execution.error = ErrorDetail(
                code=RunErrorCode.NODE_FAILURE.value,
                message=f"Nodes failed: {failed}",
                subject=failed[0],
            )
            status = ExecutionStatus.FAILED
        else:
            execution.output = self.context.sink_outputs()
            status = ExecutionStatus.COMPLETED

        self.context.set_status(status)
        await self.writer.update_status(
            self.execution_id,
            status,
            finished_at=execution.finished_at,
            error=execution.error,
            output=execution.output,
        )
        self._recorded_terminal = True
        await self.execution_logger.execution_end(self.context.snapshot())

    async def _abort(self, status: ExecutionStatus, error: Optional[ErrorDetail] = None) -> None:
        """
        End the run outside the normal path.

        Unfinished nodes become SKIPPED and the terminal status is written
        straight to the store, once and without retry. Store failures here
        are logged only; the in-memory Execution is terminal either way.
        """
        execution = self.context.execution
        if self._recorded_terminal:
            return

        unfinished = [
            node_id for node_id in self.plan.order
            if not self.context.status_of(node_id).is_terminal
        ]
        skipped = [self.context.mark_skipped(node_id) for node_id in unfinished]
        execution.error = error
        self.context.set_status(status)

        store = self.writer.store
        try:
            for result in skipped:
                await store.update_node_result(self.execution_id, result.node_id, result)
        except Exception as e:
            self.log.error(f"Could not record skipped nodes: {e}")
        try:
            await store.update_status(
                self.execution_id,
                status,
                finished_at=execution.finished_at,
                error=execution.error,
            )
        except Exception as e:
            self.log.error(f"Could not record {status.value} status: {e}")

        try:
            await self.execution_logger.execution_end(self.context.snapshot())
        except Exception as e:
            self.log.error(f"Could not log execution end: {e}")
