# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Execution Service

Entry point for running workflows: loads and resolves the workflow, creates
the execution record and hands the run to a coordinator task.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from flowrunner.core.config import Config, get_config
from flowrunner.core.errors import ConflictError, ExecutionError, FlowRunnerError
from flowrunner.core.logging import get_engine_logger, get_logger, log_event
from flowrunner.engine.context import CancellationToken, ExecutionContext
from flowrunner.engine.coordinator import ExecutionCoordinator, StoreWriter
from flowrunner.engine.exceptions import GraphError, RecordStoreError
from flowrunner.engine.handlers import register_builtin_handlers
from flowrunner.engine.logging import ExecutionLogger
from flowrunner.engine.models import (
    ErrorDetail,
    Execution,
    ExecutionStatus,
    RunErrorCode,
    TriggerType,
    utcnow,
)
from flowrunner.engine.node_executor import NodeExecutor
from flowrunner.engine.registry import HandlerRegistry
from flowrunner.engine.resolver import resolve_workflow
from flowrunner.execution_store import (
    ExecutionRecordStore,
    InMemoryExecutionStore,
    JsonFileExecutionStore,
    new_execution_id,
)
from flowrunner.workflow_store import JsonWorkflowSource, WorkflowSource

logger = get_logger("flowrunner.service")


@dataclass
class _RunHandle:
    workflow_id: str
    task: asyncio.Task
    token: CancellationToken


class ExecutionService:
    """
    Runs workflows and answers questions about their executions.

    Responsibilities:
    - Starting runs (awaited or fire-and-forget)
    - Cooperative cancellation of live runs
    - Query passthroughs to the execution record store

    One worker pool is shared by every execution for synchronous handlers.
    """

    def __init__(
        self,
        workflow_source: WorkflowSource,
        store: ExecutionRecordStore,
        registry: HandlerRegistry,
        config: Optional[Config] = None,
        worker_pool: Optional[ThreadPoolExecutor] = None,
        execution_logger: Optional[ExecutionLogger] = None
    ):
        self.config = config or Config()
        self.workflow_source = workflow_source
        self.store = store
        self.registry = registry

        self._owns_pool = worker_pool is None
        self.worker_pool = worker_pool or ThreadPoolExecutor(
            max_workers=self.config.worker_pool_size,
            thread_name_prefix="flowrunner-node"
        )

        self.node_executor = NodeExecutor(
            registry,
            default_timeout=self.config.default_node_timeout,
            worker_pool=self.worker_pool,
            retry_attempts=self.config.node_retry_attempts,
            retry_delay=self.config.node_retry_delay,
            max_retry_delay=self.config.node_retry_max_delay,
            backoff_multiplier=self.config.backoff_multiplier,
        )
        self.writer = StoreWriter(
            store,
            retry_attempts=self.config.store_retry_attempts,
            retry_delay=self.config.store_retry_delay,
            max_retry_delay=self.config.store_retry_max_delay,
            backoff_multiplier=self.config.backoff_multiplier,
        )
        self.execution_logger = execution_logger or ExecutionLogger(history_mcp_url=self.config.history_url)

        # Live runs only; entries leave as soon as the coordinator task ends
        self._runs: Dict[str, _RunHandle] = {}
        self._closed = False

    async def execute_async(
        self,
        workflow_id: str,
        input: Optional[Dict[str, Any]] = None,
        trigger_type: TriggerType = TriggerType.MANUAL
    ) -> "asyncio.Future[Execution]":
        """
        Start a run and return without waiting for it.

        The PENDING record exists by the time this returns. The returned
        future resolves to the terminal Execution; graph errors come back as
        an already-resolved future holding a FAILED Execution.

        Raises NotFoundError if the workflow does not exist.
        """
        try:
            if self._closed:
                raise ExecutionError("Execution service is closed")
            workflow = await self.workflow_source.load_workflow(workflow_id)
        except FlowRunnerError as e:
            log_event(logger, "execution_rejected", level="WARNING", workflow_id=workflow_id, **e.log_fields())
            raise

        execution = Execution(
            execution_id=new_execution_id(),
            workflow_id=workflow_id,
            workflow=workflow.snapshot(),
            trigger_type=trigger_type,
            input=dict(input or {}),
        )

        try:
            plan = resolve_workflow(execution.workflow, self.registry)
        except GraphError as e:
            logger.warning(f"Workflow {workflow_id} rejected: {e.message}")
            return await self._fail_before_start(execution, e.to_detail())

        token = CancellationToken()
        context = ExecutionContext(execution, plan, token)

        try:
            await self.writer.create(context.snapshot())
        except RecordStoreError as e:
            logger.error(f"Could not create execution record {execution.execution_id}: {e}")
            return await self._fail_before_start(
                execution,
                ErrorDetail(code=RunErrorCode.RECORD_STORE_FAILURE.value, message=e.message),
                persist=False
            )

        coordinator = ExecutionCoordinator(
            context,
            self.node_executor,
            self.writer,
            execution_logger=self.execution_logger,
            max_parallel_nodes=self.config.max_parallel_nodes,
        )
        task = asyncio.create_task(coordinator.run(), name=f"execution:{execution.execution_id}")
        self._runs[execution.execution_id] = _RunHandle(workflow_id=workflow_id, task=task, token=token)
        task.add_done_callback(lambda _: self._runs.pop(execution.execution_id, None))

        logger.info(f"Started execution {execution.execution_id} of workflow {workflow_id}")
        return task

    async def execute(
        self,
        workflow_id: str,
        input: Optional[Dict[str, Any]] = None,
        trigger_type: TriggerType = TriggerType.MANUAL
    ) -> Execution:
        """Run a workflow to completion and return the terminal Execution"""
        future = await self.execute_async(workflow_id, input, trigger_type)
        return await future

    async def _fail_before_start(
        self,
        execution: Execution,
        error: ErrorDetail,
        persist: bool = True
    ) -> "asyncio.Future[Execution]":
        execution.status = ExecutionStatus.FAILED
        execution.error = error
        execution.node_results = {}
        execution.finished_at = utcnow()

        if persist:
            try:
                await self.writer.create(execution)
            except RecordStoreError as e:
                logger.error(f"Could not record failed execution {execution.execution_id}: {e}")
                execution.error = ErrorDetail(
                    code=RunErrorCode.RECORD_STORE_FAILURE.value,
                    message=e.message
                )

        await self.execution_logger.execution_end(execution)

        future = asyncio.get_running_loop().create_future()
        future.set_result(execution.snapshot())
        return future

    def cancel(self, execution_id: str) -> bool:
        """
        Request cancellation of a live execution.

        Returns False if the execution is unknown or already finished.
        Safe to call from any thread.
        """
        handle = self._runs.get(execution_id)
        if handle is None or handle.task.done():
            return False

        handle.token.cancel()
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    def cancel_all_for_workflow(self, workflow_id: str) -> int:
        """Cancel every live execution of a workflow; returns how many were signalled"""
        execution_ids = [
            execution_id for execution_id, handle in list(self._runs.items())
            if handle.workflow_id == workflow_id
        ]
        return sum(1 for execution_id in execution_ids if self.cancel(execution_id))

    # -- queries --

    def find_by_id(self, execution_id: str) -> Optional[Execution]:
        return self.store.find_by_id(execution_id)

    def find_all(self) -> List[Execution]:
        return self.store.find_all()

    def find_by_workflow_id(self, workflow_id: str) -> List[Execution]:
        return self.store.find_by_workflow_id(workflow_id)

    def find_running(self) -> List[Execution]:
        return self.store.find_running()

    def find_by_time_range(self, start: datetime, end: datetime) -> List[Execution]:
        return self.store.find_by_time_range(start, end)

    async def delete_all(self) -> int:
        """Delete every execution record; refused while runs are live"""
        if self._runs:
            raise ConflictError(
                f"Cannot delete executions while {len(self._runs)} are running",
                resource="Execution"
            )
        deleted = await self.store.delete_all()
        logger.info(f"Deleted {deleted} execution records")
        return deleted

    async def close(self) -> None:
        """Cancel live runs, wait for them to drain, release resources"""
        self._closed = True
        handles = list(self._runs.values())
        for handle in handles:
            handle.token.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)

        if self._owns_pool:
            self.worker_pool.shutdown(wait=False)
        await self.execution_logger.close()


def create_execution_service(
    config: Optional[Config] = None,
    registry: Optional[HandlerRegistry] = None,
    workflow_source: Optional[WorkflowSource] = None,
    store: Optional[ExecutionRecordStore] = None,
    worker_pool: Optional[ThreadPoolExecutor] = None
) -> ExecutionService:
    """Wire an ExecutionService from configuration; built-in handlers are always registered"""
    config = config or get_config()

    if registry is None:
        registry = HandlerRegistry()
    register_builtin_handlers(registry)

    if workflow_source is None:
        workflow_source = JsonWorkflowSource(Path(config.workflows_path))

    if store is None:
        if config.store_backend == "json":
            store = JsonFileExecutionStore(config.executions_path)
        else:
            store = InMemoryExecutionStore()

    execution_logger = ExecutionLogger(
        logger=get_engine_logger("execution", config),
        history_mcp_url=config.history_url
    )

    return ExecutionService(
        workflow_source,
        store,
        registry,
        config=config,
        worker_pool=worker_pool,
        execution_logger=execution_logger,
    )
