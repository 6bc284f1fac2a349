# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit tests for the execution coordinator
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from flowrunner.engine.context import CancellationToken, ExecutionContext
from flowrunner.engine.coordinator import ExecutionCoordinator, StoreWriter
from flowrunner.engine.exceptions import RecordStoreError
from flowrunner.engine.logging import ExecutionLogger
from flowrunner.engine.models import (
    Execution,
    ExecutionStatus,
    Node,
    NodeStatus,
    RunErrorCode,
)
from flowrunner.engine.node_executor import NodeExecutor
from flowrunner.engine.resolver import resolve_workflow
from flowrunner.execution_store import InMemoryExecutionStore, new_execution_id
from tests.helpers import ConcurrencyGauge, GatedHandler, diamond, make_workflow


class FlakyStore(InMemoryExecutionStore):
    """Fails `failures` saves once `fail_after` saves have gone through"""

    def __init__(self, failures: int, fail_after: int = 1):
        super().__init__()
        self.failures = failures
        self.fail_after = fail_after
        self.saves = 0

    async def _save(self, execution):
        self.saves += 1
        if self.saves > self.fail_after and self.failures > 0:
            self.failures -= 1
            raise OSError("disk unavailable")
        await super()._save(execution)


@pytest.fixture
def node_executor(registry, worker_pool):
    return NodeExecutor(registry, default_timeout=5.0, worker_pool=worker_pool, retry_delay=0.0)


async def start(workflow, node_executor, store, input=None, token=None, max_parallel_nodes=10):
    """Persist a PENDING execution and return its coordinator"""
    execution = Execution(
        execution_id=new_execution_id(),
        workflow_id=workflow.workflow_id,
        workflow=workflow.snapshot(),
        input=input or {},
    )
    context = ExecutionContext(execution, resolve_workflow(execution.workflow), token)
    await store.create(context.snapshot())

    writer = StoreWriter(store, retry_attempts=2, retry_delay=0.0, max_retry_delay=0.0)
    return ExecutionCoordinator(context, node_executor, writer, max_parallel_nodes=max_parallel_nodes)


def statuses(execution):
    return {node_id: result.status for node_id, result in execution.node_results.items()}


@pytest.mark.asyncio
async def test_diamond_completes(node_executor, store):
    """A -> {B, C} -> D should run D after both branches"""
    coordinator = await start(diamond(), node_executor, store, input={"seed": 1})

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.COMPLETED
    assert set(statuses(execution).values()) == {NodeStatus.SUCCEEDED}
    results = execution.node_results
    assert results["D"].started_at >= results["B"].finished_at
    assert results["D"].started_at >= results["C"].finished_at
    assert execution.output == {"D": {"seed": 1}}
    assert execution.started_at is not None
    assert execution.finished_at >= execution.started_at
    assert execution.duration_ms >= 0
    assert results["A"].duration_ms >= 0
    assert execution.node_results["D"].attempts == 1


@pytest.mark.asyncio
async def test_diamond_with_failing_branch(node_executor, store):
    """B fails: C still runs, D is skipped, run fails"""
    coordinator = await start(diamond(b_type="fail"), node_executor, store)

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.FAILED
    assert statuses(execution) == {
        "A": NodeStatus.SUCCEEDED,
        "B": NodeStatus.FAILED,
        "C": NodeStatus.SUCCEEDED,
        "D": NodeStatus.SKIPPED,
    }
    assert execution.error.code == RunErrorCode.NODE_FAILURE.value
    assert execution.error.subject == "B"
    assert execution.output == {}


@pytest.mark.asyncio
async def test_failure_skips_all_descendants(node_executor, store):
    workflow = make_workflow(
        ["A", Node(node_id="B", type="fail"), "C", "D"],
        [("A", "B"), ("B", "C"), ("C", "D")]
    )
    coordinator = await start(workflow, node_executor, store)

    execution = await coordinator.run()

    assert statuses(execution) == {
        "A": NodeStatus.SUCCEEDED,
        "B": NodeStatus.FAILED,
        "C": NodeStatus.SKIPPED,
        "D": NodeStatus.SKIPPED,
    }


@pytest.mark.asyncio
async def test_data_flows_along_edges(node_executor, store):
    workflow = make_workflow(
        [
            Node(node_id="start", type="manual_trigger"),
            Node(node_id="shout", type="upper"),
            Node(node_id="tag", type="set", config={"values": {"tagged": True}}),
        ],
        [("start", "shout"), ("shout", "tag")]
    )
    coordinator = await start(workflow, node_executor, store, input={"text": "hi"})

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.node_results["start"].output == {"text": "hi"}
    assert execution.output == {"tag": {"text": "HI", "tagged": True}}


@pytest.mark.asyncio
async def test_run_input_reaches_only_triggers(registry, node_executor, store):
    seen = {}

    def capture(input, config):
        seen.update(input)
        return {}

    registry.register("capture", capture)
    workflow = make_workflow(
        [Node(node_id="A", type="set", config={"values": {"a": 1}, "keep_only_set": True}),
         Node(node_id="B", type="capture")],
        [("A", "B")]
    )
    coordinator = await start(workflow, node_executor, store, input={"secret": "x"})

    await coordinator.run()

    assert seen == {"a": 1}


@pytest.mark.asyncio
async def test_disabled_node_passes_through(node_executor, store):
    workflow = make_workflow(
        ["A", Node(node_id="B", type="fail", disabled=True), "C"],
        [("A", "B"), ("B", "C")]
    )
    coordinator = await start(workflow, node_executor, store)

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.node_results["B"].output == {}
    assert execution.node_results["C"].status == NodeStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_independent_nodes_run_concurrently(registry, node_executor, store):
    gate = GatedHandler()
    registry.register("gated", gate)
    workflow = make_workflow([Node(node_id=n, type="gated") for n in ("A", "B", "C")])
    coordinator = await start(workflow, node_executor, store)

    task = asyncio.create_task(coordinator.run())
    while gate.calls < 3:
        await asyncio.sleep(0.01)
    gate.release.set()
    execution = await asyncio.wait_for(task, timeout=5)

    assert execution.status == ExecutionStatus.COMPLETED
    assert gate.calls == 3


@pytest.mark.asyncio
async def test_parallelism_is_bounded(registry, node_executor, store):
    gauge = ConcurrencyGauge()
    registry.register("gauge", gauge)
    workflow = make_workflow([Node(node_id=f"n{i}", type="gauge") for i in range(6)])
    coordinator = await start(workflow, node_executor, store, max_parallel_nodes=2)

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.COMPLETED
    assert gauge.peak == 2


@pytest.mark.asyncio
async def test_cancel_lets_in_flight_node_finish(registry, node_executor, store):
    gate = GatedHandler()
    registry.register("gated", gate)
    workflow = make_workflow([Node(node_id="A", type="gated"), "B", "C"], [("A", "B"), ("B", "C")])
    token = CancellationToken()
    coordinator = await start(workflow, node_executor, store, token=token)

    task = asyncio.create_task(coordinator.run())
    await asyncio.wait_for(gate.started.wait(), timeout=5)
    token.cancel()
    gate.release.set()
    execution = await asyncio.wait_for(task, timeout=5)

    assert execution.status == ExecutionStatus.CANCELLED
    assert statuses(execution) == {
        "A": NodeStatus.SUCCEEDED,
        "B": NodeStatus.SKIPPED,
        "C": NodeStatus.SKIPPED,
    }
    assert execution.error is None


@pytest.mark.asyncio
async def test_cancel_before_start_dispatches_nothing(node_executor, store):
    token = CancellationToken()
    token.cancel()
    coordinator = await start(diamond(), node_executor, store, token=token)

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.CANCELLED
    assert set(statuses(execution).values()) == {NodeStatus.SKIPPED}


@pytest.mark.asyncio
async def test_every_transition_is_persisted(node_executor, store):
    coordinator = await start(diamond(b_type="fail"), node_executor, store)

    execution = await coordinator.run()
    stored = store.find_by_id(execution.execution_id)

    assert stored.status == ExecutionStatus.FAILED
    assert statuses(stored) == statuses(execution)
    assert stored.error == execution.error


@pytest.mark.asyncio
async def test_transient_store_failures_are_retried(node_executor):
    store = FlakyStore(failures=2)
    coordinator = await start(diamond(), node_executor, store)

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.COMPLETED
    assert store.find_by_id(execution.execution_id).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_unrecoverable_store_failure_fails_the_run(node_executor):
    store = FlakyStore(failures=1000)
    coordinator = await start(diamond(), node_executor, store)

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error.code == RunErrorCode.RECORD_STORE_FAILURE.value
    assert execution.finished_at is not None


@pytest.mark.asyncio
async def test_store_writer_gives_up_after_retries():
    store = FlakyStore(failures=1000, fail_after=0)
    writer = StoreWriter(store, retry_attempts=2, retry_delay=0.0)
    workflow = make_workflow(["A"])
    execution = Execution(execution_id="exec_x", workflow_id="wf", workflow=workflow)

    with pytest.raises(RecordStoreError, match="after 3 attempts"):
        await writer.create(execution)

    assert store.saves == 3


@pytest.mark.asyncio
async def test_store_writer_does_not_retry_conflicts(store):
    writer = StoreWriter(store, retry_attempts=5, retry_delay=0.0)
    workflow = make_workflow(["A"])
    execution = Execution(execution_id="exec_x", workflow_id="wf", workflow=workflow)
    await writer.create(execution)

    with pytest.raises(RecordStoreError, match="rejected"):
        await writer.create(execution)


@pytest.mark.asyncio
async def test_store_writer_backoff_is_capped():
    store = AsyncMock()
    store.update_status.side_effect = [OSError("a"), OSError("b"), OSError("c"), None]
    writer = StoreWriter(store, retry_attempts=3, retry_delay=0.1, max_retry_delay=0.15, backoff_multiplier=2.0)

    with patch("flowrunner.engine.coordinator.asyncio.sleep", new=AsyncMock()) as sleep:
        await writer.update_status("exec_x", ExecutionStatus.RUNNING)

    assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.15, 0.15]
    assert store.update_status.await_count == 4


@pytest.mark.asyncio
async def test_branch_routing_skips_untaken_ports(registry, node_executor, store):
    """
    start -> route -(approved)-> pay -> notify
                   -(rejected)-> refuse -> notify
    """
    workflow = make_workflow(
        [
            Node(node_id="start", type="manual_trigger"),
            Node(node_id="route", type="switch", config={"field": "decision"}),
            "pay",
            "refuse",
            "after_refuse",
            "notify",
        ],
        [
            ("start", "route"),
            ("route", "pay", "approved"),
            ("route", "refuse", "rejected"),
            ("refuse", "after_refuse"),
            ("pay", "notify"),
            ("after_refuse", "notify"),
        ]
    )
    coordinator = await start(workflow, node_executor, store, input={"decision": "approved", "amount": 5})

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.COMPLETED
    assert statuses(execution) == {
        "start": NodeStatus.SUCCEEDED,
        "route": NodeStatus.SUCCEEDED,
        "pay": NodeStatus.SUCCEEDED,
        "refuse": NodeStatus.SKIPPED,
        "after_refuse": NodeStatus.SKIPPED,
        "notify": NodeStatus.SUCCEEDED,
    }
    assert execution.node_results["pay"].output == {"decision": "approved", "amount": 5}
    assert execution.output == {"notify": {"decision": "approved", "amount": 5}}


@pytest.mark.asyncio
async def test_branch_with_no_matching_port_skips_everything_after(registry, node_executor, store):
    workflow = make_workflow(
        [Node(node_id="route", type="switch", config={"field": "kind", "fallback": "none"}), "a", "b"],
        [("route", "a", "x"), ("route", "b", "y")]
    )
    coordinator = await start(workflow, node_executor, store)

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.node_results["a"].status == NodeStatus.SKIPPED
    assert execution.node_results["b"].status == NodeStatus.SKIPPED
    assert execution.output == {}


class BrokenLogger(ExecutionLogger):
    async def node_start(self, execution_id, node):
        raise RuntimeError("logger exploded")


@pytest.mark.asyncio
async def test_engine_fault_still_ends_the_run(node_executor, store):
    coordinator = await start(diamond(), node_executor, store)
    coordinator.execution_logger = BrokenLogger()

    execution = await coordinator.run()

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error.code == RunErrorCode.ENGINE_FAILURE.value
    stored = store.find_by_id(execution.execution_id)
    assert stored.status == ExecutionStatus.FAILED
    assert all(r.status.is_terminal for r in stored.node_results.values())
    assert store.find_running() == []


@pytest.mark.asyncio
async def test_cancelling_the_run_task_records_cancelled(registry, node_executor, store):
    gate = GatedHandler()
    registry.register("gated", gate)
    workflow = make_workflow([Node(node_id="A", type="gated"), "B"], [("A", "B")])
    coordinator = await start(workflow, node_executor, store)

    task = asyncio.create_task(coordinator.run())
    await asyncio.wait_for(gate.started.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    stored = store.find_by_id(coordinator.execution_id)
    assert stored.status == ExecutionStatus.CANCELLED
    assert statuses(stored) == {"A": NodeStatus.SKIPPED, "B": NodeStatus.SKIPPED}
    assert store.find_running() == []
