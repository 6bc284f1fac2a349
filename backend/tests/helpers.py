# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow builders and scriptable handlers shared by the test suite.
"""

import asyncio
from typing import Any, Dict, Iterable, Union

from flowrunner.engine.models import Edge, Node, Workflow


def _edge(source: str, target: str, source_port: str = None) -> Edge:
    return Edge(source=source, target=target, source_port=source_port)


def make_workflow(
    nodes: Iterable[Union[str, Node]],
    edges: Iterable[Union[tuple, Edge]] = (),
    workflow_id: str = "wf",
    name: str = None
) -> Workflow:
    """Bare node ids become noop nodes; (source, target[, source_port]) tuples become edges"""
    return Workflow(
        workflow_id=workflow_id,
        name=name or workflow_id,
        nodes=[n if isinstance(n, Node) else Node(node_id=n, type="noop") for n in nodes],
        edges=[e if isinstance(e, Edge) else _edge(*e) for e in edges],
    )


def diamond(b_type: str = "noop", workflow_id: str = "diamond") -> Workflow:
    """A -> B, A -> C, B -> D, C -> D"""
    return make_workflow(
        [
            Node(node_id="A", type="noop"),
            Node(node_id="B", type=b_type),
            Node(node_id="C", type="noop"),
            Node(node_id="D", type="noop"),
        ],
        [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")],
        workflow_id=workflow_id,
    )


class GatedHandler:
    """Blocks every invocation until released; create inside the test's event loop"""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def invoke(self, input: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return dict(input)


class ConcurrencyGauge:
    """Records the peak number of overlapping invocations"""

    def __init__(self, delay: float = 0.02):
        self.delay = delay
        self.active = 0
        self.peak = 0

    async def invoke(self, input: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return {}


class FlakyHandler:
    """Fails the first `failures` calls, then succeeds"""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def invoke(self, input: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return {"calls": self.calls}


def fail(input, config):
    raise RuntimeError("boom")


def upper(input, config):
    return {"text": str(input.get("text", "")).upper()}
