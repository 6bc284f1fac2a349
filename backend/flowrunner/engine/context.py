# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Execution Context

Tracks execution state for a workflow run.
"""

import threading
from typing import Dict, Any, List, Optional

from .models import Execution, ExecutionStatus, NodeResult, NodeStatus, utcnow
from .resolver import DispatchPlan


class CancellationToken:
    """
    Cooperative, level-triggered cancellation signal for one execution.

    Set from any thread; polled by the coordinator at dispatch boundaries.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ExecutionContext:
    """
    Execution context for a workflow run.

    Tracks:
    - Node results
    - Dispatched nodes
    - Execution metadata

    Owned by exactly one coordinator; everyone else sees snapshots.
    """

    def __init__(self, execution: Execution, plan: DispatchPlan, token: Optional[CancellationToken] = None):
        self.execution = execution
        self.plan = plan
        self.token = token or CancellationToken()

        # Node execution tracking
        self.node_results: Dict[str, NodeResult] = {
            node_id: NodeResult(node_id=node_id) for node_id in plan.order
        }
        self.dispatched: set = set()
        self.execution.node_results = dict(self.node_results)

    @property
    def execution_id(self) -> str:
        return self.execution.execution_id

    @property
    def workflow_id(self) -> str:
        return self.execution.workflow_id

    def status_of(self, node_id: str) -> NodeStatus:
        return self.node_results[node_id].status

    def output_of(self, node_id: str) -> Dict[str, Any]:
        return self.node_results[node_id].output

    def record(self, result: NodeResult) -> None:
        """Store a node's latest result"""
        self.node_results[result.node_id] = result
        self.execution.node_results[result.node_id] = result

    def mark_dispatched(self, node_id: str) -> NodeResult:
        self.dispatched.add(node_id)
        result = NodeResult(node_id=node_id, status=NodeStatus.RUNNING, started_at=utcnow())
        self.record(result)
        return result

    def mark_skipped(self, node_id: str) -> NodeResult:
        now = utcnow()
        result = NodeResult(node_id=node_id, status=NodeStatus.SKIPPED, started_at=now, finished_at=now)
        self.record(result)
        return result

    def pending_nodes(self) -> List[str]:
        return [node_id for node_id in self.plan.order if self.status_of(node_id) == NodeStatus.PENDING]

    def has_failures(self) -> bool:
        return any(r.status == NodeStatus.FAILED for r in self.node_results.values())

    def sink_outputs(self) -> Dict[str, Any]:
        """Outputs of succeeded nodes with no successors"""
        return {
            node_id: self.output_of(node_id)
            for node_id in self.plan.sinks
            if self.status_of(node_id) == NodeStatus.SUCCEEDED
        }

    def set_status(self, status: ExecutionStatus) -> None:
        self.execution.status = status
        if status == ExecutionStatus.RUNNING:
            self.execution.started_at = utcnow()
        elif status.is_terminal:
            self.execution.finished_at = utcnow()

    def snapshot(self) -> Execution:
        return self.execution.snapshot()
