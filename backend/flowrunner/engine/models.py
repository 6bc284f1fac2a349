# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Engine Models

Pydantic models for workflow definitions and execution records.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict


DEFAULT_PORT = "default"
BRANCH_KEY = "branch"  # Output field naming the source port a node routes to


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Run-level status"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class NodeStatus(str, Enum):
    """Node-level status"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class TriggerType(str, Enum):
    MANUAL = "MANUAL"
    SCHEDULE = "SCHEDULE"
    WEBHOOK = "WEBHOOK"
    EVENT = "EVENT"
    FILE_EVENT = "FILE_EVENT"


class GraphErrorCode(str, Enum):
    CYCLE = "CYCLE"
    DANGLING_EDGE = "DANGLING_EDGE"
    UNKNOWN_NODE_TYPE = "UNKNOWN_NODE_TYPE"
    EMPTY_GRAPH = "EMPTY_GRAPH"
    DUPLICATE_NODE = "DUPLICATE_NODE"
    DUPLICATE_EDGE = "DUPLICATE_EDGE"


class NodeErrorCode(str, Enum):
    HANDLER_NOT_FOUND = "HANDLER_NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    HANDLER_FAILURE = "HANDLER_FAILURE"


class RunErrorCode(str, Enum):
    NODE_FAILURE = "NODE_FAILURE"
    RECORD_STORE_FAILURE = "RECORD_STORE_FAILURE"
    ENGINE_FAILURE = "ENGINE_FAILURE"


class Node(BaseModel):
    """Workflow node definition"""
    model_config = ConfigDict(frozen=True)

    node_id: str
    type: str
    name: Optional[str] = None  # Defaults to the type tag for display
    config: Dict[str, Any] = {}
    disabled: bool = False
    timeout: Optional[float] = None  # Falls back to the engine-wide default
    retry_attempts: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.name or self.type


class Edge(BaseModel):
    """Directed dependency/data channel between two nodes"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)  # Allow both 'from' and 'source'

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    source_port: Optional[str] = None
    target_port: Optional[str] = None

    @property
    def key(self) -> Tuple[str, Optional[str], str, Optional[str]]:
        return (self.source, self.source_port, self.target, self.target_port)

    def __str__(self) -> str:
        source = f"{self.source}.{self.source_port}" if self.source_port else self.source
        target = f"{self.target}.{self.target_port}" if self.target_port else self.target
        return f"{source} -> {target}"


class Workflow(BaseModel):
    """Stored, named directed graph of nodes and edges"""
    workflow_id: str
    name: str
    description: Optional[str] = None
    nodes: List[Node]
    edges: List[Edge] = []

    def get_node(self, node_id: str) -> Optional[Node]:
        return next((n for n in self.nodes if n.node_id == node_id), None)

    def snapshot(self) -> "Workflow":
        """Detached copy; later edits to this workflow never reach the copy"""
        return self.model_copy(deep=True)


class ErrorDetail(BaseModel):
    """Error payload attached to failed runs and nodes"""
    code: str
    message: str
    subject: Optional[str] = None  # Offending node/edge, when there is one


class NodeResult(BaseModel):
    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    output: Dict[str, Any] = {}
    error: Optional[ErrorDetail] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class Execution(BaseModel):
    """One run of a workflow against a given input"""
    execution_id: str
    workflow_id: str
    workflow: Workflow  # Snapshot taken when the run was requested
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_type: TriggerType = TriggerType.MANUAL
    input: Dict[str, Any] = {}
    output: Dict[str, Any] = {}
    error: Optional[ErrorDetail] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    node_results: Dict[str, NodeResult] = {}

    @property
    def is_running(self) -> bool:
        return self.status == ExecutionStatus.RUNNING

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def snapshot(self) -> "Execution":
        return self.model_copy(deep=True)
