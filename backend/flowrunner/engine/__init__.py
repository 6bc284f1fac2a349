# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow engine: models, graph resolution, node execution and coordination.
"""

from flowrunner.engine.models import (
    Edge,
    Execution,
    ExecutionStatus,
    Node,
    NodeResult,
    NodeStatus,
    TriggerType,
    Workflow,
)
from flowrunner.engine.registry import HandlerRegistry
from flowrunner.engine.resolver import DispatchPlan, resolve_workflow

__all__ = [
    "Edge",
    "Execution",
    "ExecutionStatus",
    "Node",
    "NodeResult",
    "NodeStatus",
    "TriggerType",
    "Workflow",
    "HandlerRegistry",
    "DispatchPlan",
    "resolve_workflow",
]
