# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Engine Exceptions

Custom exceptions for the workflow execution engine.
"""

from typing import Optional

from .models import ErrorDetail, GraphErrorCode, NodeErrorCode


class WorkflowEngineException(Exception):
    """Base exception for the engine"""
    pass


class GraphError(WorkflowEngineException):
    """Workflow graph failed resolution"""
    def __init__(self, code: GraphErrorCode, message: str, subject: Optional[str] = None):
        self.code = code
        self.message = message
        self.subject = subject
        super().__init__(message)

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(code=self.code.value, message=self.message, subject=self.subject)


class NodeExecutionException(WorkflowEngineException):
    """Node execution failed"""
    def __init__(self, node_id: str, code: NodeErrorCode, message: str):
        self.node_id = node_id
        self.code = code
        self.message = message
        super().__init__(f"Node '{node_id}' failed: {message}")

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(code=self.code.value, message=self.message, subject=self.node_id)


class NodeTimeoutException(NodeExecutionException):
    """Node execution exceeded timeout"""
    def __init__(self, node_id: str, timeout: float):
        super().__init__(
            node_id,
            NodeErrorCode.TIMEOUT,
            f"Execution exceeded timeout ({timeout}s)"
        )
        self.timeout = timeout


class RecordStoreError(WorkflowEngineException):
    """Execution record could not be persisted"""
    def __init__(self, execution_id: str, message: str):
        self.execution_id = execution_id
        self.message = message
        super().__init__(f"Execution '{execution_id}': {message}")
