# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Errors raised to flowrunner callers.

Engine-internal faults (graph errors, node failures, store exhaustion) live
in flowrunner.engine.exceptions and end up on Execution records; the errors
here are raised by the service, the stores and configuration loading.
"""

from typing import Any, Dict, Optional


class FlowRunnerError(Exception):
    """Base class for errors raised by flowrunner."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def log_fields(self) -> Dict[str, Any]:
        """Structured fields for log_event; subclasses add their context"""
        return {"error_type": self.__class__.__name__, "error": self.message}


class NotFoundError(FlowRunnerError):
    """A workflow or execution id that does not exist."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier

    def log_fields(self) -> Dict[str, Any]:
        return dict(super().log_fields(), resource=self.resource, identifier=self.identifier)


class ValidationError(FlowRunnerError):
    """Rejected input: a workflow definition, id or handler registration."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ConfigurationError(FlowRunnerError):
    def __init__(self, message: str, config_file: Optional[str] = None):
        super().__init__(message)
        self.config_file = config_file


class ConflictError(FlowRunnerError):
    """
    The operation clashes with current state: a duplicate record or handler,
    a write to a terminal execution, a bulk delete while runs are live.
    """

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(message)
        self.resource = resource


class ExecutionError(FlowRunnerError):
    """The service cannot start or manage a run."""

    def __init__(self, message: str, execution_id: Optional[str] = None):
        super().__init__(message)
        self.execution_id = execution_id

    def log_fields(self) -> Dict[str, Any]:
        fields = super().log_fields()
        if self.execution_id:
            fields["execution_id"] = self.execution_id
        return fields


def sanitize_error_for_user(error: BaseException, include_type: bool = True) -> str:
    """
    Turn an arbitrary exception into a one-line message for an error record.

    Long messages are truncated to 500 characters; an empty message falls
    back to the exception type name.
    """
    error_msg = str(error).strip()

    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."

    if not error_msg:
        return error.__class__.__name__

    if include_type:
        return f"{error.__class__.__name__}: {error_msg}"

    return error_msg
