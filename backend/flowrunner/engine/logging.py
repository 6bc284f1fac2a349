# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Execution Audit Logging

Emits one structured log event per execution life-cycle step and, when a
History MCP URL is configured, mirrors the events there for the audit trail.
Fails gracefully if History MCP is not available.
"""

import json
import logging
import httpx
from typing import Dict, Any, Optional, Union

from flowrunner.core.logging import log_event
from .models import Execution, ExecutionStatus, Node, NodeResult, NodeStatus, utcnow


class ExecutionLogger:
    """
    Logs execution events to the engine logger and History MCP.

    One instance is shared by all executions; History sessions are tracked
    per execution id.
    """

    def __init__(
        self,
        logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None,
        history_mcp_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.logger = logger or logging.getLogger("flowrunner.execution")
        self.history_mcp_url = history_mcp_url.rstrip("/") if history_mcp_url else None
        self.enabled = self.history_mcp_url is not None  # Set to False if History MCP unavailable
        self._client = client
        self._owns_client = client is None
        self._sessions: Dict[str, str] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def execution_start(self, execution: Execution) -> None:
        log_event(
            self.logger,
            "execution_start",
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            trigger_type=execution.trigger_type.value,
        )
        session_id = await self._create_session(execution)
        if session_id:
            self._sessions[execution.execution_id] = session_id

    async def node_start(self, execution_id: str, node: Node) -> None:
        log_event(
            self.logger,
            "node_start",
            level="DEBUG",
            execution_id=execution_id,
            node_id=node.node_id,
            node_type=node.type,
        )
        await self._append(execution_id, "system", f"Node '{node.node_id}' started", {
            "event": "node_start",
            "node_id": node.node_id,
            "node_type": node.type,
        })

    async def node_end(self, execution_id: str, node: Node, result: NodeResult) -> None:
        """Log node completion or failure"""
        if result.status == NodeStatus.FAILED:
            log_event(
                self.logger,
                "node_error",
                level="WARNING",
                execution_id=execution_id,
                node_id=node.node_id,
                node_type=node.type,
                error_code=result.error.code if result.error else None,
                error=result.error.message if result.error else None,
                attempts=result.attempts,
            )
            await self._append(execution_id, "system", f"Node '{node.node_id}' failed", {
                "event": "node_error",
                "node_id": node.node_id,
                "error": result.error.model_dump() if result.error else None,
            })
            return

        log_event(
            self.logger,
            "node_complete",
            execution_id=execution_id,
            node_id=node.node_id,
            node_type=node.type,
            duration_ms=result.duration_ms,
            attempts=result.attempts,
        )
        await self._append(execution_id, "agent", json.dumps(result.output, default=str), {
            "event": "node_complete",
            "node_id": node.node_id,
            "duration_ms": result.duration_ms,
        })

    async def node_skip(self, execution_id: str, node_id: str, reason: str) -> None:
        log_event(self.logger, "node_skip", execution_id=execution_id, node_id=node_id, reason=reason)
        await self._append(execution_id, "system", f"Node '{node_id}' skipped: {reason}", {
            "event": "node_skip",
            "node_id": node_id,
        })

    async def execution_end(self, execution: Execution) -> None:
        """Log execution terminal state and drop its History session"""
        level = "INFO" if execution.status == ExecutionStatus.COMPLETED else "WARNING"
        log_event(
            self.logger,
            "execution_end",
            level=level,
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            status=execution.status.value,
            duration_ms=execution.duration_ms,
            error=execution.error.message if execution.error else None,
        )
        await self._append(
            execution.execution_id,
            "system",
            f"Workflow completed with status: {execution.status.value}",
            {
                "event": "workflow_complete",
                "workflow_id": execution.workflow_id,
                "status": execution.status.value,
                "final_result": execution.output,
            }
        )
        self._sessions.pop(execution.execution_id, None)

    async def _create_session(self, execution: Execution) -> Optional[str]:
        """
        Create History MCP session for an execution.

        Returns session_id or None if History MCP unavailable.
        """
        if not self.enabled:
            return None

        try:
            response = await self.client.post(
                f"{self.history_mcp_url}/mcp/call_tool",
                json={
                    "tool": "create_session",
                    "arguments": {
                        "title": f"Workflow: {execution.workflow.name}",
                        "metadata": {
                            "type": "workflow_execution",
                            "workflow_id": execution.workflow_id,
                            "execution_id": execution.execution_id,
                        }
                    }
                }
            )

            result = response.json()
            content = result.get("content", [{}])[0]
            data = json.loads(content.get("text", "{}"))

            if data.get("success"):
                return data.get("session_id")

            return None

        except Exception as e:
            log_event(self.logger, "history_unavailable", level="WARNING", error=str(e))
            self.enabled = False
            return None

    async def _append(self, execution_id: str, message_type: str, content: str, metadata: Dict[str, Any]) -> None:
        session_id = self._sessions.get(execution_id)
        if not session_id or not self.enabled:
            return

        metadata = dict(metadata, execution_id=execution_id, timestamp=utcnow().isoformat())
        try:
            await self.client.post(
                f"{self.history_mcp_url}/mcp/call_tool",
                json={
                    "tool": "append_message",
                    "arguments": {
                        "session_id": session_id,
                        "type": message_type,
                        "content": content,
                        "metadata": metadata,
                    }
                },
            )
        except Exception as e:
            # Continue execution even if logging fails
            log_event(
                self.logger,
                "history_append_failed",
                level="WARNING",
                execution_id=execution_id,
                error=str(e),
            )

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
