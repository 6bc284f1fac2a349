# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Execution Store - storage for workflow execution records

Writers (one coordinator per execution) are serialized per record with
async locks. Readers never lock: every write swaps in a complete record,
so a reader sees either the previous or the next snapshot.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import asyncio
import json
import uuid
import aiofiles
import aiofiles.os

from flowrunner.core.errors import ConflictError, NotFoundError
from flowrunner.core.logging import get_logger
from flowrunner.engine.models import ErrorDetail, Execution, ExecutionStatus, NodeResult

logger = get_logger("flowrunner.store")


def new_execution_id() -> str:
    """exec_YYYYMMDD_HHMMSS_<hash>; the date part partitions file storage"""
    return f"exec_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


def _newest_first(executions: List[Execution]) -> List[Execution]:
    return sorted(executions, key=lambda e: e.created_at, reverse=True)


class ExecutionRecordStore(ABC):
    """
    Store and query execution records.

    Records are immutable once terminal; updating one raises ConflictError.
    """

    def __init__(self):
        # Async locks for per-record serialization of updates
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_lock(self, execution_id: str) -> asyncio.Lock:
        """Get or create lock for a specific record"""
        if execution_id not in self._locks:
            self._locks[execution_id] = asyncio.Lock()
        return self._locks[execution_id]

    # -- writes --

    async def create(self, execution: Execution) -> None:
        async with self._get_lock(execution.execution_id):
            if await self._load(execution.execution_id) is not None:
                raise ConflictError(
                    f"Execution already exists: {execution.execution_id}",
                    resource="Execution"
                )
            await self._save(execution.snapshot())

    async def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
        error: Optional[ErrorDetail] = None,
        output: Optional[Dict[str, Any]] = None
    ) -> None:
        async with self._get_lock(execution_id):
            execution = await self._load_mutable(execution_id)
            execution.status = status
            if started_at is not None:
                execution.started_at = started_at
            if finished_at is not None:
                execution.finished_at = finished_at
            if error is not None:
                execution.error = error
            if output is not None:
                execution.output = dict(output)
            await self._save(execution)

        if status.is_terminal:
            self._locks.pop(execution_id, None)

    async def update_node_result(self, execution_id: str, node_id: str, result: NodeResult) -> None:
        async with self._get_lock(execution_id):
            execution = await self._load_mutable(execution_id)
            execution.node_results[node_id] = result.model_copy(deep=True)
            await self._save(execution)

    async def _load_mutable(self, execution_id: str) -> Execution:
        execution = await self._load(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        if execution.is_terminal:
            raise ConflictError(
                f"Execution {execution_id} is {execution.status.value} and can no longer change",
                resource="Execution"
            )
        return execution.snapshot()

    # -- reads --

    def find_by_id(self, execution_id: str) -> Optional[Execution]:
        return self._read(execution_id)

    def find_all(self) -> List[Execution]:
        return _newest_first(self._read_all())

    def find_by_workflow_id(self, workflow_id: str) -> List[Execution]:
        return _newest_first([e for e in self._read_all() if e.workflow_id == workflow_id])

    def find_running(self) -> List[Execution]:
        return _newest_first([e for e in self._read_all() if e.status == ExecutionStatus.RUNNING])

    def find_by_time_range(self, start: datetime, end: datetime) -> List[Execution]:
        """Executions created within [start, end]"""
        return _newest_first([e for e in self._read_all() if start <= e.created_at <= end])

    # -- backend hooks --

    @abstractmethod
    async def _load(self, execution_id: str) -> Optional[Execution]:
        """Current record for a writer, or None"""

    @abstractmethod
    async def _save(self, execution: Execution) -> None:
        """Replace the record atomically"""

    @abstractmethod
    def _read(self, execution_id: str) -> Optional[Execution]:
        """Lock-free snapshot read"""

    @abstractmethod
    def _read_all(self) -> List[Execution]:
        pass

    @abstractmethod
    async def delete_all(self) -> int:
        """Delete every record; returns how many were removed"""


class InMemoryExecutionStore(ExecutionRecordStore):
    """Process-local store; each record is swapped whole on every write"""

    def __init__(self):
        super().__init__()
        self._records: Dict[str, Execution] = {}

    async def _load(self, execution_id: str) -> Optional[Execution]:
        return self._records.get(execution_id)

    async def _save(self, execution: Execution) -> None:
        self._records[execution.execution_id] = execution

    def _read(self, execution_id: str) -> Optional[Execution]:
        execution = self._records.get(execution_id)
        return execution.snapshot() if execution is not None else None

    def _read_all(self) -> List[Execution]:
        return [execution.snapshot() for execution in list(self._records.values())]

    async def delete_all(self) -> int:
        count = len(self._records)
        self._records = {}
        return count


class JsonFileExecutionStore(ExecutionRecordStore):
    """
    Store execution records as JSON files.

    Storage structure:
        executions/
        └── {YYYY-MM-DD}/
            ├── exec_20250101_120000_ab12cd34.json
            └── exec_20250101_120501_ef56ab78.json

    Each write goes to a temp file that is then renamed over the record.
    """

    def __init__(self, base_dir: str):
        super().__init__()
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, execution_id: str) -> Path:
        # Extract date from execution_id (format: exec_YYYYMMDD_HHMMSS_hash)
        try:
            date_str = execution_id.split("_")[1]
            date = datetime.strptime(date_str, "%Y%m%d").strftime("%Y-%m-%d")
        except (IndexError, ValueError):
            date = "undated"
        return self.base_dir / date / f"{execution_id}.json"

    async def _load(self, execution_id: str) -> Optional[Execution]:
        path = self._path_for(execution_id)
        if not path.exists():
            return None
        async with aiofiles.open(path, "r") as f:
            return Execution.model_validate_json(await f.read())

    async def _save(self, execution: Execution) -> None:
        path = self._path_for(execution.execution_id)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)

        tmp_path = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(execution.model_dump_json(indent=2))
        await aiofiles.os.replace(tmp_path, path)

    def _read(self, execution_id: str) -> Optional[Execution]:
        path = self._path_for(execution_id)
        if not path.exists():
            return None
        return self._read_file(path)

    def _read_file(self, path: Path) -> Optional[Execution]:
        try:
            with open(path, "r") as f:
                return Execution.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load execution {path}: {e}")
            return None

    def _read_all(self) -> List[Execution]:
        executions = []
        for date_dir in sorted(self.base_dir.glob("*"), reverse=True):
            if not date_dir.is_dir():
                continue
            for execution_file in date_dir.glob("exec_*.json"):
                execution = self._read_file(execution_file)
                if execution is not None:
                    executions.append(execution)
        return executions

    async def delete_all(self) -> int:
        deleted_count = 0
        for date_dir in list(self.base_dir.glob("*")):
            if not date_dir.is_dir():
                continue
            for execution_file in date_dir.glob("exec_*.json"):
                await aiofiles.os.remove(execution_file)
                deleted_count += 1
            if not any(date_dir.iterdir()):
                await aiofiles.os.rmdir(date_dir)
        return deleted_count
