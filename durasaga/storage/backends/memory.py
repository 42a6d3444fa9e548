"""
In-Memory History Storage.

Fast, non-persistent storage for tests and single-process demos. Returned
executions are copies, so callers never alias the stored history.
"""

import asyncio
import copy
from datetime import UTC, datetime
from typing import Any

from durasaga.core.types import TERMINAL_STATUSES, Event, ExecutionStatus, WorkflowExecution
from durasaga.storage.base import HistoryStorage, summarize
from durasaga.storage.core import ExecutionExistsError, NotFoundError, SequenceConflictError


class InMemoryHistoryStorage(HistoryStorage):
    """
    In-memory implementation of history storage.

    Data is lost when the process exits. A single instance can be shared by
    several engines to simulate a restart against the same store.
    """

    def __init__(self):
        self._executions: dict[str, WorkflowExecution] = {}
        self._lock = asyncio.Lock()

    async def create_execution(self, execution: WorkflowExecution) -> None:
        async with self._lock:
            existing = self._executions.get(execution.execution_id)
            if existing is not None:
                raise ExecutionExistsError(execution.execution_id, existing.status.value)
            self._executions[execution.execution_id] = copy.deepcopy(execution)

    async def append_event(
        self, execution_id: str, event: Event, status: ExecutionStatus
    ) -> None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise NotFoundError(execution_id)

            expected = len(execution.history)
            if execution.is_terminal or event.sequence != expected:
                raise SequenceConflictError(execution_id, expected, event.sequence)

            execution.history.append(copy.deepcopy(event))
            execution.status = status
            execution.updated_at = event.timestamp

    async def load_execution(self, execution_id: str) -> WorkflowExecution | None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            return copy.deepcopy(execution) if execution is not None else None

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        definition_ref: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        async with self._lock:
            matches = [
                e
                for e in self._executions.values()
                if (status is None or e.status == status)
                and (definition_ref is None or e.definition_ref == definition_ref)
            ]
        matches.sort(key=lambda e: e.updated_at, reverse=True)
        return [summarize(e) for e in matches[offset : offset + limit]]

    async def cleanup_terminal(self, older_than: datetime) -> int:
        async with self._lock:
            doomed = [
                execution_id
                for execution_id, e in self._executions.items()
                if e.status in TERMINAL_STATUSES and e.updated_at < older_than
            ]
            for execution_id in doomed:
                del self._executions[execution_id]
        return len(doomed)

    async def get_statistics(self) -> dict[str, Any]:
        async with self._lock:
            by_status = {status.value: 0 for status in ExecutionStatus}
            for execution in self._executions.values():
                by_status[execution.status.value] += 1
        return {"total": sum(by_status.values()), "by_status": by_status}

    async def health_check(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "storage_type": "memory",
            "total_executions": len(self._executions),
            "timestamp": datetime.now(UTC).isoformat(),
        }

    async def clear(self) -> None:
        """Drop every stored execution (testing helper)."""
        async with self._lock:
            self._executions.clear()
