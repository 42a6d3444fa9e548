"""
Base storage interface for execution histories.

The engine persists nothing but its own histories: one row per execution
(with the status projection kept for listing) and its append-only events.
Backends are pluggable (memory, SQLite).
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from durasaga.core.types import Event, ExecutionStatus, WorkflowExecution


class HistoryStorage(ABC):
    """
    Abstract base class for history persistence.

    Implementations must make ``append_event`` atomic: either the event and
    the new status projection are both stored, or neither is.
    """

    async def initialize(self) -> None:
        """Prepare the backend (connections, schema). Optional."""

    @abstractmethod
    async def create_execution(self, execution: WorkflowExecution) -> None:
        """
        Store a new execution together with its initial history.

        Raises:
            ExecutionExistsError: An execution with that id is already stored
        """

    @abstractmethod
    async def append_event(
        self, execution_id: str, event: Event, status: ExecutionStatus
    ) -> None:
        """
        Append one event and update the status projection.

        Raises:
            NotFoundError: Unknown execution
            SequenceConflictError: ``event.sequence`` is not the next position,
                or the stored execution is already terminal
        """

    @abstractmethod
    async def load_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Load an execution with its full history, or None."""

    @abstractmethod
    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        definition_ref: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """
        List execution summaries, most recently updated first.

        Each summary has execution_id, definition_ref, status, event_count,
        created_at and updated_at.
        """

    @abstractmethod
    async def cleanup_terminal(self, older_than: datetime) -> int:
        """
        Delete terminal executions last updated before ``older_than``.

        Active executions are never deleted.

        Returns:
            Number of executions deleted
        """

    @abstractmethod
    async def get_statistics(self) -> dict[str, Any]:
        """Counts of executions by status."""

    @abstractmethod
    async def health_check(self) -> dict[str, Any]:
        """Backend health information."""

    async def list_active(self) -> list[WorkflowExecution]:
        """Every non-terminal execution, for crash recovery."""
        active = []
        for status in (ExecutionStatus.RUNNING, ExecutionStatus.COMPENSATING):
            offset = 0
            while True:
                page = await self.list_executions(status=status, limit=100, offset=offset)
                for summary in page:
                    execution = await self.load_execution(summary["execution_id"])
                    if execution is not None and not execution.is_terminal:
                        active.append(execution)
                if len(page) < 100:
                    break
                offset += 100
        return active

    async def close(self) -> None:
        """Release backend resources."""

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def summarize(execution: WorkflowExecution) -> dict[str, Any]:
    """Listing summary of an execution."""
    return {
        "execution_id": execution.execution_id,
        "definition_ref": execution.definition_ref,
        "status": execution.status.value,
        "event_count": len(execution.history),
        "created_at": execution.created_at.isoformat(),
        "updated_at": execution.updated_at.isoformat(),
    }
