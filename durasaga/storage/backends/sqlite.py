"""
SQLite History Storage Backend.

Embedded, durable storage using SQLite with async support via aiosqlite.
Suitable for local development, the CLI and single-process deployments.

Usage:
    >>> from durasaga.storage.backends.sqlite import SQLiteHistoryStorage
    >>>
    >>> # File-based storage (survives restarts)
    >>> storage = SQLiteHistoryStorage("./data/durasaga.db")
    >>>
    >>> # In-memory storage (for testing)
    >>> storage = SQLiteHistoryStorage(":memory:")
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from durasaga.core.types import TERMINAL_STATUSES, Event, EventType, ExecutionStatus, WorkflowExecution
from durasaga.storage.base import HistoryStorage
from durasaga.storage.core import (
    ConnectionError,
    ExecutionExistsError,
    NotFoundError,
    SequenceConflictError,
    deserialize,
    serialize,
)

logger = logging.getLogger(__name__)


class SQLiteHistoryStorage(HistoryStorage):
    """
    SQLite-based history storage.

    Two tables: ``executions`` holds the status projection used for listing,
    ``events`` holds the append-only history keyed by (execution_id, sequence).

    Example:
        >>> storage = SQLiteHistoryStorage("./durasaga.db")
        >>> async with storage:
        ...     execution = await storage.load_execution("order-1-1700000000000")
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._initialized = False
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the connection and schema."""
        await self._get_connection()

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            try:
                self._conn = await aiosqlite.connect(self.db_path)
            except Exception as e:
                raise ConnectionError(
                    f"Cannot open SQLite database: {e}", backend="sqlite", url=self.db_path
                ) from e
            self._conn.row_factory = aiosqlite.Row

        if not self._initialized:
            await self._init_schema()
            self._initialized = True

        return self._conn

    async def _init_schema(self) -> None:
        await self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                definition_ref TEXT NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                event_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
                execution_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                attributes TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                PRIMARY KEY (execution_id, sequence)
            );

            CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status);
            CREATE INDEX IF NOT EXISTS idx_executions_updated_at ON executions(updated_at);
        """)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            self._initialized = False

    async def create_execution(self, execution: WorkflowExecution) -> None:
        conn = await self._get_connection()
        async with self._lock:
            cursor = await conn.execute(
                "SELECT status FROM executions WHERE execution_id = ?",
                (execution.execution_id,),
            )
            row = await cursor.fetchone()
            if row is not None:
                raise ExecutionExistsError(execution.execution_id, row["status"])

            await conn.execute(
                """
                INSERT INTO executions
                    (execution_id, definition_ref, status, input, event_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.execution_id,
                    execution.definition_ref,
                    execution.status.value,
                    serialize(execution.input),
                    len(execution.history),
                    execution.created_at.isoformat(),
                    execution.updated_at.isoformat(),
                ),
            )
            await conn.executemany(
                """
                INSERT INTO events (execution_id, sequence, event_type, attributes, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                [self._event_row(execution.execution_id, e) for e in execution.history],
            )
            await conn.commit()

    async def append_event(
        self, execution_id: str, event: Event, status: ExecutionStatus
    ) -> None:
        conn = await self._get_connection()
        async with self._lock:
            cursor = await conn.execute(
                "SELECT status, event_count FROM executions WHERE execution_id = ?",
                (execution_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(execution_id)

            expected = row["event_count"]
            if ExecutionStatus(row["status"]) in TERMINAL_STATUSES or event.sequence != expected:
                raise SequenceConflictError(execution_id, expected, event.sequence)

            try:
                await conn.execute(
                    """
                    INSERT INTO events (execution_id, sequence, event_type, attributes, timestamp)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    self._event_row(execution_id, event),
                )
                await conn.execute(
                    """
                    UPDATE executions
                    SET status = ?, event_count = ?, updated_at = ?
                    WHERE execution_id = ?
                    """,
                    (status.value, expected + 1, event.timestamp.isoformat(), execution_id),
                )
                await conn.commit()
            except aiosqlite.Error:
                await conn.rollback()
                raise

    @staticmethod
    def _event_row(execution_id: str, event: Event) -> tuple[Any, ...]:
        return (
            execution_id,
            event.sequence,
            event.event_type.value,
            serialize(event.attributes),
            event.timestamp.isoformat(),
        )

    async def load_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._get_connection()
        async with self._lock:
            cursor = await conn.execute(
                "SELECT * FROM executions WHERE execution_id = ?",
                (execution_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None

            cursor = await conn.execute(
                "SELECT * FROM events WHERE execution_id = ? ORDER BY sequence",
                (execution_id,),
            )
            event_rows = await cursor.fetchall()

        history = [
            Event(
                sequence=r["sequence"],
                event_type=EventType(r["event_type"]),
                attributes=deserialize(r["attributes"]),
                timestamp=datetime.fromisoformat(r["timestamp"]),
            )
            for r in event_rows
        ]
        return WorkflowExecution(
            execution_id=row["execution_id"],
            definition_ref=row["definition_ref"],
            input=deserialize(row["input"]) if row["input"] else None,
            status=ExecutionStatus(row["status"]),
            history=history,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        definition_ref: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        conn = await self._get_connection()

        query = "SELECT * FROM executions WHERE 1=1"
        params: list[Any] = []

        if status:
            query += " AND status = ?"
            params.append(status.value)

        if definition_ref:
            query += " AND definition_ref = ?"
            params.append(definition_ref)

        query += " ORDER BY updated_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with self._lock:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()

        return [
            {
                "execution_id": row["execution_id"],
                "definition_ref": row["definition_ref"],
                "status": row["status"],
                "event_count": row["event_count"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }
            for row in rows
        ]

    async def cleanup_terminal(self, older_than: datetime) -> int:
        conn = await self._get_connection()
        status_values = [s.value for s in TERMINAL_STATUSES]
        placeholders = ",".join("?" * len(status_values))

        async with self._lock:
            cursor = await conn.execute(
                f"SELECT execution_id FROM executions "
                f"WHERE status IN ({placeholders}) AND updated_at < ?",
                (*status_values, older_than.isoformat()),
            )
            ids = [row["execution_id"] for row in await cursor.fetchall()]
            for execution_id in ids:
                await conn.execute("DELETE FROM events WHERE execution_id = ?", (execution_id,))
                await conn.execute(
                    "DELETE FROM executions WHERE execution_id = ?", (execution_id,)
                )
            await conn.commit()

        if ids:
            logger.info(f"Deleted {len(ids)} terminal executions older than {older_than}")
        return len(ids)

    async def get_statistics(self) -> dict[str, Any]:
        conn = await self._get_connection()
        async with self._lock:
            cursor = await conn.execute(
                "SELECT status, COUNT(*) AS n FROM executions GROUP BY status"
            )
            rows = await cursor.fetchall()

        by_status = {status.value: 0 for status in ExecutionStatus}
        for row in rows:
            by_status[row["status"]] = row["n"]
        return {"total": sum(by_status.values()), "by_status": by_status}

    async def health_check(self) -> dict[str, Any]:
        try:
            conn = await self._get_connection()
            async with self._lock:
                await conn.execute("SELECT 1")
            return {
                "status": "healthy",
                "storage_type": "sqlite",
                "db_path": self.db_path,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        except Exception as e:
            return {
                "status": "unhealthy",
                "storage_type": "sqlite",
                "error": str(e),
                "timestamp": datetime.now(UTC).isoformat(),
            }
