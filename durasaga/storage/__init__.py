"""
History storage for durasaga.

Usage:
    >>> from durasaga.storage import create_storage
    >>> storage = create_storage("sqlite:///./durasaga.db")
"""

from durasaga.storage.backends import InMemoryHistoryStorage, SQLiteHistoryStorage
from durasaga.storage.base import HistoryStorage
from durasaga.storage.core import (
    ConnectionError,
    ExecutionExistsError,
    NotFoundError,
    SequenceConflictError,
    SerializationError,
    StorageError,
)
from durasaga.storage.factory import create_storage, get_available_backends

__all__ = [
    "ConnectionError",
    "ExecutionExistsError",
    "HistoryStorage",
    "InMemoryHistoryStorage",
    "NotFoundError",
    "SQLiteHistoryStorage",
    "SequenceConflictError",
    "SerializationError",
    "StorageError",
    "create_storage",
    "get_available_backends",
]
