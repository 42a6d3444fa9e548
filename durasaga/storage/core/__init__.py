"""Shared storage building blocks: errors and serialization."""

from .errors import (
    ConnectionError,
    ExecutionExistsError,
    NotFoundError,
    SequenceConflictError,
    SerializationError,
    StorageError,
)
from .serialization import deserialize, serialize

__all__ = [
    "ConnectionError",
    "ExecutionExistsError",
    "NotFoundError",
    "SequenceConflictError",
    "SerializationError",
    "StorageError",
    "deserialize",
    "serialize",
]
