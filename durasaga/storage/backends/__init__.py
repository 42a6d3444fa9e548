"""History storage backends."""

from durasaga.storage.backends.memory import InMemoryHistoryStorage
from durasaga.storage.backends.sqlite import SQLiteHistoryStorage

__all__ = ["InMemoryHistoryStorage", "SQLiteHistoryStorage"]
