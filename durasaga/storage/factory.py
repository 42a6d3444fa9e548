"""
Storage Factory - create history storage backends from a URL

Usage:
    >>> from durasaga.storage.factory import create_storage
    >>> storage = create_storage("memory://")
    >>> storage = create_storage("sqlite:///./data/durasaga.db")
"""

from urllib.parse import urlparse

from durasaga.storage.backends import InMemoryHistoryStorage, SQLiteHistoryStorage
from durasaga.storage.base import HistoryStorage


def _create_sqlite_storage(url: str) -> HistoryStorage:
    # sqlite:///relative.db, sqlite:////abs/path.db, sqlite://:memory:
    path = url.split("://", 1)[1]
    if path in ("", ":memory:", "/:memory:"):
        return SQLiteHistoryStorage(":memory:")
    return SQLiteHistoryStorage(path[1:] if path.startswith("/") else path)


_STORAGE_REGISTRY = {
    "memory": lambda url: InMemoryHistoryStorage(),
    "sqlite": _create_sqlite_storage,
}


def create_storage(url: str = "memory://") -> HistoryStorage:
    """
    Create a history storage backend from a connection URL.

    Args:
        url: ``memory://`` or ``sqlite:///path/to/file.db``

    Raises:
        ValueError: If the URL scheme is not a known backend
    """
    scheme = urlparse(url).scheme.lower() or url.lower()
    factory = _STORAGE_REGISTRY.get(scheme)
    if factory is None:
        available = ", ".join(sorted(_STORAGE_REGISTRY))
        msg = f"Unknown storage backend: '{scheme}'. Available backends: {available}"
        raise ValueError(msg)
    return factory(url)


def get_available_backends() -> list[str]:
    """Names of the storage backends this factory can build."""
    return sorted(_STORAGE_REGISTRY)
