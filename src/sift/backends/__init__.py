"""Storage backends for crawl results.

Factory for creating a storage backend from a database path. Supports SQLite
(persistent) and an in-memory backend.
"""

from pathlib import Path

from sift.backends.base import LinkRecord, PageRecord, Storage
from sift.backends.memory_backend import MemoryStorage
from sift.backends.sqlite_backend import SQLiteStorage

__all__ = [
    "LinkRecord",
    "PageRecord",
    "Storage",
    "MemoryStorage",
    "SQLiteStorage",
    "create_storage",
]


def create_storage(path: Path | str | None) -> Storage:
    """Create a storage backend.

    Args:
        path: SQLite database path, or None for in-memory storage

    Returns:
        Storage instance (SQLiteStorage or MemoryStorage); call initialize() before use

    Examples:
        >>> storage = create_storage(Path("crawl.db"))  # SQLite
        >>> storage = create_storage(None)               # in-memory
    """
    if path is None:
        return MemoryStorage()
    if isinstance(path, str) and path != ":memory:":
        path = Path(path)
    return SQLiteStorage(path)
