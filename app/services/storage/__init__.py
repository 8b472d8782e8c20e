"""Tree stores: the persistence collaborator for uploaded forests."""

from __future__ import annotations

import logging

from app.config import Settings, get_settings
from app.services.storage.base import BaseTreeStore
from app.services.storage.memory_store import MemoryTreeStore
from app.services.storage.sqlite_store import SqliteTreeStore

logger = logging.getLogger(__name__)


def open_store(settings: Settings | None = None) -> BaseTreeStore:
    """Open the configured store. The caller owns it and must close it."""
    settings = settings or get_settings()
    if settings.db_path:
        return SqliteTreeStore(settings.db_path)
    logger.info("DIRTREE_DB_PATH not set, using in-memory tree store")
    return MemoryTreeStore()


__all__ = [
    "BaseTreeStore",
    "MemoryTreeStore",
    "SqliteTreeStore",
    "open_store",
]
