"""
Store construction from configuration.

Invariants:
    - Production always gets the SQLite store; a failure to open it is fatal
    - The in-memory fallback is used only when the configuration explicitly
      allows it (development/test), and the caller is told it happened
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Tuple

from ..errors import ExternalStoreError
from .base import StoreBackend
from .memory_store import InMemoryStore
from .sqlite_store import SqliteStore

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


def create_store(config: "ServerConfig") -> StoreBackend:
    """Build the configured SQLite store (not yet connected)."""
    return SqliteStore(
        db_path=config.storage.db_path,
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
        cache_size_pages=config.storage.cache_size_pages,
    )


async def open_store(config: "ServerConfig") -> Tuple[StoreBackend, bool]:
    """Create and connect the store.

    Args:
        config: Server configuration

    Returns:
        (store, degraded) where degraded is True when the in-memory
        fallback replaced the SQLite store

    Raises:
        ExternalStoreError: If the store cannot be opened and the degraded
            fallback is not enabled
    """
    store = create_store(config)
    try:
        await store.connect()
        return store, False
    except (ExternalStoreError, OSError):
        if not config.degraded_fallback_enabled:
            raise

    logger.error(
        "SQLite store unavailable; running on the in-memory store (DEGRADED). "
        "All data will be lost on exit.",
        extra={
            "environment": config.environment.value,
            "db_path": config.storage.db_path,
        },
    )
    fallback = InMemoryStore()
    await fallback.connect()
    return fallback, True
