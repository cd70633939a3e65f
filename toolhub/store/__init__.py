"""Shared state store adapters.

``open_store`` picks the Firebase adapter when a database URL is configured
and falls back to a degraded in-process store when there is none or it
cannot be reached.  In degraded mode nothing propagates between processes:
the block-list stays empty (requests fail open) and commands only reach
subscribers inside this process.
"""

from __future__ import annotations

import logging

from toolhub.store.base import (
    CONNECTED_PATH,
    SharedStateStore,
    StoreConnectionError,
    StoreError,
    Subscription,
)
from toolhub.store.firebase import FirebaseStore
from toolhub.store.memory import MemoryStore

logger = logging.getLogger(__name__)

__all__ = [
    "CONNECTED_PATH",
    "FirebaseStore",
    "MemoryStore",
    "SharedStateStore",
    "StoreConnectionError",
    "StoreError",
    "Subscription",
    "open_store",
]


async def open_store(url: str = "", auth: str = "", timeout: float = 10.0) -> SharedStateStore:
    """Connect to the configured store, or fall back to a degraded memory store."""
    if not url:
        logger.warning("No store URL configured, using in-memory store (no cross-process propagation)")
        return MemoryStore(degraded=True)

    store = FirebaseStore(url, auth=auth, timeout=timeout)
    if await store.ping():
        logger.info("Connected to shared store at %s", url)
        return store

    await store.close()
    logger.warning("Shared store at %s unreachable, falling back to in-memory store", url)
    return MemoryStore(degraded=True)
