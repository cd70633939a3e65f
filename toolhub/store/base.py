"""Shared state store interface.

The control plane only needs a small slice of a realtime database: values
addressed by slash-separated paths, shallow merges, deletes, time-ordered
``push`` keys and subscriptions.  A subscription is an event stream with a
fixed replay contract:

  1. the first item is the value at the path when the stream attaches
     (``None`` when nothing is stored there),
  2. every later item is the new value after a change.

Consumers must be written against that contract.  In particular a stream
attached to a slot that was written long ago will still deliver the old
value first.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Connectivity flag maintained by the store itself.
CONNECTED_PATH = ".info/connected"

_PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class StoreError(Exception):
    """Base error for store failures."""


class StoreConnectionError(StoreError):
    """Raised when the backing store cannot be reached."""


# ── Paths ─────────────────────────────────────────────────────────


def split_path(path: str) -> list[str]:
    """``"/a//b/"`` → ``["a", "b"]``.  The root is the empty list."""
    return [seg for seg in path.split("/") if seg]


def join_path(*parts: str) -> str:
    segments: list[str] = []
    for part in parts:
        segments.extend(split_path(part))
    return "/".join(segments)


def paths_overlap(a: str, b: str) -> bool:
    """True when one path is an ancestor of (or equal to) the other."""
    sa, sb = split_path(a), split_path(b)
    n = min(len(sa), len(sb))
    return sa[:n] == sb[:n]


def push_key(now_ms: int | None = None) -> str:
    """Generate a chronologically sortable key for append-only logs."""
    ts = int(time.time() * 1000) if now_ms is None else now_ms
    stamp = []
    for _ in range(8):
        stamp.append(_PUSH_CHARS[ts % 64])
        ts //= 64
    rand = "".join(_PUSH_CHARS[b % 64] for b in os.urandom(12))
    return "".join(reversed(stamp)) + rand


# ── Subscription stream ───────────────────────────────────────────

_CLOSED = object()


class Subscription:
    """Async iterator over the values of one store path.

    Closing the subscription ends iteration immediately; items that were
    queued but not yet consumed are dropped.  With ``conflate`` set, a
    consumer that falls behind skips straight to the newest queued value,
    which is what state consumers (block-list, command slots) want.
    """

    def __init__(
        self,
        path: str,
        on_close: Callable[[Subscription], None] | None = None,
    ) -> None:
        self.path = path
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self._closed = False
        self.conflate = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, value: Any) -> None:
        """Queue a value for the consumer (no-op once closed)."""
        if not self._closed:
            self._queue.put_nowait(value)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            try:
                self._on_close(self)
            except Exception:
                logger.exception("Error closing subscription on %s", self.path)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if self.conflate:
            while not self._queue.empty():
                item = self._queue.get_nowait()
        if item is _CLOSED or self._closed:
            raise StopAsyncIteration
        return item


# ── Store interface ───────────────────────────────────────────────


class SharedStateStore(abc.ABC):
    """Replicated key-value store with path-scoped subscriptions."""

    #: Short name reported in status payloads.
    kind: str = "abstract"

    #: True when the store is a local stand-in with no cross-process reach.
    degraded: bool = False

    @abc.abstractmethod
    async def get(self, path: str) -> Any:
        """Return the value at *path*, or ``None``."""

    @abc.abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Replace the value at *path*.  ``None`` deletes it."""

    @abc.abstractmethod
    async def update(self, path: str, values: dict[str, Any]) -> None:
        """Shallow-merge *values* into the object at *path*."""

    @abc.abstractmethod
    async def remove(self, path: str) -> None:
        """Delete *path* and everything below it."""

    @abc.abstractmethod
    async def push(self, path: str, value: Any) -> str:
        """Store *value* under a new time-ordered child of *path*; return the key."""

    @abc.abstractmethod
    async def subscribe(self, path: str) -> Subscription:
        """Attach an event stream to *path* (see the module docstring)."""

    @property
    @abc.abstractmethod
    def connected(self) -> bool:
        """Current value of the connectivity flag."""

    async def ping(self) -> bool:
        """Return True if the store answers a trivial read."""
        try:
            await self.get(CONNECTED_PATH)
            return True
        except StoreError:
            return False

    async def close(self) -> None:
        """Release connections and end every open subscription."""
