"""In-process implementation of the shared state store.

Used in three places: as the fallback when the remote store cannot be
reached (``degraded=True``), in single-process deployments, and in tests.
Writes follow realtime-database semantics: ``None`` and empty objects are
not stored, and removing the last child of an object removes the object.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from toolhub.store.base import (
    CONNECTED_PATH,
    SharedStateStore,
    Subscription,
    join_path,
    paths_overlap,
    push_key,
    split_path,
)

logger = logging.getLogger(__name__)


def _prune(value: Any) -> Any:
    """Drop ``None`` leaves and empty objects; ``{}`` collapses to ``None``."""
    if isinstance(value, dict):
        pruned = {}
        for key, child in value.items():
            child = _prune(child)
            if child is not None:
                pruned[str(key)] = child
        return pruned or None
    return value


def write_tree(root: Any, segments: list[str], value: Any) -> Any:
    """Write *value* at *segments* below *root* and return the new root.

    *root* is modified in place when it is an object.  Writing ``None``
    deletes the node and prunes parents left empty.
    """
    value = _prune(copy.deepcopy(value))
    if not segments:
        return value
    if not isinstance(root, dict):
        if value is None:
            return root
        root = {}

    node = root
    parents: list[tuple[dict, str]] = []
    for seg in segments[:-1]:
        child = node.get(seg)
        if not isinstance(child, dict):
            if value is None:
                return root or None
            child = {}
            node[seg] = child
        parents.append((node, seg))
        node = child

    if value is None:
        node.pop(segments[-1], None)
    else:
        node[segments[-1]] = value

    for parent, seg in reversed(parents):
        if parent[seg]:
            break
        del parent[seg]
    return root or None


def read_tree(root: Any, segments: list[str]) -> Any:
    node = root
    for seg in segments:
        if not isinstance(node, dict) or seg not in node:
            return None
        node = node[seg]
    if isinstance(node, dict) and not node:
        return None
    return node


class MemoryStore(SharedStateStore):
    """Dictionary tree with subscription fan-out on every write."""

    kind = "memory"

    def __init__(self, degraded: bool = False) -> None:
        self.degraded = degraded
        self._root: dict[str, Any] = {}
        # subscription → last value delivered to it
        self._subs: dict[Subscription, Any] = {}
        self._connected = True

    # ── Reads ─────────────────────────────────────────────────────

    async def get(self, path: str) -> Any:
        if join_path(path) == CONNECTED_PATH:
            return self._connected
        return copy.deepcopy(read_tree(self._root, split_path(path)))

    # ── Writes ────────────────────────────────────────────────────

    async def set(self, path: str, value: Any) -> None:
        self._write(split_path(path), value)
        self._notify(path)

    async def update(self, path: str, values: dict[str, Any]) -> None:
        for key, value in values.items():
            self._write(split_path(join_path(path, key)), value)
        self._notify(path)

    async def remove(self, path: str) -> None:
        self._write(split_path(path), None)
        self._notify(path)

    async def push(self, path: str, value: Any) -> str:
        key = push_key()
        await self.set(join_path(path, key), value)
        return key

    def _write(self, segments: list[str], value: Any) -> None:
        root = write_tree(self._root, segments, value)
        self._root = root if isinstance(root, dict) else {}

    # ── Subscriptions ─────────────────────────────────────────────

    async def subscribe(self, path: str) -> Subscription:
        sub = Subscription(join_path(path), on_close=self._drop)
        current = await self.get(path)
        self._subs[sub] = current
        sub.push(copy.deepcopy(current))
        return sub

    def _drop(self, sub: Subscription) -> None:
        self._subs.pop(sub, None)

    def _notify(self, changed: str) -> None:
        for sub, last in list(self._subs.items()):
            if sub.path == CONNECTED_PATH or not paths_overlap(sub.path, changed):
                continue
            current = read_tree(self._root, split_path(sub.path))
            if current == last:
                continue
            self._subs[sub] = copy.deepcopy(current)
            sub.push(copy.deepcopy(current))

    # ── Connectivity ──────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._connected

    def set_connected(self, connected: bool) -> None:
        """Flip the connectivity flag (simulates a network transition)."""
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("Memory store %s", "connected" if connected else "disconnected")
        for sub in list(self._subs):
            if sub.path == CONNECTED_PATH:
                self._subs[sub] = connected
                sub.push(connected)

    async def close(self) -> None:
        for sub in list(self._subs):
            sub.close()
        self._subs.clear()
