"""Store connectivity monitor.

Watches ``.info/connected``, tells observers about every transition, and on
each disconnected → connected transition runs the reconnect hooks (device
re-registration, command resync).  Going offline needs no local action:
the gate keeps serving its last-known block-list.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from toolhub.store import CONNECTED_PATH, SharedStateStore, Subscription
from toolhub.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]
ReconnectHook = Callable[[], Awaitable[None]]


class ConnectionMonitor:
    """Observer hub for store connectivity."""

    def __init__(self, store: SharedStateStore) -> None:
        self._store = store
        self._connected: bool | None = None
        self._observers: list[ConnectivityCallback] = []
        self._hooks: list[ReconnectHook] = []
        self._sub: Subscription | None = None
        self._task: asyncio.Task | None = None
        self._background = BackgroundTasks()
        self.reconnects = 0

    async def start(self) -> None:
        if self._task is not None:
            return
        self._sub = await self._store.subscribe(CONNECTED_PATH)
        self._task = asyncio.get_running_loop().create_task(self._watch(self._sub))

    async def stop(self) -> None:
        if self._sub is not None:
            self._sub.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._sub = None
        self._task = None
        await self._background.drain(timeout=1.0)

    @property
    def connected(self) -> bool:
        return bool(self._connected)

    def on_connectivity_change(self, callback: ConnectivityCallback) -> None:
        """Register *callback*; it fires now with the current state, then on every transition."""
        self._observers.append(callback)
        self._call(callback, self.connected)

    def on_reconnect(self, hook: ReconnectHook) -> None:
        """Register a coroutine function to run after each reconnect."""
        self._hooks.append(hook)

    async def _watch(self, sub: Subscription) -> None:
        async for value in sub:
            self._transition(bool(value))

    def _transition(self, connected: bool) -> None:
        previous = self._connected
        if previous == connected:
            return
        self._connected = connected
        logger.info("Store connection: %s", "connected" if connected else "disconnected")
        for callback in list(self._observers):
            self._call(callback, connected)
        # Only a connect that follows an observed disconnect runs the hooks.  A
        # store that reports offline before its first connection (Firebase
        # starts that way) therefore runs them once on connecting.
        if connected and previous is False:
            self.reconnects += 1
            for hook in list(self._hooks):
                self._background.spawn(hook(), f"reconnect hook {getattr(hook, '__name__', hook)}")

    @staticmethod
    def _call(callback: ConnectivityCallback, connected: bool) -> None:
        try:
            callback(connected)
        except Exception:
            logger.exception("Connectivity observer failed")
