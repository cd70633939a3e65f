"""Server-side control plane service.

Owns the store connection and the components built on it, with explicit
start/stop.  The FastAPI app creates one instance per process in its
lifespan and hands it to request handlers through ``app.state``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from toolhub.commands import CommandBus
from toolhub.config import Settings
from toolhub.connection import ConnectionMonitor
from toolhub.gate import AccessControlGate
from toolhub.models import DeviceStatus
from toolhub.registry import DeviceRegistry
from toolhub.store import SharedStateStore, StoreError, open_store

logger = logging.getLogger(__name__)


class DeviceControlService:
    """Device registry, access gate, command bus and connection monitor."""

    def __init__(self, settings: Settings | None = None, store: SharedStateStore | None = None) -> None:
        self.settings = settings or Settings()
        self.store: SharedStateStore | None = store
        self._owns_store = store is None
        self.bus: CommandBus | None = None
        self.registry: DeviceRegistry | None = None
        self.gate: AccessControlGate | None = None
        self.monitor: ConnectionMonitor | None = None
        self._evict_task: asyncio.Task | None = None
        self._started = False

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            return
        cfg = self.settings
        if self.store is None:
            self.store = await open_store(cfg.store_url, cfg.store_auth, cfg.store_timeout)

        self.bus = CommandBus(self.store)
        self.registry = DeviceRegistry(self.store, self.bus)
        self.gate = AccessControlGate(self.store, on_seen=self.registry.record_access)
        self.monitor = ConnectionMonitor(self.store)

        await self.monitor.start()
        await self.gate.start()
        if not await self.gate.wait_ready(cfg.cache_wait):
            logger.warning("Block-list not loaded after %.1fs, failing open until it arrives", cfg.cache_wait)

        if cfg.device_ttl_days > 0 and cfg.evict_interval > 0:
            self._evict_task = asyncio.get_running_loop().create_task(self._evict_loop())

        self._started = True
        logger.info(
            "Device control started (store=%s, degraded=%s, blocked=%d)",
            self.store.kind, self.store.degraded, self.gate.blocked_count,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._evict_task is not None:
            self._evict_task.cancel()
            try:
                await self._evict_task
            except asyncio.CancelledError:
                pass
            self._evict_task = None
        await self.gate.stop()
        await self.monitor.stop()
        await self.registry.close()
        await self.bus.close()
        if self._owns_store:
            await self.store.close()
        logger.info("Device control stopped")

    async def __aenter__(self) -> DeviceControlService:
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.stop()

    # ── Admin actions ─────────────────────────────────────────────

    async def set_blocked(self, device_id: str, blocked: bool, reason: str = "") -> None:
        """Block or unblock a device and enforce it here without waiting for the echo."""
        status = DeviceStatus.BLOCKED if blocked else DeviceStatus.ACTIVE
        await self.registry.set_status(device_id, status, reason)
        self.gate.apply_local(device_id, blocked)

    # ── Status ────────────────────────────────────────────────────

    @property
    def degraded(self) -> bool:
        return self.store is None or self.store.degraded

    def status(self) -> dict[str, Any]:
        return {
            "store": self.store.kind if self.store else None,
            "degraded": self.degraded,
            "connected": bool(self.monitor and self.monitor.connected),
            "blocklistLoaded": bool(self.gate and self.gate.populated),
            "blockedDevices": self.gate.blocked_count if self.gate else 0,
        }

    # ── Retention ─────────────────────────────────────────────────

    async def _evict_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.evict_interval)
            try:
                await self.registry.evict_stale(self.settings.device_ttl_ms)
            except StoreError as exc:
                logger.warning("Stale device sweep failed: %s", exc)
