"""Device session registry.

Tracks every device that has contacted the server under
``connected_devices/{id}`` and records administrator block decisions under
``devices/{id}``.  Each device owns its own records, so writes from
different devices never collide and no in-process locking is needed;
concurrent writes for the same device resolve last-write-wins in the store.

Session tracking is best-effort telemetry: :meth:`DeviceRegistry.register_or_update`
logs and swallows store failures, and :meth:`DeviceRegistry.record_access`
does the write in the background so a request never waits on it.
"""

from __future__ import annotations

import logging
from typing import Any

from toolhub.commands import CommandBus
from toolhub.models import (
    SESSIONS_PATH,
    STATUS_PATH,
    CommandType,
    DeviceSession,
    DeviceStatus,
    InvalidDeviceIdError,
    now_ms,
    session_path,
    short_id,
    status_path,
    validate_device_id,
)
from toolhub.store import SharedStateStore, StoreError
from toolhub.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

# Metadata keys managed by the registry itself.
_RESERVED_KEYS = {"lastAccess", "lastUpdate", "status", "blockReason", "id"}


class DeviceRegistry:
    """Known devices, their last-seen metadata and their block status."""

    def __init__(self, store: SharedStateStore, bus: CommandBus) -> None:
        self._store = store
        self._bus = bus
        self._background = BackgroundTasks()

    # ── Session tracking ──────────────────────────────────────────

    async def register_or_update(self, device_id: str, metadata: dict[str, Any] | None = None) -> None:
        """Upsert the session of *device_id*.  Never raises."""
        try:
            validate_device_id(device_id)
        except InvalidDeviceIdError as exc:
            logger.warning("Not tracking device %s: %s", short_id(device_id), exc)
            return

        now = now_ms()
        values = {k: v for k, v in (metadata or {}).items() if k not in _RESERVED_KEYS}
        values["lastAccess"] = now
        values["lastUpdate"] = now
        try:
            await self._store.update(session_path(device_id), values)
            logger.debug("Device session updated: %s", short_id(device_id))
        except Exception:
            logger.exception("Failed to update device session for %s", short_id(device_id))

    def record_access(self, device_id: str, metadata: dict[str, Any] | None = None) -> None:
        """Fire-and-forget :meth:`register_or_update` for the request path."""
        self._background.spawn(
            self.register_or_update(device_id, metadata),
            f"session update for {short_id(device_id)}",
        )

    # ── Admin view ────────────────────────────────────────────────

    async def list(self) -> list[DeviceSession]:
        """Snapshot of every tracked device, most recently seen first."""
        sessions = await self._store.get(SESSIONS_PATH) or {}
        statuses = await self._store.get(STATUS_PATH) or {}
        devices = [
            DeviceSession.from_store(device_id, data, statuses.get(device_id))
            for device_id, data in sessions.items()
            if isinstance(data, dict)
        ]
        devices.sort(key=lambda d: d.last_access or 0, reverse=True)
        return devices

    async def get(self, device_id: str) -> DeviceSession | None:
        validate_device_id(device_id)
        data = await self._store.get(session_path(device_id))
        if not isinstance(data, dict):
            return None
        status = await self._store.get(status_path(device_id))
        return DeviceSession.from_store(device_id, data, status)

    async def set_status(self, device_id: str, status: DeviceStatus | str, reason: str = "") -> None:
        """Record a block decision and tell the device about it.

        Store failures propagate: the administrator must learn that the
        decision was not recorded.
        """
        validate_device_id(device_id)
        status = DeviceStatus(status)
        reason = reason or "Admin action"
        await self._store.update(status_path(device_id), {
            "status": status.value,
            "blockReason": reason,
            "timestamp": now_ms(),
        })
        command = CommandType.BLOCK_DEVICE if status is DeviceStatus.BLOCKED else CommandType.UNBLOCK_DEVICE
        await self._bus.send_targeted(device_id, command, reason)
        logger.info("Device %s: %s (%s)", status.value, short_id(device_id), reason)

    # ── Retention ─────────────────────────────────────────────────

    async def evict_stale(self, max_age_ms: int) -> list[str]:
        """Remove sessions not seen for *max_age_ms*.

        Block decisions under ``devices/`` are kept, so an evicted device
        that comes back is still denied.
        """
        if max_age_ms <= 0:
            return []
        cutoff = now_ms() - max_age_ms
        sessions = await self._store.get(SESSIONS_PATH) or {}
        evicted: list[str] = []
        for device_id, data in sessions.items():
            last = data.get("lastAccess") if isinstance(data, dict) else None
            if isinstance(last, (int, float)) and last >= cutoff:
                continue
            try:
                await self._store.remove(session_path(device_id))
                evicted.append(device_id)
            except StoreError as exc:
                logger.warning("Failed to evict device %s: %s", short_id(device_id), exc)
        if evicted:
            logger.info("Evicted %d stale device session(s)", len(evicted))
        return evicted

    async def close(self) -> None:
        await self._background.drain(timeout=1.0)
