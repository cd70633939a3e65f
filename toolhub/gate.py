"""Access-control gate.

Answers "is this device blocked?" on the request hot path without touching
the network.  A single subscription to ``devices/`` keeps a local block-list
current; every emission builds a new ``frozenset`` and swaps the reference,
so readers see either the old set or the new one, never a mix.

Fail-open policy
----------------
The gate denies only on explicit evidence.  A request without a device
identifier, or any request arriving before the block-list was ever loaded
(store unreachable at startup, degraded mode), is allowed.  This trades
enforcement for availability on purpose: an outage of the control plane must
not take the data plane down with it.  Once loaded, the last-known list keeps
being enforced through disconnects, so a device blocked before the store
went away stays blocked.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from toolhub.models import STATUS_PATH, DeviceStatus, short_id
from toolhub.store import SharedStateStore, Subscription

logger = logging.getLogger(__name__)

DEVICE_BLOCKED = "DEVICE_BLOCKED"
BLOCKED_MESSAGE = "Your device has been blocked by administrator for security reasons."

SeenCallback = Callable[[str, dict], None]


@dataclass
class AccessDecision:
    allowed: bool
    device_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


def blocked_ids(devices: Any) -> frozenset[str]:
    """Extract the ids whose status is ``blocked`` from a ``devices/`` snapshot."""
    if not isinstance(devices, dict):
        return frozenset()
    return frozenset(
        device_id
        for device_id, record in devices.items()
        if isinstance(record, dict) and record.get("status") == DeviceStatus.BLOCKED.value
    )


def deny_payload(device_id: str) -> dict[str, Any]:
    return {
        "success": False,
        "code": DEVICE_BLOCKED,
        "error": "Device access denied",
        "adminMessage": BLOCKED_MESSAGE,
        "deviceId": short_id(device_id),
    }


class AccessControlGate:
    """Locally cached block-list with synchronous allow/deny."""

    def __init__(self, store: SharedStateStore, on_seen: SeenCallback | None = None) -> None:
        self._store = store
        self._on_seen = on_seen
        # None until the first snapshot arrives.
        self._blocked: frozenset[str] | None = None
        self._ready = asyncio.Event()
        self._sub: Subscription | None = None
        self._task: asyncio.Task | None = None

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        if self._task is not None:
            return
        self._sub = await self._store.subscribe(STATUS_PATH)
        self._sub.conflate = True
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

    async def wait_ready(self, timeout: float | None = None) -> bool:
        """Wait for the first block-list snapshot.  Returns False on timeout."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _watch(self, sub: Subscription) -> None:
        async for devices in sub:
            self._blocked = blocked_ids(devices)
            self._ready.set()
            logger.info("Updated blocked devices: %d", len(self._blocked))

    def apply_local(self, device_id: str, blocked: bool) -> None:
        """Apply a decision made by this process before the store echoes it back."""
        current = self._blocked or frozenset()
        self._blocked = current | {device_id} if blocked else current - {device_id}

    # ── Queries ───────────────────────────────────────────────────

    @property
    def populated(self) -> bool:
        return self._blocked is not None

    @property
    def blocked_count(self) -> int:
        return len(self._blocked or ())

    def is_blocked(self, device_id: str | None) -> bool:
        """Cache-only check; never awaits, never raises."""
        blocked = self._blocked
        if not device_id or blocked is None:
            return False
        return device_id in blocked

    def check(self, device_id: str | None, metadata: dict[str, Any] | None = None) -> AccessDecision:
        """Decide on one request and report allowed devices as seen."""
        if self.is_blocked(device_id):
            logger.info("Denied request from blocked device %s", short_id(device_id))
            return AccessDecision(False, device_id, deny_payload(device_id))

        if device_id and self._on_seen is not None:
            try:
                self._on_seen(device_id, metadata or {})
            except Exception:
                logger.exception("Device-seen callback failed for %s", short_id(device_id))
        return AccessDecision(True, device_id)
