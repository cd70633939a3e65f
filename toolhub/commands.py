"""Real-time command bus.

Publishing side (server / admin)::

    bus = CommandBus(store)
    await bus.send_targeted("dev_1a2b", CommandType.REFRESH_TOOLS)
    await bus.send_broadcast(CommandType.RESTART_APP)

Receiving side (device)::

    await bus.subscribe(device_id, handler, BroadcastWatermark(path))

Delivery rules:

  targeted   one slot per device at ``commands/{id}``.  A new command
             overwrites an unconsumed one (last command wins).  The consumer
             runs the handler, then clears the slot.
  broadcast  one shared slot at ``commands/broadcast``, never cleared by
             consumers.  Because every new subscription replays the slot,
             a broadcast only runs when it is newer than the watermark.

Handlers must be idempotent: a failed slot removal, or the same command
arriving through both the live stream and :meth:`CommandBus.resync`, can
deliver a command twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable

from toolhub.models import (
    BROADCAST_PATH,
    BROADCAST_TARGET,
    RESPONSES_PATH,
    Command,
    CommandResponse,
    CommandType,
    MalformedCommandError,
    ResponseStatus,
    command_path,
    short_id,
    validate_device_id,
)
from toolhub.store import SharedStateStore, StoreError, Subscription
from toolhub.tasks import BackgroundTasks
from toolhub.watermark import BroadcastWatermark

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Command], Awaitable[None]]

# Targeted command keys remembered to skip in-process redelivery.
_RECENT_KEYS = 64


class CommandBus:
    """Publishes commands and, on a device, dispatches them to a handler."""

    def __init__(self, store: SharedStateStore) -> None:
        self._store = store
        self._device_id: str | None = None
        self._handler: CommandHandler | None = None
        self._watermark: BroadcastWatermark | None = None
        self._subs: list[Subscription] = []
        self._tasks: list[asyncio.Task] = []
        self._recent: deque[str] = deque(maxlen=_RECENT_KEYS)
        self._in_flight: set[str] = set()
        self._background = BackgroundTasks()
        self._closed = False

    # ── Publishing ────────────────────────────────────────────────

    async def send_targeted(
        self,
        device_id: str,
        command_type: CommandType | str,
        data: Any = None,
    ) -> Command:
        """Overwrite the pending command slot of *device_id*."""
        validate_device_id(device_id)
        command = Command.create(command_type, device_id, data)
        await self._store.set(command_path(device_id), command.to_wire())
        logger.info("Command %s sent to %s", command.type.value, short_id(device_id))
        return command

    async def send_broadcast(self, command_type: CommandType | str, data: Any = None) -> Command:
        """Overwrite the shared broadcast slot."""
        command = Command.create(command_type, BROADCAST_TARGET, data)
        await self._store.set(BROADCAST_PATH, command.to_wire())
        logger.info("Broadcast command %s sent", command.type.value)
        return command

    async def send(self, target: str, command_type: CommandType | str, data: Any = None) -> Command:
        """Send to one device, or to every device when *target* is ``"all"``."""
        if target == BROADCAST_TARGET:
            return await self.send_broadcast(command_type, data)
        return await self.send_targeted(target, command_type, data)

    # ── Receiving ─────────────────────────────────────────────────

    async def subscribe(
        self,
        device_id: str,
        handler: CommandHandler,
        watermark: BroadcastWatermark | None = None,
    ) -> None:
        """Start delivering this device's targeted and broadcast commands."""
        if self._handler is not None:
            raise RuntimeError("CommandBus is already subscribed")
        self._device_id = validate_device_id(device_id)
        self._handler = handler
        self._watermark = watermark or BroadcastWatermark()

        targeted = await self._store.subscribe(command_path(device_id))
        broadcast = await self._store.subscribe(BROADCAST_PATH)
        # Only the newest value of a slot matters.
        targeted.conflate = broadcast.conflate = True
        self._subs = [targeted, broadcast]

        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._consume(targeted, self._on_targeted)),
            loop.create_task(self._consume(broadcast, self._on_broadcast)),
        ]
        logger.info("Listening for commands as %s", short_id(device_id))

    async def resync(self) -> None:
        """Re-read both slots after a reconnect.

        Anything issued while disconnected is picked up; anything already
        executed is filtered by the same rules as live delivery.
        """
        if self._handler is None or self._closed:
            return
        try:
            await self._on_targeted(await self._store.get(command_path(self._device_id)))
            await self._on_broadcast(await self._store.get(BROADCAST_PATH))
        except StoreError as exc:
            logger.warning("Command resync failed: %s", exc)

    async def close(self) -> None:
        """Tear down subscriptions; no handler runs after this returns."""
        self._closed = True
        for sub in self._subs:
            sub.close()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._subs = []
        self._tasks = []
        await self._background.drain(timeout=1.0)

    @property
    def subscribed(self) -> bool:
        return self._handler is not None and not self._closed

    @property
    def watermark(self) -> BroadcastWatermark | None:
        return self._watermark

    # ── Internal ──────────────────────────────────────────────────

    async def _consume(self, sub: Subscription, callback: Callable[[Any], Awaitable[None]]) -> None:
        async for value in sub:
            if self._closed:
                break
            try:
                await callback(value)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error dispatching command from /%s", sub.path)

    async def _on_targeted(self, value: Any) -> None:
        if value is None:
            return
        try:
            command = Command.from_wire(value)
        except MalformedCommandError as exc:
            logger.warning("Discarding malformed command for %s: %s", short_id(self._device_id), exc)
            await self._clear_slot(None)
            return

        key = command.key
        if key in self._in_flight:
            return
        if key in self._recent:
            logger.debug("Command %s already executed, clearing slot", key)
            await self._clear_slot(command)
            return

        self._in_flight.add(key)
        try:
            self._recent.append(key)
            await self._execute(command)
        finally:
            self._in_flight.discard(key)
        await self._clear_slot(command)

    async def _on_broadcast(self, value: Any) -> None:
        if value is None:
            return
        try:
            command = Command.from_wire(value)
        except MalformedCommandError as exc:
            logger.warning("Ignoring malformed broadcast command: %s", exc)
            return
        if not command.is_broadcast:
            return

        watermark = self._watermark
        if not watermark.is_new(command):
            logger.debug("Skipping replayed broadcast %s issued at %d", command.type.value, command.issued_at)
            return
        # Advance first: a restart handler may never return.
        watermark.advance(command)
        await self._execute(command)

    async def _execute(self, command: Command) -> None:
        if self._closed or self._handler is None:
            return
        logger.info(
            "Executing %s command %s",
            "broadcast" if command.is_broadcast else "targeted",
            command.type.value,
        )
        try:
            await self._handler(command)
        except Exception as exc:
            logger.exception("Command %s failed", command.type.value)
            self._respond(command, ResponseStatus.FAILED, str(exc))
            return
        self._respond(command, ResponseStatus.EXECUTED)

    async def _clear_slot(self, command: Command | None) -> None:
        """Remove the targeted slot unless a newer command has replaced it."""
        path = command_path(self._device_id)
        try:
            if command is not None:
                current = await self._store.get(path)
                if isinstance(current, dict) and current.get("commandId") not in (None, command.command_id):
                    logger.debug("Command slot for %s was overwritten, keeping it", short_id(self._device_id))
                    return
            await self._store.remove(path)
        except StoreError as exc:
            logger.warning("Failed to clear command slot for %s: %s", short_id(self._device_id), exc)

    def _respond(self, command: Command, status: ResponseStatus, detail: str = "") -> None:
        response = CommandResponse(self._device_id, command, status, detail)
        self._background.spawn(
            self._store.push(RESPONSES_PATH, response.to_wire()),
            f"response for {command.type.value}",
        )
