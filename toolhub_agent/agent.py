"""Device agent — registers the device and executes remote commands.

Lifecycle: STARTING → ONLINE ⇄ BLOCKED → STOPPED

  start()      open store, register device, subscribe to commands
  run()        start, wait until stopped, return True if a restart was asked for
  stop()       tear down subscriptions and connections

Command handling is idempotent: a command seen before (by key) is skipped,
and each action converges on a state rather than toggling one, so a second
delivery of the same command changes nothing.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import platform
import shutil
import socket
from collections import OrderedDict
from typing import Awaitable, Callable

from toolhub.commands import CommandBus
from toolhub.connection import ConnectionMonitor
from toolhub.models import Command, CommandType, short_id
from toolhub.registry import DeviceRegistry
from toolhub.store import SharedStateStore, open_store
from toolhub.watermark import BroadcastWatermark

from . import __version__
from .client import DeviceBlockedError, ToolHubClient, ToolHubClientError
from .config import AgentConfig

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_MESSAGE = "Device blocked by administrator"

# Command keys remembered for duplicate suppression.
_HANDLED_LIMIT = 256


class State(enum.Enum):
    STARTING = "starting"
    ONLINE = "online"
    BLOCKED = "blocked"
    STOPPED = "stopped"


class DeviceAgent:
    """Client-side half of the control plane."""

    def __init__(
        self,
        config: AgentConfig,
        store: SharedStateStore | None = None,
        client: ToolHubClient | None = None,
        watermark: BroadcastWatermark | None = None,
    ) -> None:
        if not config.device_id:
            raise ValueError("AgentConfig.device_id must be set")
        self.config = config
        self.state = State.STARTING
        self.tools: list[dict] = []
        self.block_message = ""
        self.restart_requested = False
        self.executed: list[CommandType] = []

        self.store: SharedStateStore | None = store
        self.client = client
        self._owns_store = store is None
        self._owns_client = client is None
        self.bus: CommandBus | None = None
        self.registry: DeviceRegistry | None = None
        self.monitor: ConnectionMonitor | None = None
        # Outlives a single agent when the entry point restarts in-process.
        self.watermark: BroadcastWatermark | None = watermark

        self._handled: OrderedDict[str, None] = OrderedDict()
        self._stop_event = asyncio.Event()
        self._restart_handle: asyncio.TimerHandle | None = None
        self._handlers: dict[CommandType, Callable[[Command], Awaitable[None]]] = {
            CommandType.REFRESH_TOOLS: self._on_refresh_tools,
            CommandType.BLOCK_DEVICE: self._on_block,
            CommandType.UNBLOCK_DEVICE: self._on_unblock,
            CommandType.UPDATE_ICONS: self._on_update_icons,
            CommandType.RESTART_APP: self._on_restart,
        }

    @property
    def device_id(self) -> str:
        return self.config.device_id

    @property
    def blocked(self) -> bool:
        return self.state is State.BLOCKED

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        cfg = self.config
        logger.info("=== ToolHub Agent v%s ===", __version__)
        logger.info("Device: %s | Server: %s", short_id(cfg.device_id), cfg.server_url)

        if self.store is None:
            self.store = await open_store(cfg.store_url, cfg.store_auth, cfg.store_timeout)
        if self.client is None:
            self.client = ToolHubClient(cfg.server_url, cfg.device_id, timeout=cfg.request_timeout)

        self.bus = CommandBus(self.store)
        self.registry = DeviceRegistry(self.store, self.bus)
        self.monitor = ConnectionMonitor(self.store)
        if self.watermark is None:
            self.watermark = BroadcastWatermark(cfg.watermark_path)

        self.monitor.on_connectivity_change(self._on_connectivity)
        self.monitor.on_reconnect(self.resync)
        await self.monitor.start()

        await self.registry.register_or_update(cfg.device_id, self.device_info())
        await self.bus.subscribe(cfg.device_id, self.handle_command, self.watermark)

        if self.state is State.STARTING:
            self.state = State.ONLINE
        await self.refresh_tools()

    async def run(self) -> bool:
        """Run until stopped.  Returns True when the agent should be restarted."""
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
        return self.restart_requested

    def request_stop(self) -> None:
        self._stop_event.set()

    async def stop(self) -> None:
        if self.state is State.STOPPED:
            return
        logger.info("Shutting down device agent...")
        self.state = State.STOPPED
        if self._restart_handle is not None:
            self._restart_handle.cancel()
        if self.bus:
            await self.bus.close()
        if self.monitor:
            await self.monitor.stop()
        if self.registry:
            await self.registry.close()
        if self.client and self._owns_client:
            await self.client.aclose()
        if self.store and self._owns_store:
            await self.store.close()

    async def resync(self) -> None:
        """Run after every reconnect: refresh registration, catch up on commands."""
        logger.info("Reconnected, resyncing device state")
        await self.registry.register_or_update(self.device_id, self.device_info())
        await self.bus.resync()

    def device_info(self) -> dict:
        return {
            "deviceId": self.device_id,
            "hostname": socket.gethostname(),
            "platform": platform.platform(),
            "agentVersion": __version__,
            "type": "agent",
        }

    # ── Tools ─────────────────────────────────────────────────────

    async def refresh_tools(self) -> None:
        try:
            self.tools = await self.client.tools()
            logger.info("Loaded %d tools", len(self.tools))
        except DeviceBlockedError as exc:
            self._enter_blocked(str(exc))
        except ToolHubClientError as exc:
            logger.warning("Could not refresh tools: %s", exc)

    # ── Commands ──────────────────────────────────────────────────

    async def handle_command(self, command: Command) -> None:
        """Execute one command.  Safe to call more than once with the same command."""
        if command.key in self._handled:
            logger.debug("Command %s already handled", command.key)
            return
        self._handled[command.key] = None
        while len(self._handled) > _HANDLED_LIMIT:
            self._handled.popitem(last=False)

        logger.info("Processing command: %s", command.type.value)
        self.executed.append(command.type)
        await self._handlers[command.type](command)

    async def _on_refresh_tools(self, command: Command) -> None:
        await self.refresh_tools()

    async def _on_block(self, command: Command) -> None:
        self._enter_blocked(command.data if isinstance(command.data, str) else "")

    async def _on_unblock(self, command: Command) -> None:
        if self.state is State.BLOCKED:
            self.state = State.ONLINE
            self.block_message = ""
            logger.info("Device access restored")
        await self.refresh_tools()

    async def _on_update_icons(self, command: Command) -> None:
        icons = self.config.icon_cache_path
        shutil.rmtree(icons, ignore_errors=True)
        icons.mkdir(parents=True, exist_ok=True)
        logger.info("Icon cache cleared")
        await self.refresh_tools()

    async def _on_restart(self, command: Command) -> None:
        if self.restart_requested:
            return
        self.restart_requested = True
        logger.warning("Application restarting in %.1fs...", self.config.restart_delay)
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(self.config.restart_delay, self._stop_event.set)

    def _enter_blocked(self, message: str) -> None:
        self.block_message = message or DEFAULT_BLOCK_MESSAGE
        if self.state is not State.BLOCKED:
            self.state = State.BLOCKED
            logger.warning("Device blocked: %s", self.block_message)

    def _on_connectivity(self, connected: bool) -> None:
        logger.info("Store connection: %s", "connected" if connected else "disconnected")
