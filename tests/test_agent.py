"""Tests for the ToolHub device agent — config, HTTP client, command handling."""

from __future__ import annotations

import asyncio
import json
import re

import httpx
import pytest

from toolhub.commands import CommandBus
from toolhub.models import CommandType, DeviceStatus
from toolhub.registry import DeviceRegistry
from toolhub.watermark import BroadcastWatermark
from toolhub_agent.agent import DEFAULT_BLOCK_MESSAGE, DeviceAgent, State
from toolhub_agent.client import (
    DeviceBlockedError,
    ToolHubClient,
    ToolHubClientError,
    ToolHubConnectionError,
)
from toolhub_agent.config import AgentConfig

DEVICE = "a1b2"
TOOLS = [{"id": "calc", "name": "Calculator"}]
DENIED = {
    "success": False,
    "code": "DEVICE_BLOCKED",
    "error": "Device access denied",
    "adminMessage": "Your device has been blocked by administrator for security reasons.",
    "deviceId": "a1...",
}


class FakeServer:
    """httpx mock transport standing in for the ToolHub server."""

    def __init__(self):
        self.blocked = False
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.blocked:
            return httpx.Response(403, json=DENIED)
        if request.url.path == "/api/tools":
            return httpx.Response(200, json={"success": True, "tools": TOOLS, "count": len(TOOLS)})
        if request.url.path == "/api/status":
            return httpx.Response(200, json={"success": True, "status": "online"})
        return httpx.Response(404, json={"detail": "Not Found"})

    def client(self, device_id: str = DEVICE) -> ToolHubClient:
        return ToolHubClient("http://toolhub.test", device_id, transport=httpx.MockTransport(self))


@pytest.fixture()
def server():
    return FakeServer()


@pytest.fixture()
def config(tmp_path):
    return AgentConfig(device_id=DEVICE, state_dir=str(tmp_path / "state"), restart_delay=0.01)


def _agent(config, store, server) -> DeviceAgent:
    return DeviceAgent(config, store=store, client=server.client(config.device_id))


# ── Config ────────────────────────────────────────────────────────


class TestAgentConfig:
    def test_defaults(self):
        cfg = AgentConfig()
        assert cfg.device_id == ""
        assert cfg.server_url == "http://localhost:3000"
        assert cfg.restart_delay == 2.0

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "config.json"
        AgentConfig(device_id="dev_x", server_url="http://hub:3000", store_url="https://db").save(path)
        cfg = AgentConfig.load(path)
        assert cfg.device_id == "dev_x"
        assert cfg.server_url == "http://hub:3000"
        assert cfg.store_url == "https://db"

    def test_load_ignores_unknown_keys(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"device_id": "dev_x", "legacy_option": True}))
        assert AgentConfig.load(path).device_id == "dev_x"

    def test_load_missing_file(self, tmp_path):
        assert AgentConfig.load(tmp_path / "nope.json") == AgentConfig()

    def test_state_paths(self, tmp_path):
        cfg = AgentConfig(state_dir=str(tmp_path))
        assert cfg.watermark_path == tmp_path / "watermark.json"
        assert cfg.icon_cache_path == tmp_path / "icons"

    def test_generate_id(self):
        device_id = AgentConfig().generate_id()
        assert re.fullmatch(r"dev_[0-9a-f]{8}_[0-9a-z]+", device_id)


# ── HTTP client ───────────────────────────────────────────────────


class TestToolHubClient:
    @pytest.mark.asyncio
    async def test_sends_device_header(self, server):
        async with server.client() as client:
            assert await client.tools() == TOOLS
        assert server.requests[0].headers["x-device-id"] == DEVICE

    @pytest.mark.asyncio
    async def test_status(self, server):
        async with server.client() as client:
            assert (await client.status())["status"] == "online"

    @pytest.mark.asyncio
    async def test_blocked(self, server):
        server.blocked = True
        async with server.client() as client:
            with pytest.raises(DeviceBlockedError) as exc_info:
                await client.tools()
        assert exc_info.value.payload["code"] == "DEVICE_BLOCKED"
        assert "blocked by administrator" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_other_errors(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        async with ToolHubClient("http://toolhub.test", DEVICE, transport=transport) as client:
            with pytest.raises(ToolHubClientError):
                await client.tools()

    @pytest.mark.asyncio
    async def test_plain_403_is_not_a_block(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(403, json={"detail": "Forbidden"}))
        async with ToolHubClient("http://toolhub.test", DEVICE, transport=transport) as client:
            with pytest.raises(ToolHubClientError) as exc_info:
                await client.tools()
        assert not isinstance(exc_info.value, DeviceBlockedError)

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        async with ToolHubClient("http://toolhub.test", DEVICE, transport=httpx.MockTransport(refuse)) as client:
            with pytest.raises(ToolHubConnectionError):
                await client.tools()


# ── Agent lifecycle ───────────────────────────────────────────────


class TestAgentLifecycle:
    def test_requires_device_id(self, store):
        with pytest.raises(ValueError):
            DeviceAgent(AgentConfig(), store=store)

    @pytest.mark.asyncio
    async def test_start_registers_and_loads_tools(self, config, store, server):
        agent = _agent(config, store, server)
        await agent.start()
        assert agent.state is State.ONLINE
        assert agent.tools == TOOLS
        session = await store.get(f"connected_devices/{DEVICE}")
        assert session["type"] == "agent"
        assert session["agentVersion"]
        await agent.stop()
        assert agent.state is State.STOPPED

    @pytest.mark.asyncio
    async def test_start_while_blocked(self, config, store, server):
        server.blocked = True
        agent = _agent(config, store, server)
        await agent.start()
        assert agent.state is State.BLOCKED
        assert "blocked by administrator" in agent.block_message
        await agent.stop()

    @pytest.mark.asyncio
    async def test_stop_leaves_shared_store_open(self, config, store, server):
        watcher = await store.subscribe("devices")
        agent = _agent(config, store, server)
        await agent.start()
        await agent.stop()
        await agent.stop()
        assert not watcher.closed

    @pytest.mark.asyncio
    async def test_restart_command_ends_run(self, config, store, server, settle):
        agent = _agent(config, store, server)
        run = asyncio.ensure_future(agent.run())
        assert await settle(lambda: agent.state is State.ONLINE)

        await CommandBus(store).send_targeted(DEVICE, CommandType.RESTART_APP)
        assert await asyncio.wait_for(run, timeout=2.0) is True
        assert agent.state is State.STOPPED

    @pytest.mark.asyncio
    async def test_request_stop_ends_run(self, config, store, server, settle):
        agent = _agent(config, store, server)
        run = asyncio.ensure_future(agent.run())
        assert await settle(lambda: agent.state is State.ONLINE)
        agent.request_stop()
        assert await asyncio.wait_for(run, timeout=2.0) is False


# ── Command handling ──────────────────────────────────────────────


class TestAgentCommands:
    @pytest.mark.asyncio
    async def test_block_and_unblock(self, config, store, server, settle):
        agent = _agent(config, store, server)
        await agent.start()
        admin = CommandBus(store)

        await admin.send_targeted(DEVICE, CommandType.BLOCK_DEVICE, "Lost tablet")
        assert await settle(lambda: agent.blocked)
        assert agent.block_message == "Lost tablet"

        await admin.send_targeted(DEVICE, CommandType.UNBLOCK_DEVICE)
        assert await settle(lambda: agent.state is State.ONLINE)
        assert agent.block_message == ""
        await agent.stop()

    @pytest.mark.asyncio
    async def test_block_without_message(self, config, store, server, settle):
        agent = _agent(config, store, server)
        await agent.start()
        await CommandBus(store).send_targeted(DEVICE, CommandType.BLOCK_DEVICE)
        assert await settle(lambda: agent.blocked)
        assert agent.block_message == DEFAULT_BLOCK_MESSAGE
        await agent.stop()

    @pytest.mark.asyncio
    async def test_refresh_tools(self, config, store, server, settle):
        agent = _agent(config, store, server)
        await agent.start()
        agent.tools = []
        await CommandBus(store).send_targeted(DEVICE, CommandType.REFRESH_TOOLS)
        assert await settle(lambda: agent.tools == TOOLS)
        await agent.stop()

    @pytest.mark.asyncio
    async def test_update_icons_clears_cache(self, config, store, server, settle):
        icon = config.icon_cache_path / "calc.png"
        icon.parent.mkdir(parents=True)
        icon.write_bytes(b"\x89PNG")

        agent = _agent(config, store, server)
        await agent.start()
        await CommandBus(store).send_targeted(DEVICE, CommandType.UPDATE_ICONS)
        assert await settle(lambda: not icon.exists())
        assert config.icon_cache_path.is_dir()
        await agent.stop()

    @pytest.mark.asyncio
    async def test_same_command_handled_once(self, config, store, server):
        agent = _agent(config, store, server)
        await agent.start()
        cmd = await CommandBus(store).send_targeted("dev_elsewhere", CommandType.REFRESH_TOOLS)
        await agent.handle_command(cmd)
        await agent.handle_command(cmd)
        assert agent.executed == [CommandType.REFRESH_TOOLS]
        await agent.stop()

    @pytest.mark.asyncio
    async def test_commands_reported(self, config, store, server, settle):
        agent = _agent(config, store, server)
        await agent.start()
        cmd = await CommandBus(store).send_targeted(DEVICE, CommandType.REFRESH_TOOLS)
        assert await settle(lambda: "responses" in store._root.get("commands", {}))
        responses = list((await store.get("commands/responses")).values())
        assert responses[0]["commandId"] == cmd.command_id
        assert responses[0]["deviceId"] == DEVICE
        await agent.stop()


# ── End to end ────────────────────────────────────────────────────


class TestBroadcastAcrossReconnects:
    @pytest.mark.asyncio
    async def test_block_broadcast_reconnect(self, config, store, server, settle):
        config.restart_delay = 60.0
        admin = DeviceRegistry(store, CommandBus(store))

        agent = _agent(config, store, server)
        await agent.start()

        await admin.set_status(DEVICE, DeviceStatus.BLOCKED, "Lost tablet")
        assert await settle(lambda: agent.blocked)
        await admin.set_status(DEVICE, DeviceStatus.ACTIVE)
        assert await settle(lambda: agent.state is State.ONLINE)

        await CommandBus(store).send_broadcast(CommandType.RESTART_APP, {})
        assert await settle(lambda: CommandType.RESTART_APP in agent.executed)

        # Two reconnects with no new broadcast.
        for _ in range(2):
            store.set_connected(False)
            await settle()
            store.set_connected(True)
            assert await settle(lambda: agent.monitor.reconnects >= 1)
            await settle()
        assert agent.monitor.reconnects == 2
        assert agent.executed.count(CommandType.RESTART_APP) == 1
        await agent.stop()

        # Same device, fresh process: the stored broadcast replays but is not run.
        again = _agent(config, store, server)
        await again.start()
        await settle()
        assert CommandType.RESTART_APP not in again.executed
        assert again.restart_requested is False
        await again.stop()

    @pytest.mark.asyncio
    async def test_broadcast_issued_while_offline_runs_after_reconnect(self, config, store, server, settle):
        agent = _agent(config, store, server)
        await agent.start()
        await agent.stop()

        await CommandBus(store).send_broadcast(CommandType.UPDATE_ICONS)

        again = _agent(config, store, server)
        await again.start()
        assert await settle(lambda: CommandType.UPDATE_ICONS in again.executed)
        await again.resync()
        await settle()
        assert again.executed.count(CommandType.UPDATE_ICONS) == 1
        await again.stop()

    @pytest.mark.asyncio
    async def test_restart_loop_with_unwritable_state_dir(self, config, store, server, settle, tmp_path):
        not_a_dir = tmp_path / "state-file"
        not_a_dir.write_text("")
        config.state_dir = str(not_a_dir)
        config.restart_delay = 60.0
        await CommandBus(store).send_broadcast(CommandType.RESTART_APP)

        # The entry point keeps one watermark across in-process restarts.
        watermark = BroadcastWatermark(config.watermark_path)
        restarts = 0
        for _ in range(3):
            agent = DeviceAgent(config, store=store, client=server.client(), watermark=watermark)
            await agent.start()
            await settle()
            restarts += agent.restart_requested
            await agent.stop()

        assert restarts == 1
        assert not config.watermark_path.exists()

    @pytest.mark.asyncio
    async def test_injected_watermark_is_used(self, config, store, server):
        watermark = BroadcastWatermark()
        agent = DeviceAgent(config, store=store, client=server.client(), watermark=watermark)
        await agent.start()
        assert agent.watermark is watermark
        assert agent.bus.watermark is watermark
        await agent.stop()

    @pytest.mark.asyncio
    async def test_reconnect_reregisters_device(self, config, store, server, settle):
        agent = _agent(config, store, server)
        await agent.start()
        await store.remove(f"connected_devices/{DEVICE}")

        store.set_connected(False)
        await settle()
        store.set_connected(True)
        assert await settle(lambda: DEVICE in store._root.get("connected_devices", {}))
        await agent.stop()
