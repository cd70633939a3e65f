"""Tests for the ToolHub HTTP surface — gated routes and the admin API."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from toolhub.config import Settings
from toolhub.server import create_app
from toolhub.service import DeviceControlService
from toolhub.store import MemoryStore, StoreError


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    """Poll while the app's event loop runs background writes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def memory_store():
    return MemoryStore()


@pytest.fixture()
def service(memory_store):
    return DeviceControlService(Settings(cache_wait=0.5, device_ttl_days=0), store=memory_store)


@pytest.fixture()
def client(service):
    app = create_app(Settings(), service=service)
    with TestClient(app) as c:
        yield c


def _listed(client) -> list[dict]:
    return client.get("/api/admin/devices").json()["devices"]


# ── Public routes ─────────────────────────────────────────────────


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["store"] == "memory"
        assert data["blocklistLoaded"] is True

    def test_degraded_store_reported(self):
        service = DeviceControlService(Settings(cache_wait=0.5, device_ttl_days=0), store=MemoryStore(degraded=True))
        with TestClient(create_app(Settings(), service=service)) as c:
            assert c.get("/health").json()["status"] == "degraded"


class TestGatedRoutes:
    def test_status_without_device_id(self, client):
        resp = client.get("/api/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["status"] == "online"

    def test_tools_catalog(self, memory_store, service):
        asyncio.run(memory_store.set("tools", {
            "calc": {"name": "Calculator", "url": "https://tools.example/calc"},
            "notes": {"name": "Notes"},
        }))
        with TestClient(create_app(Settings(), service=service)) as c:
            data = c.get("/api/tools", headers={"X-Device-ID": "a1b2"}).json()
        assert data["count"] == 2
        assert {t["id"] for t in data["tools"]} == {"calc", "notes"}
        assert {"id": "calc", "name": "Calculator", "url": "https://tools.example/calc"} in data["tools"]

    def test_empty_catalog(self, client):
        data = client.get("/api/tools").json()
        assert data["tools"] == []
        assert data["count"] == 0

    def test_blocked_at_startup_is_denied(self, memory_store, service):
        asyncio.run(memory_store.set("devices/a1b2c3d4e5", {"status": "blocked"}))
        with TestClient(create_app(Settings(), service=service)) as c:
            resp = c.get("/api/tools", headers={"X-Device-ID": "a1b2c3d4e5"})
            other = c.get("/api/tools", headers={"X-Device-ID": "dev_other"})
        assert resp.status_code == 403
        assert resp.json() == {
            "success": False,
            "code": "DEVICE_BLOCKED",
            "error": "Device access denied",
            "adminMessage": "Your device has been blocked by administrator for security reasons.",
            "deviceId": "a1b2c...",
        }
        assert other.status_code == 200

    def test_requests_register_the_device(self, client):
        client.get(
            "/api/status",
            headers={"X-Device-ID": "a1b2", "User-Agent": "ToolHubTablet/3.1"},
        )
        assert _wait_for(lambda: len(_listed(client)) == 1)
        [device] = _listed(client)
        assert device["id"] == "a1b2"
        assert device["endpoint"] == "/api/status"
        assert device["userAgent"] == "ToolHubTablet/3.1"
        assert device["status"] == "active"


# ── End-to-end admin flow ─────────────────────────────────────────


class TestAdminFlow:
    def test_register_block_unblock(self, client, memory_store):
        assert _listed(client) == []

        assert client.get("/api/tools", headers={"X-Device-ID": "a1b2"}).status_code == 200
        assert _wait_for(lambda: len(_listed(client)) == 1)
        assert _listed(client)[0]["status"] == "active"

        resp = client.post("/api/admin/devices/a1b2/block", json={"blocked": True, "reason": "Lost"})
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "message": "Device blocked successfully"}

        denied = client.get("/api/tools", headers={"X-Device-ID": "a1b2"})
        assert denied.status_code == 403
        assert denied.json()["code"] == "DEVICE_BLOCKED"
        assert denied.json()["deviceId"] == "a1..."

        [device] = _listed(client)
        assert device["status"] == "blocked"
        assert device["blockReason"] == "Lost"

        resp = client.post("/api/admin/devices/a1b2/block", json={"blocked": False})
        assert resp.json()["message"] == "Device unblocked successfully"
        assert client.get("/api/tools", headers={"X-Device-ID": "a1b2"}).status_code == 200

    def test_block_notifies_device(self, client, memory_store):
        client.post("/api/admin/devices/a1b2/block", json={"blocked": True})
        command = asyncio.run(memory_store.get("commands/a1b2"))
        assert command["type"] == "block_device"
        assert command["data"] == "Admin action"

    def test_block_invalid_id(self, client):
        resp = client.post("/api/admin/devices/a.b/block", json={"blocked": True})
        assert resp.status_code == 400

    def test_block_requires_flag(self, client):
        resp = client.post("/api/admin/devices/a1b2/block", json={"reason": "x"})
        assert resp.status_code == 422

    def test_block_store_failure(self, client, service):
        service.registry.set_status = AsyncMock(side_effect=StoreError("offline"))
        resp = client.post("/api/admin/devices/a1b2/block", json={"blocked": True})
        assert resp.status_code == 503
        # Nothing was recorded, so nothing is enforced locally either.
        assert client.get("/api/tools", headers={"X-Device-ID": "a1b2"}).status_code == 200

    def test_list_store_failure(self, client, service):
        service.registry.list = AsyncMock(side_effect=StoreError("offline"))
        assert client.get("/api/admin/devices").status_code == 503


class TestAdminCommands:
    def test_targeted_command(self, client, memory_store):
        resp = client.post("/api/admin/commands", json={"deviceId": "a1b2", "command": "refresh_tools"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["command"]["targetDeviceId"] == "a1b2"
        stored = asyncio.run(memory_store.get("commands/a1b2"))
        assert stored["commandId"] == body["command"]["commandId"]

    def test_broadcast_command(self, client, memory_store):
        resp = client.post("/api/admin/commands", json={"deviceId": "all", "command": "restart_app", "data": {}})
        assert resp.status_code == 200
        stored = asyncio.run(memory_store.get("commands/broadcast"))
        assert stored["type"] == "restart_app"
        assert stored["targetDeviceId"] == "all"

    def test_unknown_command_rejected(self, client):
        resp = client.post("/api/admin/commands", json={"deviceId": "a1b2", "command": "self_destruct"})
        assert resp.status_code == 422

    def test_invalid_target_rejected(self, client):
        resp = client.post("/api/admin/commands", json={"deviceId": "bad/id", "command": "refresh_tools"})
        assert resp.status_code == 400

    def test_missing_target_rejected(self, client):
        resp = client.post("/api/admin/commands", json={"command": "refresh_tools"})
        assert resp.status_code == 422


class TestAdminMaintenance:
    def test_status(self, client):
        data = client.get("/api/admin/status").json()
        assert data["success"] is True
        assert data["connected"] is True
        assert data["blockedDevices"] == 0

    def test_evict_disabled(self, client):
        resp = client.post("/api/admin/devices/evict-stale")
        assert resp.json() == {"success": True, "evicted": [], "count": 0}

    def test_evict_removes_old_sessions(self, memory_store):
        asyncio.run(memory_store.set("connected_devices/dev_old", {"lastAccess": 1}))
        service = DeviceControlService(Settings(cache_wait=0.5, device_ttl_days=1), store=memory_store)
        with TestClient(create_app(Settings(), service=service)) as c:
            resp = c.post("/api/admin/devices/evict-stale")
            assert resp.json()["evicted"] == ["dev_old"]
            assert c.get("/api/admin/devices").json()["count"] == 0
