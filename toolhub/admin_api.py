"""Admin API router for ToolHub devices.

Lists tracked devices, blocks and unblocks them, and sends commands.
Caller authentication is expected to happen in front of this router.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from toolhub.deps import get_service
from toolhub.models import CommandType, InvalidDeviceIdError
from toolhub.service import DeviceControlService
from toolhub.store import StoreError

router = APIRouter(prefix="/api/admin", tags=["admin"])


class BlockRequest(BaseModel):
    blocked: bool
    reason: str | None = None


class CommandRequest(BaseModel):
    device_id: str = Field(alias="deviceId", min_length=1)
    command: CommandType
    data: Any = None


# ══════════════════════════════════════════════════════════════════
# DEVICES
# ══════════════════════════════════════════════════════════════════

@router.get("/devices")
async def list_devices(service: DeviceControlService = Depends(get_service)):
    try:
        devices = await service.registry.list()
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=f"Failed to fetch devices: {exc}")
    return {
        "success": True,
        "devices": [d.to_dict() for d in devices],
        "count": len(devices),
    }


@router.post("/devices/{device_id}/block")
async def block_device(
    device_id: str,
    req: BlockRequest,
    service: DeviceControlService = Depends(get_service),
):
    try:
        await service.set_blocked(device_id, req.blocked, req.reason or "")
    except InvalidDeviceIdError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=f"Failed to update device status: {exc}")
    action = "blocked" if req.blocked else "unblocked"
    return {"success": True, "message": f"Device {action} successfully"}


@router.post("/devices/evict-stale")
async def evict_stale(service: DeviceControlService = Depends(get_service)):
    try:
        evicted = await service.registry.evict_stale(service.settings.device_ttl_ms)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=f"Failed to evict devices: {exc}")
    return {"success": True, "evicted": evicted, "count": len(evicted)}


# ══════════════════════════════════════════════════════════════════
# COMMANDS
# ══════════════════════════════════════════════════════════════════

@router.post("/commands")
async def send_command(req: CommandRequest, service: DeviceControlService = Depends(get_service)):
    try:
        command = await service.bus.send(req.device_id, req.command, req.data)
    except InvalidDeviceIdError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=f"Failed to send command: {exc}")
    return {
        "success": True,
        "message": f"Command sent to {req.device_id}",
        "command": command.to_wire(),
    }


# ══════════════════════════════════════════════════════════════════
# STATUS
# ══════════════════════════════════════════════════════════════════

@router.get("/status")
async def control_status(service: DeviceControlService = Depends(get_service)):
    return {"success": True, **service.status()}
