"""FastAPI dependencies shared by the public and admin routers."""

from __future__ import annotations

from fastapi import Header, Request
from fastapi.responses import JSONResponse

from toolhub.service import DeviceControlService


class DeviceBlockedError(Exception):
    """Raised by :func:`require_device_access`; rendered as a 403 payload."""

    def __init__(self, payload: dict) -> None:
        super().__init__(payload.get("code", "DEVICE_BLOCKED"))
        self.payload = payload


def get_service(request: Request) -> DeviceControlService:
    return request.app.state.devices


async def require_device_access(
    request: Request,
    x_device_id: str | None = Header(default=None),
) -> str | None:
    """Gate a route on the caller's ``X-Device-ID``.

    A missing header means an unknown device, which is allowed.
    """
    service = get_service(request)
    metadata = {
        "endpoint": request.url.path,
        "userAgent": request.headers.get("user-agent", "Unknown"),
        "ipAddress": request.client.host if request.client else "Unknown",
    }
    decision = service.gate.check(x_device_id, metadata)
    if not decision.allowed:
        raise DeviceBlockedError(decision.payload)
    return x_device_id


async def device_blocked_handler(request: Request, exc: DeviceBlockedError) -> JSONResponse:
    return JSONResponse(status_code=403, content=exc.payload)
