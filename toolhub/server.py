"""ToolHub server.

Exposes:
  GET  /health                              — liveness + store status
  GET  /api/status                          — server status (device-gated)
  GET  /api/tools                           — tool catalog (device-gated)
  *    /api/admin/...                       — device administration

Clients identify themselves with an ``X-Device-ID`` header.  Gated routes
answer 403 with a ``DEVICE_BLOCKED`` payload for blocked devices.

Start with::

    python -m toolhub.server
    # or
    uvicorn toolhub.server:app --host 0.0.0.0 --port 3000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI

from toolhub import __version__
from toolhub.admin_api import router as admin_router
from toolhub.config import Settings
from toolhub.deps import (
    DeviceBlockedError,
    device_blocked_handler,
    get_service,
    require_device_access,
)
from toolhub.models import TOOLS_PATH, now_ms, short_id
from toolhub.service import DeviceControlService
from toolhub.store import StoreError

logger = logging.getLogger(__name__)

router = APIRouter()


# ──────────────────────────────────────────────────────────────────
# Endpoints
# ──────────────────────────────────────────────────────────────────

@router.get("/health")
async def health(service: DeviceControlService = Depends(get_service)):
    return {"status": "degraded" if service.degraded else "ok", **service.status()}


@router.get("/api/status")
async def api_status(
    device_id: str | None = Depends(require_device_access),
    service: DeviceControlService = Depends(get_service),
):
    return {
        "success": True,
        "status": "online",
        "version": __version__,
        "timestamp": now_ms(),
        "store": service.status(),
        "message": "ToolHub server running",
    }


@router.get("/api/tools")
async def api_tools(
    device_id: str | None = Depends(require_device_access),
    service: DeviceControlService = Depends(get_service),
):
    try:
        catalog = await service.store.get(TOOLS_PATH) or {}
    except StoreError as exc:
        logger.warning("Tool catalog unavailable: %s", exc)
        catalog = {}
    tools = [
        {"id": tool_id, **tool}
        for tool_id, tool in catalog.items()
        if isinstance(tool, dict)
    ] if isinstance(catalog, dict) else []
    logger.info("Tools served to device: %s", short_id(device_id))
    return {"success": True, "tools": tools, "count": len(tools), "timestamp": now_ms()}


# ──────────────────────────────────────────────────────────────────
# FastAPI app
# ──────────────────────────────────────────────────────────────────

def create_app(
    settings: Settings | None = None,
    service: DeviceControlService | None = None,
) -> FastAPI:
    """Build the app.  The control plane service starts and stops with it."""
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = service or DeviceControlService(settings)
        await svc.start()
        app.state.devices = svc
        try:
            yield
        finally:
            await svc.stop()

    app = FastAPI(title="ToolHub", version=__version__, lifespan=lifespan)
    app.add_exception_handler(DeviceBlockedError, device_blocked_handler)
    app.include_router(router)
    app.include_router(admin_router)
    return app


app = create_app()


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting ToolHub server on %s:%d", settings.host, settings.port)
    uvicorn.run("toolhub.server:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
