"""HTTP client for the ToolHub server API.

Uses httpx for async HTTP.  Every request carries the device's
``X-Device-ID`` header so the server can gate and track it.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ToolHubClientError(Exception):
    """Base error for ToolHub client failures."""


class ToolHubConnectionError(ToolHubClientError):
    """Raised when the server is network-unreachable."""


class DeviceBlockedError(ToolHubClientError):
    """Raised when the server refuses this device (HTTP 403 DEVICE_BLOCKED)."""

    def __init__(self, payload: dict) -> None:
        super().__init__(payload.get("adminMessage") or "Device access denied")
        self.payload = payload


class ToolHubClient:
    """Thin async wrapper around the ToolHub REST API."""

    def __init__(
        self,
        base_url: str,
        device_id: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"X-Device-ID": device_id},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ToolHubClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def status(self) -> dict:
        """Server status (GET /api/status)."""
        return await self._get("/api/status")

    async def tools(self) -> list[dict]:
        """Tool catalog (GET /api/tools)."""
        result = await self._get("/api/tools")
        tools = result.get("tools") if isinstance(result, dict) else None
        return tools if isinstance(tools, list) else []

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _get(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.get(url)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            raise ToolHubConnectionError(f"Cannot reach ToolHub at {url}: {exc}") from exc
        if response.status_code == 403:
            payload = _json_or_empty(response)
            if payload.get("code") == "DEVICE_BLOCKED":
                raise DeviceBlockedError(payload)
        if response.is_error:
            raise ToolHubClientError(f"GET {path} failed ({response.status_code})")
        return response.json()


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
