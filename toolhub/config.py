"""Server configuration, read from ``TOOLHUB_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


@dataclass
class Settings:
    """Runtime settings for the ToolHub server and its control plane."""

    host: str = "0.0.0.0"
    port: int = 3000

    # Shared store. An empty URL selects the in-process store.
    store_url: str = ""
    store_auth: str = ""
    store_timeout: float = 10.0

    # Seconds to wait at startup for the first block-list snapshot.
    cache_wait: float = 2.0

    # Stale device sessions older than this are evicted (0 disables).
    device_ttl_days: float = 30.0
    evict_interval: float = 3600.0

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            host=os.environ.get("TOOLHUB_HOST", cls.host),
            port=int(_env_float("TOOLHUB_PORT", cls.port)),
            store_url=os.environ.get("TOOLHUB_STORE_URL", ""),
            store_auth=os.environ.get("TOOLHUB_STORE_AUTH", ""),
            store_timeout=_env_float("TOOLHUB_STORE_TIMEOUT", cls.store_timeout),
            cache_wait=_env_float("TOOLHUB_CACHE_WAIT", cls.cache_wait),
            device_ttl_days=_env_float("TOOLHUB_DEVICE_TTL_DAYS", cls.device_ttl_days),
            evict_interval=_env_float("TOOLHUB_EVICT_INTERVAL", cls.evict_interval),
            log_level=os.environ.get("TOOLHUB_LOG_LEVEL", cls.log_level).upper(),
        )

    @property
    def device_ttl_ms(self) -> int:
        return int(self.device_ttl_days * 86_400_000)
