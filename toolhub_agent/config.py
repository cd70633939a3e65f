"""Configuration for the ToolHub device agent."""

from __future__ import annotations

import hashlib
import json
import logging
import platform
import socket
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    digits = []
    while True:
        n, r = divmod(n, 36)
        digits.append(_BASE36[r])
        if n == 0:
            return "".join(reversed(digits))


@dataclass
class AgentConfig:
    """Device agent configuration — loaded from config.json."""

    device_id: str = ""
    server_url: str = "http://localhost:3000"

    # Shared store (empty URL → in-process store, commands stay local)
    store_url: str = ""
    store_auth: str = ""
    store_timeout: float = 10.0

    # Where the watermark and icon cache live (default ~/.toolhub-agent)
    state_dir: str = ""

    request_timeout: float = 10.0
    restart_delay: float = 2.0  # seconds between restart_app and the restart

    @classmethod
    def load(cls, path: str | Path) -> AgentConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(dict(self.__dict__), f, indent=2)

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir) if self.state_dir else Path.home() / ".toolhub-agent"

    @property
    def watermark_path(self) -> Path:
        return self.state_path / "watermark.json"

    @property
    def icon_cache_path(self) -> Path:
        return self.state_path / "icons"

    def generate_id(self) -> str:
        """Fingerprint this machine into a device ID.

        The timestamp suffix keeps two identical machines apart; save the
        config afterwards so the ID stays stable across restarts.
        """
        fingerprint = "|".join([
            socket.gethostname(),
            platform.system(),
            platform.machine(),
            platform.python_version(),
            str(uuid.getnode()),
        ])
        digest = hashlib.sha256(fingerprint.encode()).hexdigest()[:8]
        return f"dev_{digest}_{_base36(int(time.time() * 1000))}"
