"""Data model and store layout for the device control plane.

Store paths::

    connected_devices/{device_id}   DeviceSession (last-seen metadata)
    devices/{device_id}             {status, blockReason, timestamp}
    commands/{device_id}            pending targeted Command (single slot)
    commands/broadcast              last broadcast Command
    commands/responses/{push_id}    CommandResponse audit log

All timestamps are integer epoch milliseconds.
"""

from __future__ import annotations

import enum
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

SESSIONS_PATH = "connected_devices"
STATUS_PATH = "devices"
COMMANDS_PATH = "commands"
BROADCAST_PATH = "commands/broadcast"
RESPONSES_PATH = "commands/responses"
TOOLS_PATH = "tools"

BROADCAST_TARGET = "all"

# Segments under commands/ that are not device slots.
_RESERVED_IDS = {"broadcast", "responses", BROADCAST_TARGET}
_ILLEGAL_ID_CHARS = re.compile(r"[./#$\[\]\x00-\x1f\x7f]")
_MAX_ID_LENGTH = 128


class InvalidDeviceIdError(ValueError):
    """Raised when a device identifier cannot be used as a store key."""


class CommandError(Exception):
    """Base error for command handling."""


class MalformedCommandError(CommandError):
    """Raised when a stored command has an unknown type or missing fields."""


def now_ms() -> int:
    return int(time.time() * 1000)


def validate_device_id(device_id: str) -> str:
    """Return *device_id* unchanged, or raise :class:`InvalidDeviceIdError`."""
    if not device_id or not isinstance(device_id, str):
        raise InvalidDeviceIdError("Device ID is required")
    if len(device_id) > _MAX_ID_LENGTH:
        raise InvalidDeviceIdError("Device ID too long")
    if _ILLEGAL_ID_CHARS.search(device_id):
        raise InvalidDeviceIdError("Device ID contains characters not allowed in a store key")
    if device_id in _RESERVED_IDS:
        raise InvalidDeviceIdError(f"Device ID {device_id!r} is reserved")
    return device_id


def short_id(device_id: str | None) -> str:
    """Truncated identifier for logs and client-facing payloads.

    At most half of the identifier is shown, and never more than 8 characters.
    """
    if not device_id:
        return "unknown"
    return device_id[:min(8, len(device_id) // 2)] + "..."


def session_path(device_id: str) -> str:
    return f"{SESSIONS_PATH}/{device_id}"


def status_path(device_id: str) -> str:
    return f"{STATUS_PATH}/{device_id}"


def command_path(device_id: str) -> str:
    return f"{COMMANDS_PATH}/{device_id}"


# ── Devices ───────────────────────────────────────────────────────


class DeviceStatus(str, enum.Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"


@dataclass
class DeviceSession:
    """One known client device, as shown in the admin view."""

    id: str
    last_access: int | None = None
    last_update: int | None = None
    status: DeviceStatus = DeviceStatus.ACTIVE
    block_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_store(
        cls,
        device_id: str,
        session: dict | None,
        status: dict | None = None,
    ) -> DeviceSession:
        session = dict(session or {})
        last_access = session.pop("lastAccess", None)
        last_update = session.pop("lastUpdate", None)
        raw_status = (status or {}).get("status", DeviceStatus.ACTIVE.value)
        try:
            device_status = DeviceStatus(raw_status)
        except ValueError:
            device_status = DeviceStatus.ACTIVE
        return cls(
            id=device_id,
            last_access=last_access,
            last_update=last_update,
            status=device_status,
            block_reason=(status or {}).get("blockReason"),
            metadata=session,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.metadata,
            "id": self.id,
            "lastAccess": self.last_access,
            "lastUpdate": self.last_update,
            "status": self.status.value,
            "blockReason": self.block_reason,
        }


# ── Commands ──────────────────────────────────────────────────────


class CommandType(str, enum.Enum):
    """Closed vocabulary of commands a device knows how to execute."""

    REFRESH_TOOLS = "refresh_tools"
    BLOCK_DEVICE = "block_device"
    UNBLOCK_DEVICE = "unblock_device"
    RESTART_APP = "restart_app"
    UPDATE_ICONS = "update_icons"


@dataclass(frozen=True)
class Command:
    type: CommandType
    target: str
    issued_at: int
    data: Any = None
    command_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_broadcast(self) -> bool:
        return self.target == BROADCAST_TARGET

    @property
    def key(self) -> str:
        """Identity used to recognise a redelivered command."""
        return self.command_id or f"{self.type.value}:{self.issued_at}"

    @classmethod
    def create(cls, command_type: CommandType | str, target: str, data: Any = None) -> Command:
        return cls(
            type=CommandType(command_type),
            target=target,
            issued_at=now_ms(),
            data=data,
        )

    @classmethod
    def from_wire(cls, raw: Any) -> Command:
        """Parse a stored command; raise :class:`MalformedCommandError`."""
        if not isinstance(raw, dict):
            raise MalformedCommandError(f"Command must be an object, got {type(raw).__name__}")
        try:
            command_type = CommandType(raw.get("type"))
        except ValueError:
            raise MalformedCommandError(f"Unknown command type: {raw.get('type')!r}") from None

        # Writers that predate issuedAt only set timestamp.
        issued_at = raw.get("issuedAt", raw.get("timestamp"))
        if not isinstance(issued_at, (int, float)) or isinstance(issued_at, bool):
            raise MalformedCommandError("Command has no issue timestamp")

        return cls(
            type=command_type,
            target=str(raw.get("targetDeviceId") or ""),
            issued_at=int(issued_at),
            data=raw.get("data"),
            command_id=str(raw.get("commandId") or ""),
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "targetDeviceId": self.target,
            "issuedAt": self.issued_at,
            "commandId": self.command_id,
        }


class ResponseStatus(str, enum.Enum):
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass
class CommandResponse:
    device_id: str
    command: Command
    status: ResponseStatus = ResponseStatus.EXECUTED
    detail: str = ""
    responded_at: int = field(default_factory=now_ms)

    def to_wire(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "commandType": self.command.type.value,
            "commandId": self.command.command_id,
            "status": self.status.value,
            "detail": self.detail,
            "respondedAt": self.responded_at,
        }
