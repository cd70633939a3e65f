"""Broadcast watermark.

Every new subscription to ``commands/broadcast`` replays the last broadcast,
however old.  The watermark records the newest broadcast this device has
already executed so replays can be recognised and skipped.  It is kept as
an immutable ``(issued_at, command_id)`` pair that is swapped, never
mutated, and optionally mirrored to a small JSON file so it survives
process restarts.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from toolhub.models import Command

logger = logging.getLogger(__name__)


class BroadcastWatermark:
    """Highest broadcast ``(issued_at, command_id)`` already executed."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else None
        self._mark: tuple[int, str] = (0, "")
        self._load()

    @property
    def issued_at(self) -> int:
        return self._mark[0]

    @property
    def command_id(self) -> str:
        return self._mark[1]

    def is_new(self, command: Command) -> bool:
        """True if *command* was issued after the last executed broadcast."""
        issued_at, command_id = self._mark
        if command.issued_at != issued_at:
            return command.issued_at > issued_at
        # Same millisecond: only a different command counts as new.
        return bool(command.command_id) and command.command_id != command_id

    def advance(self, command: Command) -> None:
        """Record *command* as executed and persist the new mark."""
        self._mark = (command.issued_at, command.command_id)
        self._save()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text())
            self._mark = (int(data.get("issuedAt", 0)), str(data.get("commandId", "")))
            logger.debug("Loaded broadcast watermark %d from %s", self._mark[0], self.path)
        except (OSError, ValueError, AttributeError) as exc:
            logger.warning("Ignoring unreadable watermark file %s: %s", self.path, exc)

    def _save(self) -> None:
        if self.path is None:
            return
        issued_at, command_id = self._mark
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps({"issuedAt": issued_at, "commandId": command_id}))
            tmp.replace(self.path)
        except OSError as exc:
            logger.warning("Failed to persist broadcast watermark to %s: %s", self.path, exc)
