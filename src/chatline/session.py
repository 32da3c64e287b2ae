"""Per-session pointer to the active durable conversation."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from platformdirs import user_state_path

LOGGER = logging.getLogger(__name__)

POINTER_KEY = "active-conversation-id"


def default_pointer_path() -> Path:
    """Return the platform state file used when no path is configured."""
    return user_state_path("chatline") / "session.json"


class SessionPointer:
    """Remembers which durable conversation was open.

    With ``path=None`` the pointer lives in memory only, which is what a
    single process run (and the tests) need.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path).expanduser() if path else None
        self._value: str | None = None
        if self.path is not None:
            self._value = self._read()

    def _read(self) -> str | None:
        assert self.path is not None
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning(
                "session.pointer.unreadable",
                extra={
                    "event": "session.pointer.unreadable",
                    "path": str(self.path),
                    "error": str(exc),
                },
            )
            return None
        value = payload.get(POINTER_KEY) if isinstance(payload, dict) else None
        return value if isinstance(value, str) and value else None

    def _write(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps({POINTER_KEY: self._value}), encoding="utf-8"
            )
            if os.name == "posix":
                self.path.chmod(0o600)
        except OSError as exc:
            LOGGER.warning(
                "session.pointer.write_failed",
                extra={
                    "event": "session.pointer.write_failed",
                    "path": str(self.path),
                    "error": str(exc),
                },
            )

    def get(self) -> str | None:
        return self._value

    def set(self, conversation_id: str) -> None:
        self._value = conversation_id
        self._write()

    def clear(self) -> None:
        self._value = None
        self._write()
