"""Event bus used to notify presentation layers of store and turn changes.

Usage:
    bus = EventBus()

    def on_notice(event):
        print(event.data["message"])

    bus.subscribe("notice", on_notice)
    bus.emit("notice", {"level": "warning", "message": "..."})
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

STORE_CHANGED = "store.changed"
CONVERSATION_RENAMED = "conversation.renamed"
TURN_PHASE = "turn.phase"
TURN_SETTLED = "turn.settled"
NOTICE = "notice"


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Synchronous publish/subscribe hub.

    Handlers run inline in subscription order. A failing handler is logged
    and does not prevent later handlers from running.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[[Event], Any]]] = {}

    def subscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        """Subscribe ``handler`` to ``event_name``."""
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug(
            "events.subscribed",
            extra={"event": "events.subscribed", "event_name": event_name},
        )

    def unsubscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        """Remove a previously subscribed handler, ignoring unknown ones."""
        handlers = self._subscribers.get(event_name)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    def emit(
        self, event_name: str, data: dict[str, Any] | None = None, source: str | None = None
    ) -> None:
        """Deliver an event to every subscriber of ``event_name``."""
        event = Event(name=event_name, data=dict(data or {}), source=source)
        for handler in list(self._subscribers.get(event_name, ())):
            try:
                handler(event)
            except Exception as exc:  # noqa: BLE001 - one bad listener must not break the emitter.
                LOGGER.error(
                    "events.handler.failed",
                    extra={
                        "event": "events.handler.failed",
                        "event_name": event_name,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )

    def notice(self, level: str, message: str, **data: Any) -> None:
        """Emit a user-facing notice (``info``, ``warning`` or ``error``)."""
        self.emit(NOTICE, {"level": level, "message": message, **data})

    def clear(self, event_name: str | None = None) -> None:
        """Clear subscribers for one event, or all of them."""
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
