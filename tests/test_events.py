"""Tests for the synchronous event bus and the session pointer."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
import unittest

from chatline.events import NOTICE, EventBus
from chatline.session import POINTER_KEY, SessionPointer


class EventBusTests(unittest.TestCase):
    def test_handlers_run_in_subscription_order(self) -> None:
        bus = EventBus()
        seen: list[str] = []
        bus.subscribe("x", lambda event: seen.append("first"))
        bus.subscribe("x", lambda event: seen.append(event.data["value"]))

        bus.emit("x", {"value": "second"})

        self.assertEqual(seen, ["first", "second"])

    def test_failing_handler_does_not_stop_others(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        def broken(_event: object) -> None:
            raise RuntimeError("listener bug")

        bus.subscribe("x", broken)
        bus.subscribe("x", lambda event: seen.append("ok"))

        with self.assertLogs("chatline.events", level="ERROR") as logs:
            bus.emit("x")

        self.assertEqual(seen, ["ok"])
        self.assertTrue(any("events.handler.failed" in line for line in logs.output))

    def test_unsubscribe_and_clear(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        def handler(_event: object) -> None:
            seen.append("hit")

        bus.subscribe("x", handler)
        bus.unsubscribe("x", handler)
        bus.unsubscribe("x", handler)
        bus.emit("x")
        bus.subscribe("y", handler)
        bus.clear()
        bus.emit("y")

        self.assertEqual(seen, [])

    def test_notice_payload(self) -> None:
        bus = EventBus()
        notices: list[dict[str, object]] = []
        bus.subscribe(NOTICE, lambda event: notices.append(event.data))

        bus.notice("warning", "careful", code=3)

        self.assertEqual(notices, [{"level": "warning", "message": "careful", "code": 3}])


class SessionPointerTests(unittest.TestCase):
    """Validate the active-conversation pointer survives restarts."""

    def test_memory_only_pointer(self) -> None:
        pointer = SessionPointer()
        self.assertIsNone(pointer.get())
        pointer.set("conv-1")
        self.assertEqual(pointer.get(), "conv-1")
        pointer.clear()
        self.assertIsNone(pointer.get())

    def test_file_pointer_round_trips(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "state" / "session.json"
            SessionPointer(path).set("conv-9")

            self.assertEqual(json.loads(path.read_text(encoding="utf-8")), {POINTER_KEY: "conv-9"})
            self.assertEqual(SessionPointer(path).get(), "conv-9")

    def test_corrupt_file_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "session.json"
            path.write_text("{not json", encoding="utf-8")

            with self.assertLogs("chatline.session", level="WARNING"):
                pointer = SessionPointer(path)

            self.assertIsNone(pointer.get())


if __name__ == "__main__":
    unittest.main()
