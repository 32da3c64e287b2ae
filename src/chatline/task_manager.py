"""Lifecycle tracking for the detached asyncio work the store schedules."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named and fire-and-forget background tasks.

    Fire-and-forget work (title patches, lazy message loads, retried
    deletions) is spawned here so failures are logged instead of lost,
    and so tests and shutdown can wait for it deterministically.
    """

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track the task."""
        task = asyncio.get_running_loop().create_task(coro)
        self.add(task, name)
        return task

    def add(self, task: asyncio.Task[Any], name: str | None = None) -> None:
        """Register a task, optionally under a unique name.

        A named task replaces any earlier task with the same name without
        cancelling it. Anonymous tasks drop out once they complete.
        """
        if name is not None:
            self._named[name] = task
            task.add_done_callback(lambda done, key=name: self._forget(key, done))
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)
        task.add_done_callback(self._log_exception)

    def _forget(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]

    def _log_exception(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.background.exception",
                extra={
                    "event": "task.background.exception",
                    "task_name": task.get_name(),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def get(self, name: str) -> asyncio.Task[Any] | None:
        """Return the named task or ``None`` if not registered."""
        return self._named.get(name)

    async def cancel(self, name: str) -> None:
        """Cancel a named task and await its completion."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        all_tasks = [
            t for t in [*self._named.values(), *self._anonymous] if not t.done()
        ]
        for task in all_tasks:
            task.cancel()
        for task in all_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._named.clear()
        self._anonymous.clear()

    async def await_all(self) -> None:
        """Await tracked tasks, including ones spawned while waiting."""
        while True:
            pending = [
                t for t in [*self._named.values(), *self._anonymous] if not t.done()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
