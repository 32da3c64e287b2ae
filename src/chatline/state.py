"""Turn lifecycle phases, outcomes and the cancellation token."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from enum import Enum
import logging
from typing import Any, TypeVar

from .exceptions import TurnAbortedError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class TurnPhase(str, Enum):
    """Finite state machine for one send turn."""

    IDLE = "IDLE"
    DRAFTING = "DRAFTING"
    UPLOADING = "UPLOADING"
    REQUESTING = "REQUESTING"
    STREAMING = "STREAMING"
    AWAITING_BATCH = "AWAITING_BATCH"
    PERSISTING = "PERSISTING"
    SETTLED = "SETTLED"


class TurnOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    ABORTED = "ABORTED"


_ALLOWED_TRANSITIONS: dict[TurnPhase, frozenset[TurnPhase]] = {
    TurnPhase.IDLE: frozenset({TurnPhase.DRAFTING}),
    TurnPhase.DRAFTING: frozenset(
        {TurnPhase.UPLOADING, TurnPhase.REQUESTING, TurnPhase.SETTLED}
    ),
    TurnPhase.UPLOADING: frozenset(
        {TurnPhase.REQUESTING, TurnPhase.PERSISTING, TurnPhase.SETTLED}
    ),
    TurnPhase.REQUESTING: frozenset(
        {
            TurnPhase.STREAMING,
            TurnPhase.AWAITING_BATCH,
            TurnPhase.PERSISTING,
            TurnPhase.SETTLED,
        }
    ),
    TurnPhase.STREAMING: frozenset({TurnPhase.PERSISTING, TurnPhase.SETTLED}),
    TurnPhase.AWAITING_BATCH: frozenset({TurnPhase.PERSISTING, TurnPhase.SETTLED}),
    TurnPhase.PERSISTING: frozenset({TurnPhase.SETTLED}),
    TurnPhase.SETTLED: frozenset({TurnPhase.IDLE}),
}


class TurnStateManager:
    """Track the phase of the active turn with async lock semantics."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._phase = TurnPhase.IDLE

    @property
    def phase(self) -> TurnPhase:
        return self._phase

    async def transition_to(self, new_phase: TurnPhase) -> TurnPhase:
        """Move to ``new_phase``; illegal jumps are logged and applied anyway."""
        async with self._lock:
            if new_phase not in _ALLOWED_TRANSITIONS[self._phase]:
                LOGGER.warning(
                    "turn.phase.unexpected",
                    extra={
                        "event": "turn.phase.unexpected",
                        "from_phase": self._phase.value,
                        "to_phase": new_phase.value,
                    },
                )
            self._phase = new_phase
            return self._phase


class CancelToken:
    """Cancellation handle shared by a turn and whoever may abort it.

    Remote work runs through :meth:`run` as a child task. Cancelling the
    token cancels that child, and the turn sees :class:`TurnAbortedError`
    instead of ``CancelledError`` so it can still settle and persist.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._child: asyncio.Task[Any] | None = None

    def cancel(self) -> bool:
        """Trigger cancellation. Returns False when already triggered."""
        if self._cancelled:
            return False
        self._cancelled = True
        if self._child is not None and not self._child.done():
            self._child.cancel()
        return True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TurnAbortedError("The request was interrupted.")

    async def run(self, work: Awaitable[T]) -> T:
        """Await ``work`` in a child task that :meth:`cancel` can interrupt."""
        if self._cancelled:
            if asyncio.iscoroutine(work):
                work.close()
            self.raise_if_cancelled()
        child = asyncio.ensure_future(work)
        self._child = child
        try:
            return await child
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                # The turn itself is being torn down, not just aborted.
                raise
            if self._cancelled:
                raise TurnAbortedError("The request was interrupted.") from None
            raise
        finally:
            self._child = None
