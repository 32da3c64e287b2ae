"""Client-side request rate limiting keyed by subject."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import time
from typing import Protocol

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.aio.storage import MemoryStorage
from limits.aio.strategies import MovingWindowRateLimiter

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int = 0
    remaining: int = 0
    reset: float = 0.0


class RateLimiter(Protocol):
    async def limit(self, subject: str) -> RateLimitResult: ...


class AllowAllRateLimiter:
    """Used when limiting is disabled: every request passes."""

    async def limit(self, subject: str) -> RateLimitResult:
        return RateLimitResult(success=True)


class MovingWindowLimiter:
    """Allow at most ``requests`` calls per subject in any ``window_seconds`` span.

    Hits are counted by a ``limits`` moving window over in-process memory
    storage, so the budget resets when the client restarts.
    """

    def __init__(self, requests: int = 20, window_seconds: int = 60) -> None:
        self.item: RateLimitItem = RateLimitItemPerSecond(
            max(1, requests), max(1, window_seconds)
        )
        self._strategy = MovingWindowRateLimiter(MemoryStorage())

    @property
    def requests(self) -> int:
        return self.item.amount

    async def limit(self, subject: str) -> RateLimitResult:
        allowed = await self._strategy.hit(self.item, subject)
        stats = await self._strategy.get_window_stats(self.item, subject)
        if not allowed:
            LOGGER.info(
                "rate_limit.exceeded",
                extra={
                    "event": "rate_limit.exceeded",
                    "subject": subject,
                    "retry_in": math.ceil(max(0.0, stats.reset_time - time.time())),
                },
            )
        return RateLimitResult(
            success=allowed,
            limit=self.item.amount,
            remaining=stats.remaining,
            reset=stats.reset_time,
        )


def build_rate_limiter(config: dict[str, object]) -> RateLimiter:
    """Create the limiter described by the ``rate_limit`` config section."""
    if not config.get("enabled", True):
        return AllowAllRateLimiter()
    return MovingWindowLimiter(
        requests=int(config.get("requests", 20)),  # type: ignore[arg-type]
        window_seconds=int(config.get("window_seconds", 60)),  # type: ignore[arg-type]
    )
