"""Safety classifier client. Any failure counts as unsafe."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import httpx

LOGGER = logging.getLogger(__name__)

UNAVAILABLE_REASON = "Safety check unavailable"
DEFAULT_UNSAFE_REASON = "Unsafe content detected"


@dataclass(frozen=True)
class SafetyResult:
    is_safe: bool
    reason: str | None = None


def interpret_verdict(verdict: str | None) -> SafetyResult:
    """Read a guard model verdict such as ``"safe"`` or ``"unsafe\\nS1"``."""
    text = (verdict or "").strip()
    if text.lower() == "safe":
        return SafetyResult(is_safe=True)
    if text.lower().startswith("unsafe"):
        text = text[len("unsafe") :].strip()
    return SafetyResult(is_safe=False, reason=text or DEFAULT_UNSAFE_REASON)


def _result_from_payload(payload: Any) -> SafetyResult:
    if not isinstance(payload, dict):
        raise ValueError("Safety response is not an object.")
    if "isSafe" in payload:
        if payload["isSafe"] is True:
            return SafetyResult(is_safe=True)
        reason = payload.get("reason")
        return SafetyResult(is_safe=False, reason=str(reason) if reason else DEFAULT_UNSAFE_REASON)
    content = payload.get("content")
    if not isinstance(content, str):
        raise ValueError("Safety response carries no verdict.")
    return interpret_verdict(content)


class SafetyClassifier:
    """Checks a user message against the remote safety endpoint."""

    def __init__(self, client: httpx.AsyncClient, safety_path: str = "/api/safety") -> None:
        self._client = client
        self._path = safety_path

    async def check(self, text: str) -> SafetyResult:
        try:
            response = await self._client.post(self._path, json={"content": text})
            response.raise_for_status()
            result = _result_from_payload(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            event = (
                "safety.check.unreachable"
                if isinstance(exc, httpx.TransportError)
                else "safety.check.failed"
            )
            LOGGER.error(
                event,
                extra={
                    "event": event,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return SafetyResult(is_safe=False, reason=UNAVAILABLE_REASON)
        if not result.is_safe:
            LOGGER.info(
                "safety.check.flagged",
                extra={"event": "safety.check.flagged", "reason": result.reason},
            )
        return result
