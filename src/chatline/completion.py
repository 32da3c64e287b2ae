"""HTTP client for the completion provider and its event-stream frames."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
import json
import logging
from typing import Any

import httpx

from .exceptions import (
    ChatConnectionError,
    ChatlineError,
    RateLimitedError,
    RequestTooLargeError,
    StreamError,
)
from .models import SearchResult
from .policy import CompletionRequest

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"

RATE_LIMITED_MESSAGE = "Rate limit exceeded. Please wait a moment and try again."
TOO_LARGE_MESSAGE = (
    "The request is too large. Please try a shorter message or fewer images."
)


@dataclass(frozen=True)
class StreamFrame:
    """One decoded ``data:`` frame."""

    content: str = ""
    done: bool = False


def parse_stream_frame(line: str) -> StreamFrame | None:
    """Decode a single event-stream line.

    Returns ``None`` for lines that carry nothing: non-data lines, frames
    cut off mid-JSON, and non-JSON noise. A frame carrying ``error`` or a
    broken JSON object raises :class:`StreamError`.
    """
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX) :]
    if data == DONE_MARKER:
        return StreamFrame(done=True)
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        incomplete = exc.pos >= len(data) or exc.msg.startswith("Unterminated string")
        if incomplete or not data.startswith("{"):
            return None
        raise StreamError(f"Malformed stream frame: {exc.msg}") from exc
    if not isinstance(payload, dict):
        return None
    if payload.get("error"):
        raise StreamError(str(payload["error"]))
    content = payload.get("content")
    return StreamFrame(content=content if isinstance(content, str) else "")


def parse_search_results(payload: Any) -> list[SearchResult]:
    results: list[SearchResult] = []
    for item in payload if isinstance(payload, list) else []:
        if not isinstance(item, dict):
            continue
        results.append(
            SearchResult(
                title=str(item.get("title") or ""),
                url=str(item.get("url") or ""),
                snippet=str(item.get("snippet") or ""),
            )
        )
    return results


class CompletionResponse:
    """An open provider response: either an event stream or one JSON body."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    @property
    def is_stream(self) -> bool:
        return "text/event-stream" in self._response.headers.get("content-type", "")

    def lines(self) -> AsyncIterator[str]:
        return self._response.aiter_lines()

    async def json(self) -> dict[str, Any]:
        await self._response.aread()
        payload = self._response.json()
        if not isinstance(payload, dict):
            raise StreamError("Unexpected completion response body.")
        return payload


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"HTTP {response.status_code}"


def _map_status(response: httpx.Response) -> ChatlineError:
    if response.status_code == 429:
        return RateLimitedError(RATE_LIMITED_MESSAGE)
    if response.status_code == 413:
        return RequestTooLargeError(TOO_LARGE_MESSAGE)
    if response.status_code == 503:
        return ChatConnectionError(_error_message(response))
    return ChatlineError(_error_message(response))


def _map_exception(exc: httpx.HTTPError, base_url: str) -> ChatlineError:
    if isinstance(exc, httpx.TransportError):
        return ChatConnectionError(f"Unable to reach completion endpoint at {base_url}.")
    return ChatlineError(f"Completion request failed: {exc}")


class CompletionClient:
    """Opens completion requests against the chat endpoint."""

    def __init__(self, client: httpx.AsyncClient, chat_path: str = "/api/chat") -> None:
        self._client = client
        self._path = chat_path

    @asynccontextmanager
    async def open(self, request: CompletionRequest) -> AsyncIterator[CompletionResponse]:
        """Send ``request`` and yield the response while it is open.

        Non-2xx statuses and transport failures surface as
        :class:`ChatlineError` subclasses, including ones raised while the
        body is being consumed.
        """
        LOGGER.info(
            "completion.request.started",
            extra={
                "event": "completion.request.started",
                "model": request.model,
                "stream": request.stream,
                "message_count": len(request.messages),
            },
        )
        try:
            async with self._client.stream(
                "POST", self._path, json=request.to_payload()
            ) as response:
                if not response.is_success:
                    await response.aread()
                    error = _map_status(response)
                    LOGGER.warning(
                        "completion.request.rejected",
                        extra={
                            "event": "completion.request.rejected",
                            "status": response.status_code,
                            "error_type": type(error).__name__,
                        },
                    )
                    raise error
                yield CompletionResponse(response)
        except httpx.HTTPError as exc:
            mapped = _map_exception(exc, str(self._client.base_url))
            LOGGER.warning(
                "completion.request.failed",
                extra={
                    "event": "completion.request.failed",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise mapped from exc
