"""Conversation, message and attachment records held by the store."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Literal
from uuid import uuid4

MessageRole = Literal["user", "assistant", "system"]
ReasoningEffort = Literal["low", "medium", "high"]
ReasoningFormat = Literal["raw", "parsed", "hidden"]

DEFAULT_REASONING_EFFORT: ReasoningEffort = "medium"
DEFAULT_REASONING_FORMAT: ReasoningFormat = "parsed"

TITLE_MAX_CHARS = 50
DEFAULT_TITLE = "New Chat"


def generate_id() -> str:
    """Return a fresh opaque client-side identifier."""
    return str(uuid4())


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def derive_title(content: str) -> str:
    """Build a conversation title from the first user message."""
    if len(content) > TITLE_MAX_CHARS:
        return content[:TITLE_MAX_CHARS] + "..."
    return content


@dataclass(frozen=True)
class LocalId:
    """Client-generated id of a conversation that only exists in memory."""

    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DurableId:
    """Server-issued id of a conversation confirmed by the persistence API."""

    value: str

    def __str__(self) -> str:
        return self.value


ConversationId = LocalId | DurableId


@dataclass
class ImageAttachment:
    """An image on a message.

    ``url``/``key`` are the durable representation. ``base64`` and
    ``local_blob`` are transient and never sent to persistence.
    """

    mime_type: str
    file_name: str
    url: str | None = None
    key: str | None = None
    base64: str | None = None
    local_blob: bytes | None = None

    @property
    def is_durable(self) -> bool:
        return bool(self.url) and bool(self.key)


@dataclass(frozen=True)
class SearchResult:
    """A web search hit attached to an assistant answer."""

    title: str
    url: str
    snippet: str


@dataclass
class Message:
    """A single chat message."""

    id: str
    role: MessageRole
    content: str = ""
    images: list[ImageAttachment] | None = None
    is_streaming: bool = False
    error: str | None = None
    search_results: list[SearchResult] | None = None
    created_at: int = field(default_factory=now_ms)


@dataclass
class Conversation:
    """A conversation and its loaded messages."""

    ref: ConversationId
    title: str = DEFAULT_TITLE
    model: str = ""
    reasoning_effort: ReasoningEffort | None = None
    reasoning_format: ReasoningFormat | None = None
    messages: list[Message] = field(default_factory=list)
    message_count: int = 0
    is_loading_messages: bool = False
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def id(self) -> str:
        return self.ref.value

    @property
    def is_persisted(self) -> bool:
        return isinstance(self.ref, DurableId)

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return -1
