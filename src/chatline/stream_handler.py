"""Accumulates streamed deltas into the assistant message held by the store."""

from __future__ import annotations

from .models import SearchResult
from .store import ConversationStore


class StreamHandler:
    """Processes content deltas for one assistant placeholder.

    Deltas are buffered and written to the store every ``chunk_size``
    frames; :meth:`finalize` flushes the rest so the stored content is
    always exactly the concatenation of every delta received.
    """

    def __init__(
        self,
        store: ConversationStore,
        conversation_id: str | None,
        message_id: str,
        chunk_size: int = 1,
    ) -> None:
        self._store = store
        self._conversation_id = conversation_id
        self._message_id = message_id
        self._chunk_size = max(1, chunk_size)
        self._parts: list[str] = []
        self._pending = 0

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def handle_content(self, text: str) -> None:
        """Process one content delta with batched store writes."""
        if not text:
            return
        self._parts.append(text)
        self._pending += 1
        if self._pending >= self._chunk_size:
            self.flush_buffer()

    def flush_buffer(self) -> None:
        if self._pending:
            self._store.update_message(
                self._conversation_id, self._message_id, content=self.content
            )
            self._pending = 0

    def apply_batch(self, content: str, search_results: list[SearchResult]) -> None:
        """Apply a whole non-streamed answer in a single store update."""
        self._parts = [content]
        self._pending = 0
        self._store.update_message(
            self._conversation_id,
            self._message_id,
            content=content,
            is_streaming=False,
            search_results=search_results or None,
        )

    def finalize(self) -> str:
        """Flush anything buffered and return the final content."""
        self.flush_buffer()
        return self.content
