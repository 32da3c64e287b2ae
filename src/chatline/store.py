"""In-memory conversation store: the single source of truth for chat state."""

from __future__ import annotations

from collections.abc import Coroutine
from dataclasses import fields
from datetime import datetime
import logging
from typing import Any

import httpx

from .api import ConversationApi
from .capabilities import DEFAULT_MODEL
from .events import CONVERSATION_RENAMED, STORE_CHANGED, EventBus
from .models import (
    DEFAULT_REASONING_EFFORT,
    DEFAULT_REASONING_FORMAT,
    DEFAULT_TITLE,
    Conversation,
    DurableId,
    ImageAttachment,
    LocalId,
    Message,
    ReasoningEffort,
    ReasoningFormat,
    SearchResult,
    derive_title,
    generate_id,
    now_ms,
)
from .session import SessionPointer
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

CONVERSATION_DELETED = "conversation.deleted"

_MESSAGE_FIELDS = frozenset(f.name for f in fields(Message)) - {"id"}


def _parse_timestamp(value: Any) -> int:
    """Convert an API timestamp (ISO string or epoch ms) to epoch ms."""
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value:
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            pass
    return now_ms()


def _message_from_payload(payload: dict[str, Any]) -> Message:
    attachments = payload.get("imageAttachments") or []
    images = [
        ImageAttachment(
            mime_type=str(item.get("mimeType", "")),
            file_name=str(item.get("fileName", "")),
            url=item.get("url"),
            key=item.get("key"),
        )
        for item in attachments
        if isinstance(item, dict)
    ]
    results = payload.get("searchResults") or []
    search_results = [
        SearchResult(
            title=str(item.get("title", "")),
            url=str(item.get("url", "")),
            snippet=str(item.get("snippet", "")),
        )
        for item in results
        if isinstance(item, dict)
    ]
    return Message(
        id=str(payload["id"]),
        role=payload.get("role", "assistant"),
        content=str(payload.get("content") or ""),
        images=images or None,
        search_results=search_results or None,
        created_at=_parse_timestamp(payload.get("createdAt")),
    )


class ConversationStore:
    """Authoritative, synchronous conversation state.

    Every mutation runs to completion without awaiting, so two turns on the
    same event loop can never interleave inside one mutation. Network side
    effects are either awaited by the async loaders or detached onto the
    task manager, where their failures are logged and dropped.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        tasks: TaskManager | None = None,
        api: ConversationApi | None = None,
        session: SessionPointer | None = None,
        default_model: str = DEFAULT_MODEL,
    ) -> None:
        self.bus = bus or EventBus()
        self.tasks = tasks or TaskManager()
        self.api = api
        self.session = session or SessionPointer()
        self.default_model = default_model

        self.conversations: list[Conversation] = []
        self.active_id: str | None = None
        self.is_loaded = False
        self.draft_model = default_model
        self.draft_reasoning_effort: ReasoningEffort = DEFAULT_REASONING_EFFORT
        self.draft_reasoning_format: ReasoningFormat = DEFAULT_REASONING_FORMAT

        # Conversation ids with a persist call in flight.
        self.persisting_ids: set[str] = set()
        # Durable ids whose remote delete failed; retried on the next load.
        self.pending_deletions: set[str] = set()
        self._aliases: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def resolve_id(self, conversation_id: str | None) -> str | None:
        """Follow local->durable renames so stale ids keep working."""
        if conversation_id is None:
            return None
        return self._aliases.get(conversation_id, conversation_id)

    def get(self, conversation_id: str | None) -> Conversation | None:
        resolved = self.resolve_id(conversation_id)
        if resolved is None:
            return None
        for conversation in self.conversations:
            if conversation.id == resolved:
                return conversation
        return None

    def get_message(self, conversation_id: str | None, message_id: str) -> Message | None:
        conversation = self.get(conversation_id)
        return conversation.find_message(message_id) if conversation else None

    def get_active_conversation(self) -> Conversation | None:
        if self.active_id is None:
            return None
        return self.get(self.active_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _changed(self, conversation_id: str | None, reason: str) -> None:
        self.bus.emit(
            STORE_CHANGED, {"conversation_id": conversation_id, "reason": reason}
        )

    def _detach(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> None:
        try:
            self.tasks.spawn(coro, name=name)
        except RuntimeError:
            # No running loop: nothing can carry the side effect.
            coro.close()
            LOGGER.debug(
                "store.detach.skipped",
                extra={"event": "store.detach.skipped", "task_name": name},
            )

    async def _sync_conversation(self, conversation_id: str, changes: dict[str, Any]) -> None:
        if self.api is None:
            return
        try:
            response = await self.api.update_conversation(conversation_id, changes)
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "store.sync.failed",
                extra={
                    "event": "store.sync.failed",
                    "conversation_id": conversation_id,
                    "fields": sorted(changes),
                    "error": str(exc),
                },
            )
            return
        if not response.is_success:
            LOGGER.warning(
                "store.sync.rejected",
                extra={
                    "event": "store.sync.rejected",
                    "conversation_id": conversation_id,
                    "fields": sorted(changes),
                    "status": response.status_code,
                },
            )

    def _sync_if_durable(self, conversation: Conversation, changes: dict[str, Any]) -> None:
        if conversation.is_persisted and self.api is not None:
            self._detach(self._sync_conversation(conversation.id, changes))

    # ------------------------------------------------------------------
    # Synchronous mutations
    # ------------------------------------------------------------------

    def create_draft_conversation(self) -> None:
        """Start a blank chat; the conversation materializes on the first message."""
        self.active_id = None
        self.session.clear()
        self.draft_model = self.default_model
        self.draft_reasoning_effort = DEFAULT_REASONING_EFFORT
        self.draft_reasoning_format = DEFAULT_REASONING_FORMAT
        self._changed(None, "draft")

    def materialize_conversation(self, first_message: Message | None = None) -> Conversation:
        """Create a local conversation from the draft settings and activate it."""
        conversation = Conversation(
            ref=LocalId(generate_id()),
            model=self.draft_model,
            reasoning_effort=self.draft_reasoning_effort,
            reasoning_format=self.draft_reasoning_format,
        )
        if first_message is not None:
            conversation.messages.append(first_message)
            conversation.message_count = 1
            if first_message.role == "user":
                conversation.title = derive_title(first_message.content)
        self.conversations.insert(0, conversation)
        self.active_id = conversation.id
        LOGGER.info(
            "store.conversation.materialized",
            extra={
                "event": "store.conversation.materialized",
                "conversation_id": conversation.id,
                "model": conversation.model,
            },
        )
        self._changed(conversation.id, "materialized")
        return conversation

    def add_message(self, conversation_id: str | None, message: Message) -> str:
        """Append ``message`` and return the id of the conversation holding it."""
        conversation = self.get(conversation_id)
        if conversation is None:
            return self.materialize_conversation(message).id

        is_first_user_message = message.role == "user" and not any(
            existing.role == "user" for existing in conversation.messages
        )
        conversation.messages.append(message)
        conversation.message_count += 1
        conversation.updated_at = now_ms()
        if is_first_user_message:
            conversation.title = derive_title(message.content)
            self._sync_if_durable(conversation, {"title": conversation.title})
        self._changed(conversation.id, "message.added")
        return conversation.id

    def update_message(
        self, conversation_id: str | None, message_id: str, **updates: Any
    ) -> None:
        """Merge ``updates`` into a message in place; absent targets are ignored."""
        unknown = set(updates) - _MESSAGE_FIELDS
        if unknown:
            raise TypeError(f"Unknown message fields: {sorted(unknown)}")
        conversation = self.get(conversation_id)
        if conversation is None:
            return
        message = conversation.find_message(message_id)
        if message is None:
            return
        for name, value in updates.items():
            setattr(message, name, value)
        conversation.updated_at = now_ms()
        self._changed(conversation.id, "message.updated")

    def set_active_conversation(self, conversation_id: str | None) -> None:
        resolved = self.resolve_id(conversation_id)
        self.active_id = resolved
        conversation = self.get(resolved)
        if conversation is not None and conversation.is_persisted:
            self.session.set(conversation.id)
            if not conversation.messages:
                self._detach(
                    self.load_messages_for_conversation(conversation.id),
                    name=f"messages:{conversation.id}",
                )
        else:
            self.session.clear()
        self._changed(resolved, "active")

    def rename_conversation(self, local_id: str, durable_id: str) -> None:
        """Move every reference of ``local_id`` onto the server-issued id."""
        conversation = self.get(local_id)
        if conversation is None:
            return
        previous = conversation.id
        conversation.ref = DurableId(durable_id)
        if self.active_id == previous:
            self.active_id = durable_id
            self.session.set(durable_id)
        if previous in self.persisting_ids:
            self.persisting_ids.discard(previous)
            self.persisting_ids.add(durable_id)
        self._aliases[previous] = durable_id
        for alias, target in self._aliases.items():
            if target == previous:
                self._aliases[alias] = durable_id
        LOGGER.info(
            "store.conversation.renamed",
            extra={
                "event": "store.conversation.renamed",
                "local_id": previous,
                "conversation_id": durable_id,
            },
        )
        self.bus.emit(
            CONVERSATION_RENAMED, {"local_id": previous, "conversation_id": durable_id}
        )
        self._changed(durable_id, "renamed")

    def set_conversation_model(self, conversation_id: str | None, model: str) -> None:
        conversation = self.get(conversation_id)
        if conversation is None:
            self.set_draft_model(model)
            return
        conversation.model = model
        conversation.updated_at = now_ms()
        self._sync_if_durable(conversation, {"model": model})
        self._changed(conversation.id, "model")

    def set_conversation_reasoning(
        self,
        conversation_id: str | None,
        effort: ReasoningEffort | None = None,
        reasoning_format: ReasoningFormat | None = None,
    ) -> None:
        conversation = self.get(conversation_id)
        if conversation is None:
            if effort is not None:
                self.draft_reasoning_effort = effort
            if reasoning_format is not None:
                self.draft_reasoning_format = reasoning_format
            self._changed(None, "draft.reasoning")
            return
        changes: dict[str, Any] = {}
        if effort is not None:
            conversation.reasoning_effort = effort
            changes["reasoningEffort"] = effort
        if reasoning_format is not None:
            conversation.reasoning_format = reasoning_format
            changes["reasoningFormat"] = reasoning_format
        if changes:
            conversation.updated_at = now_ms()
            self._sync_if_durable(conversation, changes)
            self._changed(conversation.id, "reasoning")

    def update_conversation_title(self, conversation_id: str | None, title: str) -> None:
        conversation = self.get(conversation_id)
        if conversation is None:
            return
        conversation.title = title
        conversation.updated_at = now_ms()
        self._sync_if_durable(conversation, {"title": title})
        self._changed(conversation.id, "title")

    def set_draft_model(self, model: str) -> None:
        self.draft_model = model
        self._changed(None, "draft.model")

    def clear_all_conversations(self) -> None:
        self.conversations = []
        self.active_id = None
        self._aliases.clear()
        self._changed(None, "cleared")

    # ------------------------------------------------------------------
    # Async operations against the persistence API
    # ------------------------------------------------------------------

    async def delete_conversation(self, conversation_id: str) -> None:
        """Remove a conversation optimistically, then delete it remotely.

        A failed remote delete is queued in :attr:`pending_deletions` and
        retried by :meth:`load_conversations`, which also keeps the
        conversation hidden until the retry succeeds.
        """
        conversation = self.get(conversation_id)
        if conversation is None:
            return
        target = conversation.id
        self.conversations = [c for c in self.conversations if c.id != target]
        if self.active_id == target:
            self.active_id = None
            self.session.clear()
        self.bus.emit(CONVERSATION_DELETED, {"conversation_id": target})
        self._changed(target, "deleted")

        if not conversation.is_persisted or self.api is None:
            return
        if not await self._delete_remote(target):
            self.pending_deletions.add(target)

    async def _delete_remote(self, conversation_id: str) -> bool:
        assert self.api is not None
        try:
            response = await self.api.delete_conversation(conversation_id)
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "store.delete.failed",
                extra={
                    "event": "store.delete.failed",
                    "conversation_id": conversation_id,
                    "error": str(exc),
                },
            )
            return False
        # Already gone server-side counts as deleted.
        if response.is_success or response.status_code == 404:
            return True
        LOGGER.warning(
            "store.delete.rejected",
            extra={
                "event": "store.delete.rejected",
                "conversation_id": conversation_id,
                "status": response.status_code,
            },
        )
        return False

    async def load_conversations(self) -> None:
        """Load the conversation list and restore the session's active pointer."""
        if self.api is None:
            self.is_loaded = True
            return

        for pending_id in sorted(self.pending_deletions):
            if await self._delete_remote(pending_id):
                self.pending_deletions.discard(pending_id)

        try:
            response = await self.api.fetch_conversations()
            if response.status_code == 401:
                self.is_loaded = True
                self._changed(None, "loaded")
                return
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.error(
                "store.load.failed",
                extra={"event": "store.load.failed", "error": str(exc)},
            )
            self.is_loaded = True
            self._changed(None, "loaded")
            return

        loaded: list[Conversation] = []
        for item in payload if isinstance(payload, list) else []:
            if not isinstance(item, dict) or "id" not in item:
                continue
            conversation_id = str(item["id"])
            if conversation_id in self.pending_deletions:
                continue
            count = item.get("_count") or {}
            loaded.append(
                Conversation(
                    ref=DurableId(conversation_id),
                    title=str(item.get("title") or DEFAULT_TITLE),
                    model=str(item.get("model") or self.default_model),
                    reasoning_effort=item.get("reasoningEffort"),
                    reasoning_format=item.get("reasoningFormat"),
                    message_count=int(count.get("messages") or 0),
                    created_at=_parse_timestamp(item.get("createdAt")),
                    updated_at=_parse_timestamp(item.get("updatedAt")),
                )
            )

        # Conversations that only exist locally survive a reload of the list.
        local_only = [c for c in self.conversations if not c.is_persisted]
        self.conversations = local_only + loaded

        if self.active_id is not None and self.get(self.active_id) is not None:
            final_active: str | None = self.active_id
        else:
            stored = self.session.get()
            final_active = (
                stored if stored and any(c.id == stored for c in loaded) else None
            )
        self.active_id = final_active
        self.is_loaded = True
        LOGGER.info(
            "store.load.completed",
            extra={
                "event": "store.load.completed",
                "count": len(loaded),
                "active_id": final_active,
            },
        )
        self._changed(final_active, "loaded")

        active = self.get(final_active)
        if active is not None and active.is_persisted and not active.messages:
            self._detach(
                self.load_messages_for_conversation(active.id),
                name=f"messages:{active.id}",
            )

    async def load_messages_for_conversation(self, conversation_id: str | None) -> None:
        conversation = self.get(conversation_id)
        if conversation is None or not conversation.is_persisted or self.api is None:
            return

        conversation.is_loading_messages = True
        self._changed(conversation.id, "messages.loading")
        try:
            response = await self.api.fetch_messages(conversation.id)
            if not response.is_success:
                LOGGER.warning(
                    "store.messages.rejected",
                    extra={
                        "event": "store.messages.rejected",
                        "conversation_id": conversation.id,
                        "status": response.status_code,
                    },
                )
                return
            payload = response.json()
            loaded = [
                _message_from_payload(item)
                for item in payload
                if isinstance(item, dict) and "id" in item
            ]
            loaded_ids = {message.id for message in loaded}
            # Keep messages appended locally while the fetch was in flight.
            conversation.messages = loaded + [
                m for m in conversation.messages if m.id not in loaded_ids
            ]
            conversation.message_count = len(conversation.messages)
        except (httpx.HTTPError, ValueError, TypeError) as exc:
            LOGGER.error(
                "store.messages.failed",
                extra={
                    "event": "store.messages.failed",
                    "conversation_id": conversation.id,
                    "error": str(exc),
                },
            )
        finally:
            conversation.is_loading_messages = False
            self._changed(conversation.id, "messages.loaded")
