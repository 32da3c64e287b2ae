"""Persistence gateway: turns store entities into conversation/message API writes."""

from __future__ import annotations

import logging

import httpx

from .api import ConversationApi, prepare_image_urls
from .exceptions import PersistenceError
from .models import Message
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)


class PersistenceGateway:
    """Durably save messages and absorb the local->durable id transition.

    The conversation is created remotely at most once: while a persist call
    for a conversation is in flight, further calls for the same id return
    immediately instead of submitting again.
    """

    def __init__(self, store: ConversationStore, api: ConversationApi) -> None:
        self.store = store
        self.api = api

    async def persist_message(
        self,
        conversation_id: str | None,
        message: Message,
        is_edit: bool = False,
    ) -> str | None:
        """Save ``message`` and return the durable conversation id.

        Returns ``None`` when the conversation could not be created
        remotely; the message then stays visible locally but unsaved. A
        failed message write is logged and the id is still returned so the
        caller can keep targeting the right conversation.
        """
        store = self.store
        conversation_id = store.resolve_id(conversation_id)
        if conversation_id is not None and conversation_id in store.persisting_ids:
            LOGGER.info(
                "persist.skipped.in_flight",
                extra={
                    "event": "persist.skipped.in_flight",
                    "conversation_id": conversation_id,
                    "message_id": message.id,
                },
            )
            return conversation_id

        held: list[str] = []
        if conversation_id is not None:
            store.persisting_ids.add(conversation_id)
            held.append(conversation_id)
        try:
            conversation = store.get(conversation_id)
            if conversation is None and not is_edit:
                conversation = store.materialize_conversation()
                conversation_id = conversation.id
                store.persisting_ids.add(conversation_id)
                held.append(conversation_id)
            if conversation is None:
                return None

            if not conversation.is_persisted:
                try:
                    durable_id = await self._create_conversation(
                        conversation.title, conversation.model
                    )
                except PersistenceError as exc:
                    LOGGER.error(
                        "persist.conversation.failed",
                        extra={
                            "event": "persist.conversation.failed",
                            "conversation_id": conversation.id,
                            "error": str(exc),
                        },
                    )
                    return None
                LOGGER.info(
                    "persist.conversation.created",
                    extra={
                        "event": "persist.conversation.created",
                        "local_id": conversation.id,
                        "conversation_id": durable_id,
                    },
                )
                store.rename_conversation(conversation.id, durable_id)
                held.append(durable_id)

            actual_id = conversation.id
            try:
                await self._write_message(actual_id, message, is_edit)
            except PersistenceError as exc:
                LOGGER.error(
                    "persist.message.failed",
                    extra={
                        "event": "persist.message.failed",
                        "conversation_id": actual_id,
                        "message_id": message.id,
                        "is_edit": is_edit,
                        "error": str(exc),
                    },
                )
            else:
                LOGGER.debug(
                    "persist.message.saved",
                    extra={
                        "event": "persist.message.saved",
                        "conversation_id": actual_id,
                        "message_id": message.id,
                        "is_edit": is_edit,
                    },
                )
            return actual_id
        finally:
            for key in held:
                store.persisting_ids.discard(key)

    async def _create_conversation(self, title: str, model: str) -> str:
        try:
            response = await self.api.create_conversation(title, model)
            response.raise_for_status()
            return str(response.json()["id"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            raise PersistenceError(
                f"Conversation could not be created: {type(exc).__name__}: {exc}"
            ) from exc

    async def _write_message(
        self, conversation_id: str, message: Message, is_edit: bool
    ) -> None:
        image_urls = prepare_image_urls(message)
        try:
            if is_edit:
                response = await self.api.update_message(
                    conversation_id, message.id, message.content, image_urls
                )
                if response.status_code == 404:
                    # Never saved, e.g. an earlier turn failed before persisting.
                    response = await self.api.create_message(
                        conversation_id, message.role, message.content, image_urls
                    )
            else:
                response = await self.api.create_message(
                    conversation_id, message.role, message.content, image_urls
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Message could not be saved: {exc}") from exc
