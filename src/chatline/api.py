"""Client for the conversation and message persistence API.

Thin wrappers over ``httpx.AsyncClient``: each call returns the raw
``httpx.Response`` and leaves status handling to the caller.
"""

from __future__ import annotations

from typing import Any

import httpx

from .models import Message

ImageUrl = dict[str, str]


def prepare_image_urls(message: Message) -> list[ImageUrl] | None:
    """Return the durable image references of ``message`` for submission.

    Attachments without both ``url`` and ``key`` are left out. ``None`` is
    returned when nothing qualifies so the field is omitted entirely.
    """
    image_urls = [
        {
            "url": image.url,
            "key": image.key,
            "fileName": image.file_name,
            "mimeType": image.mime_type,
        }
        for image in message.images or ()
        if image.url and image.key
    ]
    return image_urls or None


def _message_body(content: str, image_urls: list[ImageUrl] | None, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {**extra, "content": content}
    if image_urls is not None:
        body["imageUrls"] = image_urls
    return body


class ConversationApi:
    """Conversations and messages CRUD over HTTP."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        conversations_path: str = "/api/conversations",
    ) -> None:
        self._client = client
        self._base = conversations_path.rstrip("/")

    def _conversation_url(self, conversation_id: str) -> str:
        return f"{self._base}/{conversation_id}"

    def _messages_url(self, conversation_id: str) -> str:
        return f"{self._base}/{conversation_id}/messages"

    async def fetch_conversations(self) -> httpx.Response:
        return await self._client.get(self._base)

    async def create_conversation(self, title: str, model: str) -> httpx.Response:
        return await self._client.post(self._base, json={"title": title, "model": model})

    async def update_conversation(
        self, conversation_id: str, fields: dict[str, Any]
    ) -> httpx.Response:
        return await self._client.patch(
            self._conversation_url(conversation_id), json=fields
        )

    async def delete_conversation(self, conversation_id: str) -> httpx.Response:
        return await self._client.delete(self._conversation_url(conversation_id))

    async def fetch_messages(self, conversation_id: str) -> httpx.Response:
        return await self._client.get(self._messages_url(conversation_id))

    async def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        image_urls: list[ImageUrl] | None = None,
    ) -> httpx.Response:
        return await self._client.post(
            self._messages_url(conversation_id),
            json=_message_body(content, image_urls, role=role),
        )

    async def update_message(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        image_urls: list[ImageUrl] | None = None,
    ) -> httpx.Response:
        """Update a stored message; attachments are replaced wholesale server-side."""
        return await self._client.patch(
            self._messages_url(conversation_id),
            json=_message_body(content, image_urls, messageId=message_id),
        )
