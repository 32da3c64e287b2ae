"""Image attachment intake, storage uploads, and store reconciliation."""

from __future__ import annotations

from dataclasses import replace
import logging
import mimetypes
from pathlib import Path
from typing import Any

import httpx

from .capabilities import ACCEPTED_IMAGE_TYPES, MAX_IMAGE_BYTES, MAX_IMAGES
from .exceptions import UploadFailedError
from .models import ImageAttachment
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)


def too_many_images_warning(max_images: int = MAX_IMAGES) -> str:
    return f"Maximum {max_images} images per message. Extra images were ignored."


def limit_images(
    images: list[ImageAttachment], max_images: int = MAX_IMAGES
) -> tuple[list[ImageAttachment], str | None]:
    """Keep the first ``max_images`` attachments and describe any overflow."""
    if len(images) <= max_images:
        return list(images), None
    LOGGER.warning(
        "attachments.limit.exceeded",
        extra={
            "event": "attachments.limit.exceeded",
            "received": len(images),
            "accepted": max_images,
        },
    )
    return list(images[:max_images]), too_many_images_warning(max_images)


class AttachmentManager:
    """Validates image files picked by the user and loads them as attachments.

    Responsibilities:
    - Checking existence, MIME type and size of each file
    - Capping the number of images on one message
    """

    def __init__(
        self,
        *,
        max_images: int = MAX_IMAGES,
        max_image_bytes: int = MAX_IMAGE_BYTES,
        accepted_mime_types: frozenset[str] | set[str] | list[str] = ACCEPTED_IMAGE_TYPES,
    ) -> None:
        self.max_images = max_images
        self.max_image_bytes = max_image_bytes
        self.accepted_mime_types = frozenset(accepted_mime_types)

    @staticmethod
    def guess_mime_type(path: Path) -> str:
        mime_type, _ = mimetypes.guess_type(path.name)
        return mime_type or "application/octet-stream"

    def validate_attachment(self, path: str) -> tuple[bool, str, Path | None]:
        """Validate an image path.

        Returns:
            Tuple of (success, error_message, resolved_path)
        """
        try:
            resolved = Path(path).expanduser().resolve()
            if not resolved.exists():
                return False, f"Image not found: {path}", None
            if not resolved.is_file():
                return False, f"Not a file: {path}", None

            mime_type = self.guess_mime_type(resolved)
            if mime_type not in self.accepted_mime_types:
                allowed = ", ".join(sorted(self.accepted_mime_types))
                return False, f"Invalid image type. Allowed: {allowed}", None

            size = resolved.stat().st_size
            if size > self.max_image_bytes:
                max_mb = self.max_image_bytes / (1024 * 1024)
                return False, f"Image too large (max {max_mb:.1f}MB)", None
            return True, "", resolved
        except OSError as exc:
            return False, f"Error validating image: {exc}", None

    def load_image(self, path: Path) -> ImageAttachment:
        """Read a validated file into a pending (not yet uploaded) attachment."""
        return ImageAttachment(
            mime_type=self.guess_mime_type(path),
            file_name=path.name,
            local_blob=path.read_bytes(),
        )

    def collect(self, paths: list[str]) -> tuple[list[ImageAttachment], list[str]]:
        """Validate and load ``paths``.

        Returns:
            Tuple of (attachments, messages) where messages lists every
            rejected file and the overflow warning, if any.
        """
        attachments: list[ImageAttachment] = []
        messages: list[str] = []
        for raw_path in paths:
            ok, message, resolved = self.validate_attachment(raw_path)
            if not ok or resolved is None:
                LOGGER.warning(
                    "attachments.rejected",
                    extra={"event": "attachments.rejected", "reason": message},
                )
                messages.append(message)
                continue
            attachments.append(self.load_image(resolved))
        accepted, warning = limit_images(attachments, self.max_images)
        if warning:
            messages.append(warning)
        return accepted, messages


class AttachmentStorage:
    """Blob storage endpoint: batch upload returning ``{url, key}`` pairs."""

    def __init__(self, client: httpx.AsyncClient, uploads_path: str = "/api/uploads") -> None:
        self._client = client
        self._path = uploads_path.rstrip("/")

    async def upload(self, images: list[ImageAttachment]) -> list[dict[str, str]]:
        files = [
            ("files", (image.file_name, image.local_blob or b"", image.mime_type))
            for image in images
        ]
        response = await self._client.post(self._path, files=files)
        response.raise_for_status()
        payload: Any = response.json()
        if isinstance(payload, dict):
            payload = payload.get("files", [])
        if not isinstance(payload, list):
            raise ValueError("Upload response is not a list.")
        results: list[dict[str, str]] = []
        for item in payload:
            if not isinstance(item, dict) or not item.get("url") or not item.get("key"):
                raise ValueError("Upload response entry lacks url or key.")
            results.append({"url": str(item["url"]), "key": str(item["key"])})
        return results


class UploadCoordinator:
    """Resolves a message's pending image blobs to durable URLs.

    All pending images of a message are uploaded as one batch. Anything
    short of a one-to-one result is a failure of the whole batch.
    """

    def __init__(self, store: ConversationStore, storage: AttachmentStorage) -> None:
        self.store = store
        self.storage = storage

    @staticmethod
    def pending(images: list[ImageAttachment] | None) -> list[int]:
        """Indexes of attachments that carry a local blob but no URL yet."""
        return [
            index
            for index, image in enumerate(images or ())
            if image.local_blob is not None and not image.url
        ]

    async def resolve(self, conversation_id: str | None, message_id: str) -> list[ImageAttachment] | None:
        """Upload pending images on a message and write the result back.

        Returns the updated attachment list, or ``None`` when nothing was
        pending. Raises :class:`UploadFailedError` on any failure.
        """
        message = self.store.get_message(conversation_id, message_id)
        if message is None or not message.images:
            return None
        indexes = self.pending(message.images)
        if not indexes:
            return None

        batch = [message.images[i] for i in indexes]
        LOGGER.info(
            "uploads.batch.started",
            extra={
                "event": "uploads.batch.started",
                "message_id": message_id,
                "count": len(batch),
            },
        )
        try:
            results = await self.storage.upload(batch)
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.error(
                "uploads.batch.failed",
                extra={
                    "event": "uploads.batch.failed",
                    "message_id": message_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise UploadFailedError(str(exc)) from exc

        if len(results) != len(batch):
            LOGGER.error(
                "uploads.batch.mismatch",
                extra={
                    "event": "uploads.batch.mismatch",
                    "message_id": message_id,
                    "expected": len(batch),
                    "received": len(results),
                },
            )
            raise UploadFailedError(
                f"Expected {len(batch)} uploaded images, received {len(results)}."
            )

        # Re-read: the message may have been touched while the upload ran.
        current = self.store.get_message(conversation_id, message_id)
        source = list(current.images or []) if current is not None else list(message.images)
        resolved = list(source)
        for index, result in zip(indexes, results):
            if index >= len(resolved):
                continue
            resolved[index] = replace(
                resolved[index], url=result["url"], key=result["key"], local_blob=None
            )
        self.store.update_message(conversation_id, message_id, images=resolved)
        LOGGER.info(
            "uploads.batch.completed",
            extra={
                "event": "uploads.batch.completed",
                "message_id": message_id,
                "count": len(results),
            },
        )
        return resolved
