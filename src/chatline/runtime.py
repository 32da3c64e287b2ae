"""Wires the send core together from a validated config mapping."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import httpx

from .api import ConversationApi
from .capabilities import ACCEPTED_IMAGE_TYPES, MAX_IMAGE_BYTES, MAX_IMAGES
from .completion import CompletionClient
from .events import EventBus
from .orchestrator import OrchestratorSettings, SendOrchestrator
from .persistence import PersistenceGateway
from .rate_limit import build_rate_limiter
from .safety import SafetyClassifier
from .session import SessionPointer, default_pointer_path
from .store import ConversationStore
from .task_manager import TaskManager
from .uploads import AttachmentManager, AttachmentStorage, UploadCoordinator

LOGGER = logging.getLogger(__name__)


@dataclass
class ChatRuntime:
    """Everything one client session needs, sharing one HTTP client."""

    config: dict[str, dict[str, Any]]
    client: httpx.AsyncClient
    bus: EventBus
    tasks: TaskManager
    store: ConversationStore
    attachments: AttachmentManager
    orchestrator: SendOrchestrator

    async def aclose(self) -> None:
        await self.tasks.cancel_all()
        await self.client.aclose()


def build_http_client(
    backend: dict[str, Any], transport: httpx.AsyncBaseTransport | None = None
) -> httpx.AsyncClient:
    headers: dict[str, str] = {}
    api_key = str(backend.get("api_key") or "")
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return httpx.AsyncClient(
        base_url=str(backend["base_url"]),
        timeout=float(backend.get("timeout", 120)),
        headers=headers,
        transport=transport,
    )


def build_runtime(
    config: dict[str, dict[str, Any]],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    session: SessionPointer | None = None,
) -> ChatRuntime:
    """Assemble store, gateway, uploader and orchestrator around one client."""
    backend = config["backend"]
    client = build_http_client(backend, transport)
    bus = EventBus()
    tasks = TaskManager()

    if session is None:
        pointer_path = config.get("session", {}).get("pointer_path") or default_pointer_path()
        session = SessionPointer(pointer_path)

    api = ConversationApi(client, backend["conversations_path"])
    store = ConversationStore(
        bus=bus,
        tasks=tasks,
        api=api,
        session=session,
        default_model=config["models"]["default_model"],
    )
    attachments_config = config.get("attachments", {})
    orchestrator = SendOrchestrator(
        store,
        PersistenceGateway(store, api),
        UploadCoordinator(store, AttachmentStorage(client, backend["uploads_path"])),
        CompletionClient(client, backend["chat_path"]),
        SafetyClassifier(client, backend["safety_path"]),
        build_rate_limiter(config.get("rate_limit", {})),
        bus=bus,
        settings=OrchestratorSettings.from_config(config),
    )
    LOGGER.info(
        "runtime.ready",
        extra={
            "event": "runtime.ready",
            "base_url": backend["base_url"],
            "default_model": store.default_model,
        },
    )
    return ChatRuntime(
        config=config,
        client=client,
        bus=bus,
        tasks=tasks,
        store=store,
        attachments=AttachmentManager(
            max_images=int(attachments_config.get("max_images", MAX_IMAGES)),
            max_image_bytes=int(attachments_config.get("max_image_bytes", MAX_IMAGE_BYTES)),
            accepted_mime_types=attachments_config.get(
                "accepted_mime_types", ACCEPTED_IMAGE_TYPES
            ),
        ),
        orchestrator=orchestrator,
    )
