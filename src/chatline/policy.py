"""Model selection and request-history policy.

Everything here is pure: no I/O, deterministic given its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from .capabilities import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    IMAGE_PLACEHOLDER_TEXT,
    MAX_HISTORY_IMAGES,
    MAX_HISTORY_MESSAGES,
    MODEL_CHAT,
    MODEL_SEARCH,
    MODEL_VISION,
    MODELS,
    SEARCH_MAX_HISTORY_MESSAGES,
    SYSTEM_PROMPT,
    ModelSpec,
    is_search_model,
    is_vision_model,
)
from .models import ImageAttachment, Message

LOGGER = logging.getLogger(__name__)


def filter_models(
    web_search: bool, has_images: bool, catalog: tuple[ModelSpec, ...] = MODELS
) -> list[ModelSpec]:
    """Return the capability-filtered model set, in catalog order."""
    qualifying: list[ModelSpec] = []
    for spec in catalog:
        if web_search and not spec.search:
            continue
        if has_images and not spec.vision:
            continue
        if not web_search and not has_images and not spec.text:
            continue
        qualifying.append(spec)
    return qualifying


class ModelSelector:
    """Keeps the selected model compatible with the current input.

    When constraints rule the selection out, the first qualifying model is
    substituted and the user's choice remembered; once both web search and
    images are gone again the remembered model comes back, provided it is
    still valid.
    """

    def __init__(self, catalog: tuple[ModelSpec, ...] = MODELS) -> None:
        self.catalog = catalog
        self.remembered: str | None = None
        self._previous: tuple[bool, bool] = (False, False)

    def choose(self, model: str) -> str:
        """Record an explicit user choice; forgets any remembered model."""
        self.remembered = None
        return model

    def reset(self) -> None:
        """Forget the remembered model when another conversation takes over."""
        self.remembered = None

    def reconcile(self, current: str, web_search: bool, has_images: bool) -> str | None:
        """Return the effective model, or ``None`` when nothing qualifies."""
        candidates = filter_models(web_search, has_images, self.catalog)
        candidate_ids = [spec.id for spec in candidates]
        prev_search, prev_images = self._previous
        became_unconstrained = (prev_images and not has_images) or (
            prev_search and not web_search
        )
        self._previous = (web_search, has_images)

        if not candidates:
            LOGGER.info(
                "policy.model.none",
                extra={
                    "event": "policy.model.none",
                    "web_search": web_search,
                    "has_images": has_images,
                },
            )
            return None

        if (
            became_unconstrained
            and not web_search
            and not has_images
            and self.remembered is not None
        ):
            restored = self.remembered
            self.remembered = None
            if restored in candidate_ids:
                LOGGER.info(
                    "policy.model.restored",
                    extra={"event": "policy.model.restored", "model": restored},
                )
                return restored

        if current not in candidate_ids:
            if self.remembered is None:
                self.remembered = current
            substitute = candidate_ids[0]
            LOGGER.info(
                "policy.model.substituted",
                extra={
                    "event": "policy.model.substituted",
                    "from_model": current,
                    "to_model": substitute,
                },
            )
            return substitute
        return current


def enforce_model(model: str | None, web_search: bool, has_images: bool) -> str:
    """Apply the hard model rules the completion request must satisfy."""
    effective = model or MODEL_CHAT
    if web_search:
        if not is_search_model(effective):
            effective = MODEL_SEARCH
    elif has_images and not is_vision_model(effective):
        effective = MODEL_VISION
    return effective


def _image_payload(image: ImageAttachment) -> dict[str, Any] | None:
    url = image.url if image.url and image.url.startswith("http") else image.base64
    if not url:
        return None
    return {"url": url, "mimeType": image.mime_type}


def build_history(
    messages: list[Message],
    model: str,
    *,
    max_history: int = MAX_HISTORY_MESSAGES,
    max_images: int = MAX_HISTORY_IMAGES,
    system_prompt: str = SYSTEM_PROMPT,
) -> list[dict[str, Any]]:
    """Build the outgoing message list.

    The newest ``max_history`` user/assistant messages are kept. At most
    ``max_images`` images are forwarded across the whole window, newest
    message and newest image first. Models without vision get a text
    placeholder for messages that only carried images. The system prompt
    always comes first.
    """
    conversational = [m for m in messages if m.role in ("user", "assistant")]
    trimmed = conversational[-max_history:] if max_history > 0 else []
    vision = is_vision_model(model)

    remaining = max(0, max_images)
    body: list[dict[str, Any]] = []
    for message in reversed(trimmed):
        images = message.images or []
        included: list[ImageAttachment] = []
        if message.role == "user" and images and remaining > 0:
            included = images[-remaining:]
            remaining -= len(included)

        if included and vision:
            parts = [p for p in (_image_payload(image) for image in included) if p]
            entry: dict[str, Any] = {"role": "user", "content": message.content}
            if parts:
                entry["images"] = parts
            body.append(entry)
        elif included:
            body.append(
                {"role": "user", "content": message.content or IMAGE_PLACEHOLDER_TEXT}
            )
        else:
            content = message.content or (IMAGE_PLACEHOLDER_TEXT if images else "")
            body.append({"role": message.role, "content": content})
    body.reverse()

    history: list[dict[str, Any]] = []
    if system_prompt:
        history.append({"role": "system", "content": system_prompt})
    history.extend(body)
    return history


@dataclass(frozen=True)
class CompletionRequest:
    """Payload accepted by the completion provider."""

    model: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    stream: bool = True
    web_search: bool = False
    reasoning_effort: str | None = None
    reasoning_format: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": self.stream,
            "webSearch": self.web_search,
        }
        if self.reasoning_effort:
            payload["reasoning_effort"] = self.reasoning_effort
        if self.reasoning_format:
            payload["reasoning_format"] = self.reasoning_format
        return payload


def build_completion_request(
    messages: list[Message],
    model: str | None,
    *,
    web_search: bool = False,
    max_history: int = MAX_HISTORY_MESSAGES,
    search_max_history: int = SEARCH_MAX_HISTORY_MESSAGES,
    max_images: int = MAX_HISTORY_IMAGES,
    system_prompt: str = SYSTEM_PROMPT,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    reasoning_effort: str | None = None,
    reasoning_format: str | None = None,
) -> CompletionRequest:
    """Build a request that satisfies every model-family rule.

    Search-family models never stream and never see more than the search
    history ceiling, whatever the caller asked for.
    """
    window = messages[-max_history:] if max_history > 0 else []
    has_images = any(m.images for m in window)
    effective = enforce_model(model, web_search, has_images)
    search = is_search_model(effective)
    ceiling = min(max_history, search_max_history) if search else max_history
    history = build_history(
        messages,
        effective,
        max_history=ceiling,
        max_images=max_images,
        system_prompt=system_prompt,
    )
    return CompletionRequest(
        model=effective,
        messages=history,
        temperature=temperature,
        max_tokens=max_tokens,
        stream=not search,
        web_search=web_search,
        reasoning_effort=reasoning_effort,
        reasoning_format=reasoning_format,
    )
