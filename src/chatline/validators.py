"""Pydantic validation of outgoing completion requests."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from .capabilities import ALLOWED_MODELS, MAX_IMAGES
from .exceptions import RequestValidationError
from .policy import CompletionRequest

MAX_REQUEST_MESSAGES = 100
MAX_CONTENT_CHARS = 100_000


class ImagePart(BaseModel):
    url: str | None = None
    base64: str | None = None
    mime_type: str = Field(alias="mimeType")

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str | None) -> str | None:
        if value is not None and not value.startswith(("http://", "https://", "data:")):
            raise ValueError("Image url must be an http(s) or data URL.")
        return value


class RequestMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(default="", max_length=MAX_CONTENT_CHARS)
    images: list[ImagePart] | None = Field(default=None, max_length=MAX_IMAGES)


class ChatRequest(BaseModel):
    """Shape of the conversational part of a completion request."""

    messages: list[RequestMessage] = Field(min_length=1, max_length=MAX_REQUEST_MESSAGES)
    model: str
    web_search: bool = False

    @field_validator("model")
    @classmethod
    def _validate_model(cls, value: str) -> str:
        if value not in ALLOWED_MODELS:
            raise ValueError("Invalid model")
        return value


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def validate_request(request: CompletionRequest) -> ChatRequest:
    """Validate ``request`` or raise :class:`RequestValidationError`.

    The system prompt is not part of the validated history.
    """
    try:
        return ChatRequest.model_validate(
            {
                "messages": [m for m in request.messages if m.get("role") != "system"],
                "model": request.model,
                "web_search": request.web_search,
            }
        )
    except ValidationError as exc:
        raise RequestValidationError(_describe(exc)) from exc
