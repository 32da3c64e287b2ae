"""Configuration loading and validation for the chatline client."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .capabilities import (
    ACCEPTED_IMAGE_TYPES,
    ALLOWED_MODELS,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
    MAX_HISTORY_IMAGES,
    MAX_HISTORY_MESSAGES,
    MAX_IMAGE_BYTES,
    MAX_IMAGES,
    SEARCH_MAX_HISTORY_MESSAGES,
    SYSTEM_PROMPT,
)
from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "chatline"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _non_empty_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class AppConfig(BaseModel):
    """Application metadata and the identity used for rate limiting."""

    title: str = "chatline"
    user_id: str = "local-user"

    @field_validator("title", "user_id", mode="before")
    @classmethod
    def _validate_non_empty_string(cls, value: Any) -> str:
        return _non_empty_string(value)


class BackendConfig(BaseModel):
    """Endpoints of the hosted completion, persistence, upload and safety services."""

    base_url: str = "http://localhost:3000"
    chat_path: str = "/api/chat"
    conversations_path: str = "/api/conversations"
    uploads_path: str = "/api/uploads"
    safety_path: str = "/api/safety"
    timeout: int = Field(default=120, ge=1, le=3600)
    api_key: str = ""

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        return _non_empty_string(value).rstrip("/")

    @field_validator(
        "chat_path", "conversations_path", "uploads_path", "safety_path", mode="before"
    )
    @classmethod
    def _validate_path(cls, value: Any) -> str:
        normalized = _non_empty_string(value)
        if not normalized.startswith("/"):
            raise ValueError("Endpoint paths must start with '/'.")
        return normalized.rstrip("/")

    @field_validator("api_key", mode="before")
    @classmethod
    def _normalize_api_key(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("api_key must be a string.")
        return value.strip()


class ModelsConfig(BaseModel):
    """Model defaults and history limits applied to every request."""

    default_model: str = DEFAULT_MODEL
    system_prompt: str = SYSTEM_PROMPT
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, ge=1, le=131_072)
    max_history_messages: int = Field(default=MAX_HISTORY_MESSAGES, ge=1, le=100)
    search_max_history_messages: int = Field(
        default=SEARCH_MAX_HISTORY_MESSAGES, ge=1, le=100
    )
    max_history_images: int = Field(default=MAX_HISTORY_IMAGES, ge=0, le=50)

    @field_validator("default_model", mode="before")
    @classmethod
    def _validate_model(cls, value: Any) -> str:
        normalized = _non_empty_string(value)
        if normalized not in ALLOWED_MODELS:
            raise ValueError(f"Unknown model {normalized!r}.")
        return normalized

    @field_validator("system_prompt", mode="before")
    @classmethod
    def _normalize_prompt(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()

    @model_validator(mode="after")
    def _search_ceiling_is_stricter(self) -> ModelsConfig:
        if self.search_max_history_messages > self.max_history_messages:
            self.search_max_history_messages = self.max_history_messages
        return self


class AttachmentsConfig(BaseModel):
    """Limits applied when images are attached to an outgoing message."""

    max_images: int = Field(default=MAX_IMAGES, ge=1, le=16)
    max_image_bytes: int = Field(default=MAX_IMAGE_BYTES, ge=1024, le=50 * 1024 * 1024)
    accepted_mime_types: list[str] = Field(
        default_factory=lambda: sorted(ACCEPTED_IMAGE_TYPES)
    )

    @field_validator("accepted_mime_types", mode="before")
    @classmethod
    def _validate_mime_types(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("accepted_mime_types must be a list.")
        normalized = [
            item.strip().lower()
            for item in value
            if isinstance(item, str) and item.strip()
        ]
        if not normalized:
            raise ValueError("accepted_mime_types must contain at least one type.")
        return normalized


class RateLimitConfig(BaseModel):
    """Client-side moving-window limiter settings."""

    enabled: bool = True
    requests: int = Field(default=20, ge=1, le=10_000)
    window_seconds: int = Field(default=60, ge=1, le=86_400)


class SecurityConfig(BaseModel):
    """Security policy for remote host access."""

    allow_remote_hosts: bool = True
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "::1"]

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def _validate_allowed_hosts(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("allowed_hosts must be a list.")
        normalized_hosts = [
            item.strip().lower()
            for item in value
            if isinstance(item, str) and item.strip()
        ]
        if not normalized_hosts:
            raise ValueError("allowed_hosts must contain at least one host.")
        return normalized_hosts


class UIConfig(BaseModel):
    """Terminal shell settings."""

    show_timestamps: bool = True
    stream_chunk_size: int = Field(default=1, ge=1, le=1024)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/chatline/app.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class SessionConfig(BaseModel):
    """Where the active-conversation pointer survives a restart.

    An empty ``pointer_path`` selects the platform state directory.
    """

    pointer_path: str = ""

    @field_validator("pointer_path", mode="before")
    @classmethod
    def _normalize_path(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("pointer_path must be a string.")
        return value.strip()


class Config(BaseModel):
    """Root configuration model for all sections."""

    model_config = ConfigDict(populate_by_name=True)
    app: AppConfig = AppConfig()
    backend: BackendConfig = BackendConfig()
    models: ModelsConfig = ModelsConfig()
    attachments: AttachmentsConfig = AttachmentsConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    security: SecurityConfig = SecurityConfig()
    ui: UIConfig = UIConfig()
    logging: LoggingConfig = LoggingConfig()
    session: SessionConfig = SessionConfig()

    @model_validator(mode="after")
    def _validate_security_policy(self) -> Config:
        parsed = urlparse(self.backend.base_url)
        scheme = parsed.scheme.lower()
        hostname = (parsed.hostname or "").strip().lower()

        if scheme not in {"http", "https"}:
            raise ValueError("backend.base_url must use http or https scheme.")
        if not hostname:
            raise ValueError("backend.base_url must include a hostname.")
        if not self.security.allow_remote_hosts and hostname not in set(
            self.security.allowed_hosts
        ):
            raise ValueError(
                "backend.base_url is not in security.allowed_hosts while allow_remote_hosts is false."
            )
        return self


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump(by_alias=True)


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Create the config directory if needed and return it."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning(
            "config.dir.unavailable",
            extra={"event": "config.dir.unavailable", "path": str(directory), "error": str(exc)},
        )
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _restrict_permissions(path: Path) -> None:
    """Keep the config file (it may hold the API key) readable by the owner only."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning(
            "config.permissions.failed",
            extra={"event": "config.permissions.failed", "path": str(path), "error": str(exc)},
        )


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    _restrict_permissions(path)
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        LOGGER.warning(
            "config.parse.failed",
            extra={"event": "config.parse.failed", "path": str(path), "error": str(exc)},
        )
        return {}
    return data if isinstance(data, dict) else {}


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged data, falling back to the defaults when it is rejected."""
    try:
        return Config.model_validate(raw).model_dump(by_alias=True)
    except ValidationError as exc:
        LOGGER.warning(
            "config.invalid",
            extra={
                "event": "config.invalid",
                "error_count": exc.error_count(),
                "error": str(exc),
            },
        )
        return deepcopy(DEFAULT_CONFIG)
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """Load ``config.toml`` over the defaults and return the validated sections.

    ``config_path`` overrides the default location (used by ``--config``
    and the tests).
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)
    return _validate_config(_deep_merge(DEFAULT_CONFIG, _read_toml(target_path)))
