"""Top-level package for chatline."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .app import ChatlineApp
    from .config import ensure_config_dir, load_config
    from .exceptions import (
        ChatConnectionError,
        ChatlineError,
        ConfigValidationError,
        RateLimitedError,
        SafetyRejectedError,
        UploadFailedError,
    )
    from .orchestrator import SendOptions, SendOrchestrator
    from .persistence import PersistenceGateway
    from .runtime import build_runtime
    from .state import TurnOutcome, TurnPhase
    from .store import ConversationStore

__all__ = [
    "ChatConnectionError",
    "ChatlineApp",
    "ChatlineError",
    "ConfigValidationError",
    "ConversationStore",
    "PersistenceGateway",
    "RateLimitedError",
    "SafetyRejectedError",
    "SendOptions",
    "SendOrchestrator",
    "TurnOutcome",
    "TurnPhase",
    "UploadFailedError",
    "build_runtime",
    "ensure_config_dir",
    "load_config",
]

_LAZY_EXPORTS: dict[str, str] = {
    "ChatConnectionError": ".exceptions",
    "ChatlineError": ".exceptions",
    "ConfigValidationError": ".exceptions",
    "RateLimitedError": ".exceptions",
    "SafetyRejectedError": ".exceptions",
    "UploadFailedError": ".exceptions",
    "ensure_config_dir": ".config",
    "load_config": ".config",
    "SendOptions": ".orchestrator",
    "SendOrchestrator": ".orchestrator",
    "PersistenceGateway": ".persistence",
    "build_runtime": ".runtime",
    "TurnOutcome": ".state",
    "TurnPhase": ".state",
    "ConversationStore": ".store",
    "ChatlineApp": ".app",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols to keep the Textual UI optional at import time."""
    module_name = _LAZY_EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(module_name, __name__), name)
