"""Model catalog, capability flags, and request-shaping constants."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelSpec:
    """Capability metadata for one hosted model.

    ``text`` means the model accepts plain chat input, ``vision`` that it
    accepts image parts, and ``search`` that it answers with web search
    (batch responses only).
    """

    id: str
    name: str
    description: str
    text: bool = True
    vision: bool = False
    search: bool = False


MODEL_CHAT = "llama-3.3-70b-versatile"
MODEL_VISION = "meta-llama/llama-4-scout-17b-16e-instruct"
MODEL_SEARCH = "groq/compound-mini"
DEFAULT_MODEL = MODEL_CHAT

SEARCH_MODEL_PREFIX = "groq/compound"

# Order matters: auto-substitution picks the first qualifying entry.
MODELS: tuple[ModelSpec, ...] = (
    ModelSpec("openai/gpt-oss-120b", "GPT-OSS 120B", "Massive intelligence for complex reasoning"),
    ModelSpec("llama-3.3-70b-versatile", "Llama 3.3 70B", "Most powerful model for complex tasks"),
    ModelSpec(
        "meta-llama/llama-4-scout-17b-16e-instruct",
        "Llama 4 Scout",
        "Advanced model with image understanding",
        vision=True,
    ),
    ModelSpec("groq/compound", "Compound Pro", "Large model with deep web search", text=False, search=True),
    ModelSpec("qwen/qwen3-32b", "Qwen 3 32B", "Specialized for coding and mathematics"),
    ModelSpec("openai/gpt-oss-20b", "GPT-OSS 20B", "Specialized for deep reasoning logic"),
    ModelSpec("llama-3.1-8b-instant", "Llama 3.1 8B", "Fastest response time for simple queries"),
    ModelSpec(
        "groq/compound-mini", "Compound Mini", "Optimized for real-time web search", text=False, search=True
    ),
    ModelSpec("openai/gpt-oss-safeguard-20b", "GPT-OSS Safeguard", "Reasoning model with safety focus"),
    ModelSpec(
        "meta-llama/llama-4-maverick-17b-128e-instruct",
        "Llama 4 Maverick",
        "Next-gen instructor with 128K context",
    ),
    ModelSpec("moonshotai/kimi-k2-instruct", "Kimi K2", "Instruction master from Moonshot AI"),
    ModelSpec("allam-2-7b", "Allam 2 7B", "Optimized for Arabic language tasks"),
    ModelSpec("canopylabs/orpheus-arabic-saudi", "Orpheus Arabic", "Sovereign intelligence for Arabic language"),
    ModelSpec("canopylabs/orpheus-v1-english", "Orpheus English", "High-precision model for English tasks"),
    ModelSpec("moonshotai/kimi-k2-instruct-0905", "Kimi K2 (Sept)", "Updated instruction model from Moonshot"),
)

VISION_MODELS: frozenset[str] = frozenset(
    {
        MODEL_VISION,
        "llama-3.2-11b-vision-preview",
        "llama-3.2-90b-vision-preview",
    }
)

ALLOWED_MODELS: frozenset[str] = frozenset(
    {spec.id for spec in MODELS} | VISION_MODELS | {MODEL_CHAT, MODEL_SEARCH}
)

MAX_HISTORY_MESSAGES = 50
SEARCH_MAX_HISTORY_MESSAGES = 10
MAX_HISTORY_IMAGES = 5

MAX_IMAGES = 4
MAX_IMAGE_BYTES = 4 * 1024 * 1024
ACCEPTED_IMAGE_TYPES: frozenset[str] = frozenset(
    {"image/png", "image/jpeg", "image/webp", "image/gif"}
)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096

IMAGE_PLACEHOLDER_TEXT = "Uploaded an image"

SYSTEM_PROMPT = (
    "Act as a highly adaptive conversational agent blending the empathetic warmth "
    "of a close friend with the capability of an expert assistant. Match the user's "
    "energy and formality, validate strong emotions before offering help, execute "
    "requested tasks precisely, and keep turns concise and natural. Never use robotic "
    'disclaimers such as "As an AI...".'
)

_CATALOG: dict[str, ModelSpec] = {spec.id: spec for spec in MODELS}


def get_model(model_id: str) -> ModelSpec | None:
    """Return catalog metadata for a model id, if known."""
    return _CATALOG.get(model_id)


def is_search_model(model_id: str) -> bool:
    """Return True for the web-search (compound) model family."""
    return model_id.startswith(SEARCH_MODEL_PREFIX)


def is_vision_model(model_id: str) -> bool:
    """Return True when the model accepts image input."""
    if model_id in VISION_MODELS:
        return True
    spec = _CATALOG.get(model_id)
    return spec is not None and spec.vision
