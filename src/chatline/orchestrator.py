"""Send orchestration: drives one user turn from draft to settled state."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any

from .capabilities import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    MAX_HISTORY_IMAGES,
    MAX_HISTORY_MESSAGES,
    MAX_IMAGES,
    SEARCH_MAX_HISTORY_MESSAGES,
    SYSTEM_PROMPT,
)
from .completion import (
    RATE_LIMITED_MESSAGE,
    TOO_LARGE_MESSAGE,
    CompletionClient,
    parse_search_results,
    parse_stream_frame,
)
from .events import TURN_PHASE, TURN_SETTLED, EventBus
from .exceptions import (
    ChatConnectionError,
    ChatlineError,
    RateLimitedError,
    RequestTooLargeError,
    RequestValidationError,
    SafetyRejectedError,
    TurnAbortedError,
    UploadFailedError,
)
from .models import ImageAttachment, Message, generate_id
from .persistence import PersistenceGateway
from .policy import CompletionRequest, ModelSelector, build_completion_request
from .rate_limit import RateLimiter
from .safety import DEFAULT_UNSAFE_REASON, SafetyClassifier
from .state import CancelToken, TurnOutcome, TurnPhase, TurnStateManager
from .store import ConversationStore
from .stream_handler import StreamHandler
from .uploads import UploadCoordinator, limit_images
from .validators import validate_request

LOGGER = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "The request was interrupted."
CONNECTION_LOST_MESSAGE = "The connection was lost. Please check your internet."
UPLOAD_FAILED_MESSAGE = "Failed to upload images. Please try again."
GENERIC_ERROR_MESSAGE = "Something went wrong"
NO_ENGINE_MESSAGE = "No compatible engine for this input."
UNSAVED_IMAGES_MESSAGE = "Images from this message were not saved."
BUSY_MESSAGE = "A response is still being generated in this conversation."

_TURN_ERROR_MESSAGES: dict[type[ChatlineError], str] = {
    TurnAbortedError: INTERRUPTED_MESSAGE,
    ChatConnectionError: CONNECTION_LOST_MESSAGE,
    RateLimitedError: RATE_LIMITED_MESSAGE,
    UploadFailedError: UPLOAD_FAILED_MESSAGE,
    RequestTooLargeError: TOO_LARGE_MESSAGE,
}

_CANCELLABLE_PHASES = frozenset(
    {
        TurnPhase.UPLOADING,
        TurnPhase.REQUESTING,
        TurnPhase.STREAMING,
        TurnPhase.AWAITING_BATCH,
    }
)


def turn_error_message(exc: ChatlineError) -> str:
    """Return the wording shown on the assistant message for ``exc``."""
    for klass in type(exc).__mro__:
        message = _TURN_ERROR_MESSAGES.get(klass)
        if message is not None:
            return message
    if isinstance(exc, SafetyRejectedError):
        return (
            "Content Filter: This message was flagged as unsafe. "
            f"Reason: {exc.reason}"
        )
    if isinstance(exc, RequestValidationError):
        return f"Invalid request parameters: {exc}"
    return str(exc) or GENERIC_ERROR_MESSAGE


@dataclass(frozen=True)
class SendOptions:
    """Typed options for one send (new message, edit or retry)."""

    images: list[ImageAttachment] | None = None
    web_search: bool = False
    editing_message_id: str | None = None
    retry_assistant_id: str | None = None


@dataclass(frozen=True)
class OrchestratorSettings:
    subject: str = "local-user"
    system_prompt: str = SYSTEM_PROMPT
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    max_history_messages: int = MAX_HISTORY_MESSAGES
    search_max_history_messages: int = SEARCH_MAX_HISTORY_MESSAGES
    max_history_images: int = MAX_HISTORY_IMAGES
    max_images: int = MAX_IMAGES
    stream_chunk_size: int = 1

    @classmethod
    def from_config(cls, config: dict[str, dict[str, Any]]) -> OrchestratorSettings:
        models = config.get("models", {})
        return cls(
            subject=str(config.get("app", {}).get("user_id", cls.subject)),
            system_prompt=str(models.get("system_prompt", SYSTEM_PROMPT)),
            temperature=float(models.get("temperature", DEFAULT_TEMPERATURE)),
            max_tokens=int(models.get("max_tokens", DEFAULT_MAX_TOKENS)),
            max_history_messages=int(
                models.get("max_history_messages", MAX_HISTORY_MESSAGES)
            ),
            search_max_history_messages=int(
                models.get("search_max_history_messages", SEARCH_MAX_HISTORY_MESSAGES)
            ),
            max_history_images=int(
                models.get("max_history_images", MAX_HISTORY_IMAGES)
            ),
            max_images=int(config.get("attachments", {}).get("max_images", MAX_IMAGES)),
            stream_chunk_size=int(config.get("ui", {}).get("stream_chunk_size", 1)),
        )


@dataclass
class Turn:
    """Bookkeeping for one in-flight send."""

    conversation_id: str | None
    assistant_id: str
    user_message_id: str | None
    options: SendOptions
    assistant_is_new: bool = True
    token: CancelToken = field(default_factory=CancelToken)
    phases: TurnStateManager = field(default_factory=TurnStateManager)
    outcome: TurnOutcome | None = None


class SendOrchestrator:
    """Turns a user send/edit/retry into store mutations and network calls.

    ``send_message`` never raises for provider failures: they are written
    to the assistant message's ``error`` and the turn settles normally.
    Several turns may be in flight at once (e.g. one left running in a
    conversation the user switched away from); each has its own token.
    A conversation never has more than one turn in flight.
    """

    def __init__(
        self,
        store: ConversationStore,
        gateway: PersistenceGateway,
        uploader: UploadCoordinator,
        completion: CompletionClient,
        safety: SafetyClassifier,
        rate_limiter: RateLimiter,
        *,
        bus: EventBus | None = None,
        selector: ModelSelector | None = None,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.uploader = uploader
        self.completion = completion
        self.safety = safety
        self.rate_limiter = rate_limiter
        self.bus = bus or store.bus
        self.selector = selector or ModelSelector()
        self.settings = settings or OrchestratorSettings()
        self._turns: dict[str, Turn] = {}
        self._foreground: Turn | None = None

    # ------------------------------------------------------------------
    # Upward surface
    # ------------------------------------------------------------------

    @property
    def is_busy(self) -> bool:
        return bool(self._turns)

    @property
    def active_turn(self) -> Turn | None:
        return self._foreground

    def turn_for(self, conversation_id: str | None) -> Turn | None:
        """Return the turn in flight for ``conversation_id``, if any."""
        resolved = self.store.resolve_id(conversation_id)
        if resolved is None:
            return None
        for turn in self._turns.values():
            if self.store.resolve_id(turn.conversation_id) == resolved:
                return turn
        return None

    def switch_conversation(self, conversation_id: str | None) -> None:
        """Change the active conversation. In-flight turns keep running.

        A model the selector remembered belongs to the conversation it was
        substituted in, so it is dropped here.
        """
        self.selector.reset()
        self.store.set_active_conversation(conversation_id)

    def new_conversation(self) -> None:
        """Leave the current conversation for a blank draft."""
        self.selector.reset()
        self.store.create_draft_conversation()

    def cancel_active_send(self) -> bool:
        """Abort the most recently started turn, if it is still on the network."""
        turn = self._foreground
        if turn is None or turn.phases.phase not in _CANCELLABLE_PHASES:
            return False
        cancelled = turn.token.cancel()
        if cancelled:
            LOGGER.info(
                "turn.cancel.requested",
                extra={
                    "event": "turn.cancel.requested",
                    "conversation_id": turn.conversation_id,
                    "assistant_id": turn.assistant_id,
                    "phase": turn.phases.phase.value,
                },
            )
        return cancelled

    def refresh_model(self, web_search: bool, has_images: bool) -> str | None:
        """Reconcile the selected model with the input's constraints."""
        conversation = self.store.get_active_conversation()
        current = conversation.model if conversation else self.store.draft_model
        effective = self.selector.reconcile(current, web_search, has_images)
        if effective is not None and effective != current:
            self.store.set_conversation_model(
                conversation.id if conversation else None, effective
            )
        return effective

    def select_model(self, model: str) -> None:
        """Apply an explicit model choice made by the user."""
        chosen = self.selector.choose(model)
        conversation = self.store.get_active_conversation()
        self.store.set_conversation_model(
            conversation.id if conversation else None, chosen
        )

    async def send_message(self, content: str, options: SendOptions | None = None) -> None:
        options = options or SendOptions()
        busy = self.turn_for(self.store.active_id)
        if busy is not None:
            LOGGER.info(
                "turn.blocked.busy",
                extra={
                    "event": "turn.blocked.busy",
                    "conversation_id": self.store.resolve_id(busy.conversation_id),
                    "assistant_id": busy.assistant_id,
                },
            )
            self.bus.notice("warning", BUSY_MESSAGE)
            return

        images, warning = limit_images(
            list(options.images or []), self.settings.max_images
        )
        if warning:
            self.bus.notice("warning", warning)

        if self.refresh_model(options.web_search, bool(images)) is None:
            LOGGER.info(
                "turn.blocked.no_model",
                extra={
                    "event": "turn.blocked.no_model",
                    "web_search": options.web_search,
                    "has_images": bool(images),
                },
            )
            self.bus.notice("error", NO_ENGINE_MESSAGE)
            return

        turn = self._draft(content, images, options)
        if turn is None:
            return
        self._turns[turn.assistant_id] = turn
        self._foreground = turn
        try:
            await self._run(turn)
        finally:
            self._turns.pop(turn.assistant_id, None)
            if self._foreground is turn:
                self._foreground = None

    # ------------------------------------------------------------------
    # Drafting
    # ------------------------------------------------------------------

    @staticmethod
    def _placeholder() -> Message:
        return Message(id=generate_id(), role="assistant", is_streaming=True)

    def _reset_placeholder(self, conversation_id: str | None, assistant_id: str) -> None:
        self.store.update_message(
            conversation_id,
            assistant_id,
            content="",
            is_streaming=True,
            search_results=None,
            error=None,
        )

    def _draft(
        self, content: str, images: list[ImageAttachment], options: SendOptions
    ) -> Turn | None:
        store = self.store
        conversation_id = store.active_id

        if options.editing_message_id:
            conversation = store.get(conversation_id)
            index = (
                conversation.index_of(options.editing_message_id) if conversation else -1
            )
            if conversation is None or index == -1:
                LOGGER.warning(
                    "turn.edit.missing",
                    extra={
                        "event": "turn.edit.missing",
                        "message_id": options.editing_message_id,
                    },
                )
                return None
            store.update_message(
                conversation_id,
                options.editing_message_id,
                content=content,
                images=images or None,
            )
            following = (
                conversation.messages[index + 1]
                if index + 1 < len(conversation.messages)
                else None
            )
            if following is not None and following.role == "assistant":
                assistant_id = following.id
                self._reset_placeholder(conversation_id, assistant_id)
                assistant_is_new = False
            else:
                placeholder = self._placeholder()
                assistant_id = placeholder.id
                conversation_id = store.add_message(conversation_id, placeholder)
                assistant_is_new = True
            turn = Turn(
                conversation_id,
                assistant_id,
                options.editing_message_id,
                options,
                assistant_is_new=assistant_is_new,
            )

        elif options.retry_assistant_id:
            if store.get_message(conversation_id, options.retry_assistant_id) is None:
                LOGGER.warning(
                    "turn.retry.missing",
                    extra={
                        "event": "turn.retry.missing",
                        "message_id": options.retry_assistant_id,
                    },
                )
                return None
            self._reset_placeholder(conversation_id, options.retry_assistant_id)
            turn = Turn(
                conversation_id,
                options.retry_assistant_id,
                None,
                options,
                assistant_is_new=False,
            )

        else:
            user_message = Message(
                id=generate_id(), role="user", content=content, images=images or None
            )
            conversation_id = store.add_message(conversation_id, user_message)
            placeholder = self._placeholder()
            store.add_message(conversation_id, placeholder)
            turn = Turn(conversation_id, placeholder.id, user_message.id, options)

        return turn

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    async def _transition(self, turn: Turn, phase: TurnPhase) -> None:
        await turn.phases.transition_to(phase)
        LOGGER.info(
            "turn.phase",
            extra={
                "event": "turn.phase",
                "phase": phase.value,
                "conversation_id": turn.conversation_id,
                "assistant_id": turn.assistant_id,
            },
        )
        self.bus.emit(
            TURN_PHASE,
            {
                "phase": phase,
                "conversation_id": self.store.resolve_id(turn.conversation_id),
                "assistant_id": turn.assistant_id,
            },
        )

    async def _run(self, turn: Turn) -> None:
        await self._transition(turn, TurnPhase.DRAFTING)
        handler = StreamHandler(
            self.store,
            turn.conversation_id,
            turn.assistant_id,
            chunk_size=self.settings.stream_chunk_size,
        )
        outcome = TurnOutcome.ERROR
        error: str | None = GENERIC_ERROR_MESSAGE
        try:
            await self._upload(turn)
            await self._transition(turn, TurnPhase.REQUESTING)
            request = self._build_request(turn)
            await turn.token.run(self._gate(request))
            await self._transition(
                turn,
                TurnPhase.STREAMING if request.stream else TurnPhase.AWAITING_BATCH,
            )
            await turn.token.run(self._consume(request, handler))
            outcome, error = TurnOutcome.SUCCESS, None
        except TurnAbortedError:
            outcome, error = TurnOutcome.ABORTED, INTERRUPTED_MESSAGE
        except ChatlineError as exc:
            error = turn_error_message(exc)
            LOGGER.warning(
                "turn.failed",
                extra={
                    "event": "turn.failed",
                    "conversation_id": turn.conversation_id,
                    "assistant_id": turn.assistant_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
        except asyncio.CancelledError:
            outcome, error = TurnOutcome.ABORTED, INTERRUPTED_MESSAGE
            raise
        finally:
            handler.finalize()
            self.store.update_message(
                turn.conversation_id, turn.assistant_id, is_streaming=False, error=error
            )
            turn.outcome = outcome

        # An abort is only worth saving once some of the answer arrived.
        if outcome is TurnOutcome.SUCCESS or (
            outcome is TurnOutcome.ABORTED and handler.content
        ):
            await self._transition(turn, TurnPhase.PERSISTING)
            await self._persist(turn)
        await self._transition(turn, TurnPhase.SETTLED)
        LOGGER.info(
            "turn.settled",
            extra={
                "event": "turn.settled",
                "outcome": outcome.value,
                "conversation_id": turn.conversation_id,
                "assistant_id": turn.assistant_id,
            },
        )
        self.bus.emit(
            TURN_SETTLED,
            {
                "outcome": outcome,
                "conversation_id": self.store.resolve_id(turn.conversation_id),
                "assistant_id": turn.assistant_id,
                "error": error,
            },
        )

    async def _upload(self, turn: Turn) -> None:
        if turn.user_message_id is None:
            return
        message = self.store.get_message(turn.conversation_id, turn.user_message_id)
        if message is None or not self.uploader.pending(message.images):
            return
        await self._transition(turn, TurnPhase.UPLOADING)
        await turn.token.run(
            self.uploader.resolve(turn.conversation_id, turn.user_message_id)
        )

    def _build_request(self, turn: Turn) -> CompletionRequest:
        conversation = self.store.get(turn.conversation_id)
        messages = conversation.messages if conversation else []
        index = conversation.index_of(turn.assistant_id) if conversation else -1
        history = messages[:index] if index != -1 else list(messages)

        model = (conversation.model if conversation else "") or self.store.draft_model
        effort = (
            conversation.reasoning_effort if conversation else None
        ) or self.store.draft_reasoning_effort
        reasoning_format = (
            conversation.reasoning_format if conversation else None
        ) or self.store.draft_reasoning_format

        settings = self.settings
        request = build_completion_request(
            history,
            model,
            web_search=turn.options.web_search,
            max_history=settings.max_history_messages,
            search_max_history=settings.search_max_history_messages,
            max_images=settings.max_history_images,
            system_prompt=settings.system_prompt,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            reasoning_effort=effort,
            reasoning_format=reasoning_format,
        )
        validate_request(request)
        return request

    async def _gate(self, request: CompletionRequest) -> None:
        """Rate limit, then the safety check on the latest user message."""
        verdict = await self.rate_limiter.limit(self.settings.subject)
        if not verdict.success:
            raise RateLimitedError(RATE_LIMITED_MESSAGE)

        latest_user = next(
            (m for m in reversed(request.messages) if m.get("role") == "user"), None
        )
        if latest_user is None:
            return
        result = await self.safety.check(str(latest_user.get("content", "")))
        if not result.is_safe:
            raise SafetyRejectedError(result.reason or DEFAULT_UNSAFE_REASON)

    async def _consume(self, request: CompletionRequest, handler: StreamHandler) -> None:
        async with self.completion.open(request) as response:
            if not response.is_stream:
                payload = await response.json()
                handler.apply_batch(
                    str(payload.get("content") or ""),
                    parse_search_results(payload.get("searchResults")),
                )
                return
            async for line in response.lines():
                frame = parse_stream_frame(line)
                if frame is None:
                    continue
                if frame.done:
                    break
                handler.handle_content(frame.content)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self, turn: Turn) -> None:
        options = turn.options
        conversation = self.store.get(turn.conversation_id)
        if conversation is None:
            return
        index = conversation.index_of(turn.assistant_id)
        user_message = (
            conversation.messages[index - 1]
            if index > 0 and conversation.messages[index - 1].role == "user"
            else None
        )

        persisted_id = self.store.resolve_id(turn.conversation_id)
        if user_message is not None and not options.retry_assistant_id:
            if any(not image.url for image in user_message.images or ()):
                LOGGER.warning(
                    "persist.images.unresolved",
                    extra={
                        "event": "persist.images.unresolved",
                        "message_id": user_message.id,
                    },
                )
                self.bus.notice("warning", UNSAVED_IMAGES_MESSAGE)
            new_id = await self.gateway.persist_message(
                persisted_id, user_message, is_edit=bool(options.editing_message_id)
            )
            if new_id:
                persisted_id = new_id
        turn.conversation_id = persisted_id

        assistant = self.store.get_message(persisted_id, turn.assistant_id)
        if assistant is not None:
            await self.gateway.persist_message(
                persisted_id,
                assistant,
                is_edit=not turn.assistant_is_new,
            )
