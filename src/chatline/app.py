"""Minimal Textual shell around the send orchestrator."""

from __future__ import annotations

from datetime import datetime
import logging
import shlex
from typing import Any

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import VerticalScroll
from textual.widgets import Footer, Header, Input, Static

from .config import load_config
from .events import NOTICE, STORE_CHANGED, TURN_SETTLED, Event
from .logging_utils import configure_logging
from .models import Conversation, ImageAttachment, Message
from .orchestrator import SendOptions
from .runtime import ChatRuntime, build_runtime

LOGGER = logging.getLogger(__name__)

_NOTICE_SEVERITY = {"info": "information", "warning": "warning", "error": "error"}
REASONING_EFFORTS = ("low", "medium", "high")

HELP_TEXT = (
    "/new  start a blank chat | /list  list chats | /open N  switch chat | "
    "/delete N  delete chat | /image PATH...  attach images | /search  toggle web search | "
    "/model ID  choose model | /reasoning low|medium|high  set effort | /title TEXT  rename chat | "
    "/refresh  reload chats | /edit TEXT  edit last message | /retry  regenerate last answer"
)


def render_message(message: Message, show_timestamps: bool = True) -> str:
    """Render one message as plain transcript text."""
    stamp = ""
    if show_timestamps:
        stamp = datetime.fromtimestamp(message.created_at / 1000).strftime("%H:%M ")
    lines = [f"{stamp}{message.role}:"]
    if message.images:
        names = ", ".join(image.file_name for image in message.images)
        lines.append(f"  [images: {names}]")
    body = message.content or ("..." if message.is_streaming else "")
    if body:
        lines.append(f"  {body}")
    for result in message.search_results or ():
        lines.append(f"  - {result.title} <{result.url}>")
    if message.error:
        lines.append(f"  ! {message.error}")
    return "\n".join(lines)


def render_conversation(conversation: Conversation | None, show_timestamps: bool = True) -> str:
    if conversation is None:
        return "New chat. Type a message to begin."
    if conversation.is_loading_messages:
        return f"{conversation.title}\n\nLoading messages..."
    rendered = [render_message(m, show_timestamps) for m in conversation.messages]
    return "\n\n".join([conversation.title, *rendered])


class ChatlineApp(App[None]):
    """Terminal client: one transcript pane and one input line."""

    AUTO_FOCUS = "#composer"

    CSS = """
    #transcript {
        height: 1fr;
        padding: 0 1;
    }
    #composer {
        dock: bottom;
    }
    """

    BINDINGS = [
        Binding("ctrl+n", "new_conversation", "New chat"),
        Binding("escape", "interrupt", "Stop"),
        Binding("ctrl+w", "toggle_search", "Web search"),
        Binding("ctrl+q", "quit", "Quit"),
    ]

    def __init__(
        self,
        config: dict[str, dict[str, Any]] | None = None,
        runtime: ChatRuntime | None = None,
    ) -> None:
        super().__init__()
        self.config = config or load_config()
        configure_logging(self.config["logging"])
        self.runtime = runtime or build_runtime(self.config)
        self.show_timestamps = bool(self.config["ui"]["show_timestamps"])
        self.web_search = False
        self.pending_images: list[ImageAttachment] = []
        self.title = str(self.config["app"]["title"])

    def compose(self) -> ComposeResult:
        yield Header()
        with VerticalScroll(id="transcript"):
            yield Static(id="messages")
        yield Input(placeholder="Message (/help for commands)", id="composer")
        yield Footer()

    async def on_mount(self) -> None:
        bus = self.runtime.bus
        bus.subscribe(STORE_CHANGED, self._on_store_changed)
        bus.subscribe(TURN_SETTLED, self._on_store_changed)
        bus.subscribe(NOTICE, self._on_notice)
        await self.runtime.store.load_conversations()
        self._refresh_subtitle()
        self._render()

    async def on_unmount(self) -> None:
        await self.runtime.aclose()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _render(self) -> None:
        conversation = self.runtime.store.get_active_conversation()
        self.query_one("#messages", Static).update(
            render_conversation(conversation, self.show_timestamps)
        )
        self.query_one("#transcript", VerticalScroll).scroll_end(animate=False)

    def _refresh_subtitle(self) -> None:
        store = self.runtime.store
        conversation = store.get_active_conversation()
        model = conversation.model if conversation else store.draft_model
        flags = []
        if self.web_search:
            flags.append("web search")
        if self.pending_images:
            flags.append(f"{len(self.pending_images)} image(s)")
        self.sub_title = " | ".join([model, *flags])

    def _on_store_changed(self, _event: Event) -> None:
        self._render()
        self._refresh_subtitle()

    def _on_notice(self, event: Event) -> None:
        severity = _NOTICE_SEVERITY.get(str(event.data.get("level")), "information")
        self.notify(str(event.data.get("message", "")), severity=severity)  # type: ignore[arg-type]

    # ------------------------------------------------------------------
    # Input handling
    # ------------------------------------------------------------------

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        text = event.value.strip()
        event.input.value = ""
        if not text:
            return
        if text.startswith("/"):
            await self._run_command(text)
            return
        self._send(text, SendOptions(images=self._take_images(), web_search=self.web_search))

    def _take_images(self) -> list[ImageAttachment] | None:
        images, self.pending_images = self.pending_images, []
        return images or None

    def _send(self, text: str, options: SendOptions) -> None:
        self.run_worker(
            self.runtime.orchestrator.send_message(text, options),
            group="send",
            exclusive=False,
        )
        self._refresh_subtitle()

    def _conversation_by_number(self, raw: str) -> Conversation | None:
        try:
            index = int(raw) - 1
        except ValueError:
            return None
        conversations = self.runtime.store.conversations
        return conversations[index] if 0 <= index < len(conversations) else None

    async def _run_command(self, text: str) -> None:
        name, _, args = text.partition(" ")
        store = self.runtime.store
        orchestrator = self.runtime.orchestrator

        if name == "/help":
            self.notify(HELP_TEXT)
        elif name == "/new":
            await self.action_new_conversation()
        elif name == "/list":
            listing = [
                f"{number}. {conversation.title}"
                for number, conversation in enumerate(store.conversations, start=1)
            ]
            self.notify("\n".join(listing) or "No conversations yet.")
        elif name == "/open":
            conversation = self._conversation_by_number(args.strip())
            if conversation is None:
                self.notify("No such conversation.", severity="warning")
                return
            orchestrator.switch_conversation(conversation.id)
        elif name == "/delete":
            conversation = self._conversation_by_number(args.strip())
            if conversation is None:
                self.notify("No such conversation.", severity="warning")
                return
            await store.delete_conversation(conversation.id)
        elif name == "/image":
            images, messages = self.runtime.attachments.collect(shlex.split(args))
            self.pending_images = (self.pending_images + images)[
                : self.runtime.attachments.max_images
            ]
            for message in messages:
                self.notify(message, severity="warning")
            orchestrator.refresh_model(self.web_search, bool(self.pending_images))
        elif name == "/search":
            await self.action_toggle_search()
        elif name == "/model":
            orchestrator.select_model(args.strip())
        elif name == "/reasoning":
            effort = args.strip().lower()
            if effort not in REASONING_EFFORTS:
                self.notify("Reasoning effort must be low, medium or high.", severity="warning")
                return
            store.set_conversation_reasoning(store.active_id, effort=effort)  # type: ignore[arg-type]
        elif name == "/title":
            title = args.strip()
            if not title or store.get_active_conversation() is None:
                self.notify("Nothing to rename.", severity="warning")
                return
            store.update_conversation_title(store.active_id, title)
        elif name == "/refresh":
            if orchestrator.is_busy:
                self.notify("Wait for the current response to finish.", severity="warning")
                return
            store.clear_all_conversations()
            await store.load_conversations()
        elif name == "/edit":
            target = self._last_message("user")
            if target is None:
                self.notify("Nothing to edit.", severity="warning")
                return
            self._send(
                args.strip(),
                SendOptions(
                    images=target.images,
                    web_search=self.web_search,
                    editing_message_id=target.id,
                ),
            )
        elif name == "/retry":
            target = self._last_message("assistant")
            if target is None:
                self.notify("Nothing to retry.", severity="warning")
                return
            self._send("", SendOptions(web_search=self.web_search, retry_assistant_id=target.id))
        else:
            self.notify(f"Unknown command {name}.", severity="warning")
        self._refresh_subtitle()

    def _last_message(self, role: str) -> Message | None:
        conversation = self.runtime.store.get_active_conversation()
        if conversation is None:
            return None
        for message in reversed(conversation.messages):
            if message.role == role:
                return message
        return None

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def action_new_conversation(self) -> None:
        self.runtime.orchestrator.new_conversation()
        self.pending_images = []
        self._refresh_subtitle()

    async def action_interrupt(self) -> None:
        if not self.runtime.orchestrator.cancel_active_send():
            LOGGER.debug("app.interrupt.idle", extra={"event": "app.interrupt.idle"})

    async def action_toggle_search(self) -> None:
        self.web_search = not self.web_search
        self.runtime.orchestrator.refresh_model(self.web_search, bool(self.pending_images))
        self._refresh_subtitle()
