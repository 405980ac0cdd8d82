"""Chat controller: the conversation-level caller of the streaming pipeline.

The controller owns the visible conversation and saved-chat list, turns user
input into requests, drives one stream session at a time through the
aggregator, and persists the result. Terminal errors are reported through the
``notify`` callback; none escape to the caller.
"""

from __future__ import annotations

import datetime
import logging
import re
from typing import Callable, Literal, Optional, Sequence

import aiohttp

from ..core.config import DEFAULT_WELCOME_MESSAGE, ChatSettings, Persona
from ..core.errors import CapabilityUnsupportedError, ChatClientError, StorageError
from ..core.logging_system import SessionLogger
from ..core.utils import _truncate, generate_id
from ..models.conversation import (
    ConversationMessage,
    ImageURLPart,
    MediaURL,
    ProcessedFile,
    SavedChat,
    TextPart,
)
from ..requests.builder import ChatRequest, build_chat_request, format_file_contents
from ..storage.persistence import ChatStore
from ..streaming.aggregator import FrameScheduler, StreamingAggregator, StreamingSnapshot
from ..streaming.session import stream_chat

NotifyVariant = Literal["default", "destructive"]
NotifyCallback = Callable[[str, str, NotifyVariant], None]

_NEW_CHAT_TITLE = "New Chat"
_UNTITLED_CHAT_TITLE = "Untitled Chat"
_TITLE_MAX_CHARS = 50
_LEGACY_BOT_NAME_RE = re.compile(r"I'm ([^.]+)")


class ChatController:
    """Conversation state plus send / regenerate / cancel orchestration."""

    def __init__(
        self,
        settings: ChatSettings,
        *,
        store: Optional[ChatStore] = None,
        notify: Optional[NotifyCallback] = None,
        on_snapshot: Optional[Callable[[StreamingSnapshot], None]] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
        scheduler: Optional[FrameScheduler] = None,
    ) -> None:
        self.logger = SessionLogger.get_logger(__name__)
        self.settings = settings
        self.store = store
        self._notify = notify
        self._on_snapshot = on_snapshot
        self.http_session = http_session

        self.model = settings.MODEL
        self.persona: Optional[Persona] = settings.CUSTOM_PERSONA
        self.web_search_enabled = False
        self.is_processing = False
        self.messages: list[ConversationMessage] = []
        self.saved_chats: list[SavedChat] = []
        self.current_chat_id: Optional[str] = None
        self.streaming_message: Optional[StreamingSnapshot] = None
        self.last_usage: Optional[dict] = None
        self.last_request_events: list[dict] = []

        self._stream_error: Optional[ChatClientError] = None
        self._aggregator = StreamingAggregator(
            on_snapshot=self._handle_snapshot,
            on_message=self._handle_final_message,
            on_error=self._handle_stream_error,
            on_usage=self._handle_usage,
            scheduler=scheduler,
            flush_interval_ms=settings.FLUSH_INTERVAL_MS,
        )

    # ------------------------------------------------------------------
    # Notifications & state restore
    # ------------------------------------------------------------------

    def notify(self, title: str, description: str, variant: NotifyVariant = "default") -> None:
        if variant == "destructive":
            self.logger.warning("%s: %s", title, description)
        else:
            self.logger.info("%s: %s", title, description)
        if self._notify is not None:
            self._notify(title, description, variant)

    def restore(self) -> None:
        """Load saved chats and the current conversation from the store."""
        if self.store is not None:
            try:
                self.saved_chats = self.store.load_chats()
                self.messages = self.store.load_messages()
                self.current_chat_id = self.store.get_current_chat_id()
            except StorageError as exc:
                self.notify("Chat history unavailable", exc.to_markdown(), "destructive")
        if self.current_chat_id:
            chat = self._find_saved_chat(self.current_chat_id)
            if chat is not None and chat.bot is not None:
                self.persona = chat.bot
        if not self.messages:
            self.add_welcome_message()

    def add_welcome_message(self) -> None:
        persona = self.persona
        if persona is not None:
            content = f"I'm {persona.name}. {persona.description or ''}".strip()
        else:
            content = DEFAULT_WELCOME_MESSAGE
        self.messages = [ConversationMessage(id=generate_id("msg_"), role="assistant", content=content)]

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        images: Sequence[str] = (),
        files: Sequence[ProcessedFile] = (),
        *,
        force_web_search: Optional[bool] = None,
    ) -> Optional[ConversationMessage]:
        """Send one user turn and stream the reply.

        Returns the finalized assistant message, or None when nothing was sent,
        the stream failed or it was cancelled.
        """
        if not content.strip() and not images and not files:
            return None
        if self.is_processing:
            self.logger.warning("Ignoring send while a response is still streaming")
            return None
        if not self.settings.USE_PROXY and not self.settings.decrypted_api_key().strip():
            self.notify("API Key Missing", "Please set your API key in the settings.", "destructive")
            return None

        user_message = self._build_user_message(content, images, files)
        history = list(self.messages)
        self.messages.append(user_message)

        web_search = self.web_search_enabled if force_web_search is None else force_web_search
        request = build_chat_request(
            user_message,
            history,
            self.settings,
            model=self.model,
            web_search=web_search,
            persona=self.persona,
        )
        final, error = await self._stream(request)
        if error is None:
            return final

        if web_search and isinstance(error, CapabilityUnsupportedError):
            self.notify(
                "Web Search Not Available",
                "Web search is not available for this model. Trying again without web search.",
            )
            self.messages = [m for m in self.messages if m.id != user_message.id]
            return await self.send_message(content, images, files, force_web_search=False)

        self.notify("Error", error.to_markdown(), "destructive")
        return None

    async def regenerate(self, message_id: str) -> Optional[ConversationMessage]:
        """Drop an assistant reply (and everything after it) and stream a new one."""
        if self.is_processing:
            return None
        index = next((i for i, m in enumerate(self.messages) if m.id == message_id), -1)
        if index < 1 or self.messages[index].role != "assistant":
            return None

        user_message = self.messages[index - 1]
        history = self.messages[: index - 1]
        self.messages = self.messages[:index]
        request = build_chat_request(
            user_message,
            history,
            self.settings,
            model=self.model,
            persona=self.persona,
        )
        final, error = await self._stream(request)
        if error is not None:
            self.notify("Error", error.to_markdown(), "destructive")
        return final

    def _build_user_message(
        self,
        content: str,
        images: Sequence[str],
        files: Sequence[ProcessedFile],
    ) -> ConversationMessage:
        message_content: str | list = content
        if images:
            message_content = [TextPart(text=content or "Describe these images")] + [
                ImageURLPart(image_url=MediaURL(url=url, detail="high")) for url in images
            ]
        return ConversationMessage(
            id=generate_id(),
            role="user",
            content=message_content,
            file_contents=format_file_contents(files) or None,
            file_names=[f.name for f in files] or None,
        )

    async def _stream(
        self, request: ChatRequest
    ) -> tuple[Optional[ConversationMessage], Optional[ChatClientError]]:
        request_id = generate_id("req-")
        request_token = SessionLogger.request_id.set(request_id)
        chat_token = SessionLogger.chat_id.set(self.current_chat_id)
        level_token = SessionLogger.log_level.set(logging.getLevelName(self.settings.LOG_LEVEL))
        self.is_processing = True
        self._stream_error = None
        message_count = len(self.messages)
        try:
            self.logger.debug("Streaming reply with model %s", request.model)
            self._aggregator.begin()
            await stream_chat(
                request.body,
                self.settings,
                self._aggregator.callbacks(),
                http_session=self.http_session,
            )
        finally:
            if self._aggregator.active:
                self._aggregator.cancel()
            self.is_processing = False
            self.streaming_message = None
            SessionLogger.log_level.reset(level_token)
            SessionLogger.chat_id.reset(chat_token)
            SessionLogger.request_id.reset(request_token)
            self.last_request_events = SessionLogger.events(request_id)
            SessionLogger.cleanup(request_id)

        if self._stream_error is not None:
            return None, self._stream_error
        if len(self.messages) > message_count:
            return self.messages[-1], None
        return None, None

    # ------------------------------------------------------------------
    # Aggregator hooks
    # ------------------------------------------------------------------

    def _handle_snapshot(self, snapshot: StreamingSnapshot) -> None:
        self.streaming_message = snapshot
        if self._on_snapshot is not None:
            self._on_snapshot(snapshot)

    def _handle_usage(self, usage: dict) -> None:
        self.last_usage = usage
        self.logger.debug("Usage: %s", usage)

    def _handle_stream_error(self, error: ChatClientError) -> None:
        self._stream_error = error

    def _handle_final_message(self, message: ConversationMessage) -> None:
        self.messages.append(message)
        if self.current_chat_id is None:
            self.current_chat_id = generate_id("chat-")
        self.save_current_chat()

    # ------------------------------------------------------------------
    # Stream controls
    # ------------------------------------------------------------------

    def cancel_current_stream(self) -> None:
        self._aggregator.cancel()
        self.is_processing = False
        self.streaming_message = None

    def set_reasoning_visible(self, message_id: str, visible: bool) -> None:
        self.messages = [
            m.model_copy(update={"reasoning_visible": visible}) if m.id == message_id else m
            for m in self.messages
        ]
        snapshot = self._aggregator.snapshot()
        if snapshot is not None and snapshot.message_id == message_id:
            self._aggregator.set_reasoning_visible(visible)

    def toggle_web_search(self) -> bool:
        self.web_search_enabled = not self.web_search_enabled
        return self.web_search_enabled

    # ------------------------------------------------------------------
    # Saved chats
    # ------------------------------------------------------------------

    def chat_title(self, messages: Optional[Sequence[ConversationMessage]] = None) -> str:
        """Title from the first user message, cut to 50 characters."""
        chat_messages = self.messages if messages is None else messages
        if len(chat_messages) <= 1:
            return _NEW_CHAT_TITLE
        first_user = next((m for m in chat_messages if m.role == "user"), None)
        if first_user is None:
            return _NEW_CHAT_TITLE
        parts = first_user.text_parts()
        title = parts[0] if parts and parts[0] else _NEW_CHAT_TITLE
        return _truncate(title, _TITLE_MAX_CHARS)

    def _find_saved_chat(self, chat_id: str) -> Optional[SavedChat]:
        return next((chat for chat in self.saved_chats if chat.id == chat_id), None)

    def _persist(self, *, chats: bool = False, messages: bool = False, chat_id: bool = False) -> bool:
        if self.store is None:
            return True
        try:
            if chats:
                self.store.save_chats(self.saved_chats)
            if messages:
                self.store.save_messages(self.messages)
            if chat_id:
                self.store.set_current_chat_id(self.current_chat_id)
        except StorageError as exc:
            self.logger.error("Chat history not saved: %s", exc)
            self.notify("Chat history not saved", exc.to_markdown(), "destructive")
            return False
        return True

    def save_current_chat(self) -> bool:
        """Snapshot the visible conversation into the saved-chat list."""
        if len(self.messages) <= 1:
            return False
        if self.current_chat_id is None:
            self.current_chat_id = generate_id("chat-")
        now = datetime.datetime.now(datetime.timezone.utc)
        existing = self._find_saved_chat(self.current_chat_id)
        if existing is not None:
            updated = existing.model_copy(
                update={
                    "title": self.chat_title(),
                    "messages": list(self.messages),
                    "last_updated": now,
                    "bot": self.persona or existing.bot,
                }
            )
            self.saved_chats = [updated if c.id == existing.id else c for c in self.saved_chats]
        else:
            self.saved_chats = self.saved_chats + [
                SavedChat(
                    id=self.current_chat_id,
                    title=self.chat_title(),
                    messages=list(self.messages),
                    last_updated=now,
                    bot=self.persona,
                )
            ]
        return self._persist(chats=True, messages=True, chat_id=True)

    def load_saved_chat(self, chat_id: str) -> bool:
        if self.is_processing:
            return False
        chat = self._find_saved_chat(chat_id)
        if chat is None:
            return False
        self.save_current_chat()
        self.messages = list(chat.messages)
        self.current_chat_id = chat.id
        self.persona = chat.bot or self._infer_legacy_persona(chat.messages)
        self._persist(messages=True, chat_id=True)
        return True

    @staticmethod
    def _infer_legacy_persona(messages: Sequence[ConversationMessage]) -> Optional[Persona]:
        """Rebuild a persona from a chat saved with a visible system message."""
        system = next((m for m in messages if m.role == "system"), None)
        if system is None:
            return None
        assistant = next((m for m in messages if m.role == "assistant"), None)
        match = _LEGACY_BOT_NAME_RE.search(assistant.text()) if assistant is not None else None
        name = match.group(1).strip() if match else "Custom Bot"
        return Persona(name=name, instructions=system.text())

    def rename_saved_chat(self, chat_id: str, new_title: str) -> None:
        title = new_title.strip() or _UNTITLED_CHAT_TITLE
        now = datetime.datetime.now(datetime.timezone.utc)
        self.saved_chats = [
            c.model_copy(update={"title": title, "last_updated": now}) if c.id == chat_id else c
            for c in self.saved_chats
        ]
        if self._persist(chats=True):
            self.notify("Chat Renamed", "The chat title has been updated.")

    def delete_saved_chat(self, chat_id: str) -> None:
        self.saved_chats = [c for c in self.saved_chats if c.id != chat_id]
        persisted = self._persist(chats=True)
        if chat_id == self.current_chat_id:
            self.messages = []
            self.start_new_chat()
        if persisted:
            self.notify("Chat Deleted", "The chat has been removed from your history.")

    def start_new_chat(self, persona: Optional[Persona] = None) -> None:
        """Save the current conversation and reset to a fresh welcome message."""
        self.save_current_chat()
        self.current_chat_id = None
        self.persona = persona
        self.add_welcome_message()
        self._persist(messages=True, chat_id=True)
