"""Chat history persistence.

This module provides the persistence provider used by the chat controller:
- ChatStore: protocol for saved chats, the current conversation and its chat id
- SQLAlchemyChatStore: SQLAlchemy implementation (SQLite by default)

Database failures surface as :class:`StorageError`; the store never suppresses
them, the caller decides how to report them.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Callable, Optional, Protocol, Sequence

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, create_engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ..core.errors import StorageError
from ..models.conversation import ConversationMessage, SavedChat

LOGGER = logging.getLogger(__name__)

_CURRENT_CHAT_ID_KEY = "current_chat_id"
_MESSAGES_KEY = "messages"

_MESSAGES_ADAPTER = TypeAdapter(list[ConversationMessage])

Base = declarative_base()


class SavedChatRow(Base):
    __tablename__ = "saved_chats"

    id = Column(String(64), primary_key=True)
    position = Column(Integer, nullable=False, default=0)
    title = Column(Text, nullable=False)
    messages = Column(JSON, nullable=False, default=list)
    bot = Column(JSON, nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=False)


class ChatStateRow(Base):
    __tablename__ = "chat_state"

    key = Column(String(64), primary_key=True)
    value = Column(JSON, nullable=True)


class ChatStore(Protocol):
    """Persistence provider for chat history."""

    def load_chats(self) -> list[SavedChat]: ...

    def save_chats(self, chats: Sequence[SavedChat]) -> None: ...

    def load_messages(self) -> list[ConversationMessage]: ...

    def save_messages(self, messages: Sequence[ConversationMessage]) -> None: ...

    def get_current_chat_id(self) -> Optional[str]: ...

    def set_current_chat_id(self, chat_id: Optional[str]) -> None: ...


class SQLAlchemyChatStore:
    """ChatStore backed by a SQLAlchemy engine."""

    def __init__(self, url: str = "sqlite:///chat_history.db", *, engine: Any = None) -> None:
        try:
            self._engine = engine if engine is not None else create_engine(url)
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Chat history database unavailable: {exc}") from exc
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self._engine,
            expire_on_commit=False,
        )

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    def _run(self, action: str, fn: Callable[[Session], Any]) -> Any:
        session: Session = self._session_factory()
        try:
            result = fn(session)
            session.commit()
            return result
        except SQLAlchemyError as exc:
            session.rollback()
            LOGGER.error("Failed to %s: %s", action, exc, exc_info=LOGGER.isEnabledFor(logging.DEBUG))
            raise StorageError(f"Failed to {action}: {exc}") from exc
        finally:
            session.close()

    def _get_state(self, key: str) -> Any:
        def _load(session: Session) -> Any:
            row = session.get(ChatStateRow, key)
            return row.value if row is not None else None

        return self._run(f"load {key}", _load)

    def _set_state(self, key: str, value: Any) -> None:
        def _store(session: Session) -> None:
            session.merge(ChatStateRow(key=key, value=value))

        self._run(f"save {key}", _store)

    # ------------------------------------------------------------------
    # Saved chats
    # ------------------------------------------------------------------

    def load_chats(self) -> list[SavedChat]:
        def _load(session: Session) -> list[SavedChatRow]:
            return list(session.scalars(select(SavedChatRow).order_by(SavedChatRow.position)))

        rows = self._run("load saved chats", _load)
        return [self._row_to_chat(row) for row in rows]

    def save_chats(self, chats: Sequence[SavedChat]) -> None:
        def _store(session: Session) -> None:
            session.execute(delete(SavedChatRow))
            session.add_all(self._chat_to_row(chat, position) for position, chat in enumerate(chats))

        self._run("save chats", _store)
        LOGGER.debug("Saved %d chat(s)", len(chats))

    @staticmethod
    def _chat_to_row(chat: SavedChat, position: int) -> SavedChatRow:
        return SavedChatRow(
            id=chat.id,
            position=position,
            title=chat.title,
            messages=_MESSAGES_ADAPTER.dump_python(chat.messages, mode="json"),
            bot=chat.bot.model_dump(mode="json") if chat.bot is not None else None,
            last_updated=chat.last_updated,
        )

    @staticmethod
    def _row_to_chat(row: SavedChatRow) -> SavedChat:
        last_updated = row.last_updated
        if last_updated is not None and last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=datetime.timezone.utc)
        try:
            return SavedChat(
                id=row.id,
                title=row.title,
                messages=_MESSAGES_ADAPTER.validate_python(row.messages or []),
                bot=row.bot,
                last_updated=last_updated,
            )
        except ValidationError as exc:
            raise StorageError(f"Saved chat {row.id} is corrupt: {exc}") from exc

    # ------------------------------------------------------------------
    # Current conversation
    # ------------------------------------------------------------------

    def load_messages(self) -> list[ConversationMessage]:
        raw = self._get_state(_MESSAGES_KEY)
        try:
            return _MESSAGES_ADAPTER.validate_python(raw or [])
        except ValidationError as exc:
            raise StorageError(f"Stored messages are corrupt: {exc}") from exc

    def save_messages(self, messages: Sequence[ConversationMessage]) -> None:
        self._set_state(_MESSAGES_KEY, _MESSAGES_ADAPTER.dump_python(list(messages), mode="json"))

    def get_current_chat_id(self) -> Optional[str]:
        value = self._get_state(_CURRENT_CHAT_ID_KEY)
        return str(value) if value else None

    def set_current_chat_id(self, chat_id: Optional[str]) -> None:
        self._set_state(_CURRENT_CHAT_ID_KEY, chat_id)

    def close(self) -> None:
        self._engine.dispose()
