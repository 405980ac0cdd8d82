"""Storage domain: chat history persistence."""

from .persistence import ChatStore, SQLAlchemyChatStore

__all__ = ["ChatStore", "SQLAlchemyChatStore"]
