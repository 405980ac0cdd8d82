"""Chat domain: conversation orchestration."""

from .controller import ChatController

__all__ = ["ChatController"]
