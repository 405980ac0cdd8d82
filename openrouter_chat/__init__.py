"""Streaming chat client for OpenRouter's chat completions API.

This package provides:
- Domain subsystems: streaming, requests, chat, storage
- Infrastructure modules: config, errors, logging, utils
- Model helpers: conversation data model and per-model overrides

Typical use goes through :class:`ChatController`; the pipeline pieces
(:func:`build_chat_request`, :func:`stream_chat`, :class:`StreamingAggregator`)
are usable on their own.
"""

from importlib.metadata import PackageNotFoundError, version as _get_version

try:
    __version__ = _get_version("openrouter-chat")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback if not installed as package

from .chat import ChatController
from .core import (
    AuthenticationError,
    CapabilityUnsupportedError,
    ChatClientError,
    ChatSettings,
    NetworkError,
    Persona,
    RateLimitError,
    ServerError,
    StallError,
    StorageError,
)
from .models import ConversationMessage, ProcessedFile, SavedChat
from .requests import ChatRequest, build_chat_request
from .storage import SQLAlchemyChatStore
from .streaming import (
    SessionState,
    StreamCallbacks,
    StreamController,
    StreamingAggregator,
    complete_chat,
    stream_chat,
)

__all__ = [
    "__version__",
    "ChatController",
    "AuthenticationError",
    "CapabilityUnsupportedError",
    "ChatClientError",
    "ChatSettings",
    "NetworkError",
    "Persona",
    "RateLimitError",
    "ServerError",
    "StallError",
    "StorageError",
    "ConversationMessage",
    "ProcessedFile",
    "SavedChat",
    "ChatRequest",
    "build_chat_request",
    "SQLAlchemyChatStore",
    "SessionState",
    "StreamCallbacks",
    "StreamController",
    "StreamingAggregator",
    "complete_chat",
    "stream_chat",
]
