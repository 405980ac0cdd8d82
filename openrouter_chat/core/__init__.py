"""Core infrastructure module.

Foundation services required by all domains:
- Configuration schemas (ChatSettings, Persona, EncryptedStr)
- Error taxonomy and markdown rendering
- Session logging
- Pure utility functions
"""

from .config import ChatSettings, EncryptedStr, Persona
from .errors import (
    AuthenticationError,
    CapabilityUnsupportedError,
    ChatClientError,
    ConfigurationError,
    NetworkError,
    OpenRouterAPIError,
    RateLimitError,
    ServerError,
    StallError,
    StorageError,
)
from .logging_system import SessionLogger
from .utils import _pretty_json, _render_error_template, _safe_json_loads, generate_id

__all__ = [
    "ChatSettings",
    "EncryptedStr",
    "Persona",
    "AuthenticationError",
    "CapabilityUnsupportedError",
    "ChatClientError",
    "ConfigurationError",
    "NetworkError",
    "OpenRouterAPIError",
    "RateLimitError",
    "ServerError",
    "StallError",
    "StorageError",
    "SessionLogger",
    "_pretty_json",
    "_render_error_template",
    "_safe_json_loads",
    "generate_id",
]
