"""Configuration management for the OpenRouter chat client.

This module contains all configuration schemas, constants, and templates:
- ChatSettings: explicit settings object passed into the request builder and stream session
- Persona: custom persona ("bot") definition used for the system directive
- EncryptedStr: Secret value encryption wrapper for the API credential
- Error template constants
- Client constants (headers, defaults)
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from typing import Any, Literal, Optional, cast

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ConfigDict, Field, GetCoreSchemaHandler, model_validator
from pydantic_core import core_schema

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

_OPENROUTER_TITLE = "LampsGPT"
_OPENROUTER_REFERER = "https://github.com/lampsgpt/openrouter-chat/"
_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
_DEFAULT_PROXY_URL = "http://localhost:3000/api/openrouter"
_DEFAULT_MODEL = "x-ai/grok-4"
_DEFAULT_VISION_MODEL = "x-ai/grok-vision-beta"
_DEFAULT_CHAT_DB_URL = "sqlite:///chat_history.db"

_SECRET_KEY_ENV = "OPENROUTER_CHAT_SECRET_KEY"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, direct AI assistant. Answer plainly, lead with the conclusion, "
    "and back claims with concrete numbers, dates, and sources when precision matters. "
    "If a request is ambiguous, proceed with one or two explicit assumptions instead of "
    "asking for clarification. Never invent sources."
)

DEFAULT_WELCOME_MESSAGE = "Hello! I'm your AI assistant. How can I help you today?"

DEFAULT_OPENROUTER_ERROR_TEMPLATE = (
    "{{#if heading}}\n"
    "### 🚫 {heading}\n\n"
    "{{/if}}\n"
    "{{#if sanitized_detail}}\n"
    "### Error: `{sanitized_detail}`\n\n"
    "{{/if}}\n"
    "{{#if status}}\n"
    "- **Status**: `{status}`\n"
    "{{/if}}\n"
    "{{#if model_identifier}}\n"
    "- **Model**: `{model_identifier}`\n"
    "{{/if}}\n"
    "{{#if provider}}\n"
    "- **Provider**: `{provider}`\n"
    "{{/if}}\n"
    "{{#if openrouter_code}}\n"
    "- **OpenRouter code**: `{openrouter_code}`\n"
    "{{/if}}\n"
    "{{#if request_id}}\n"
    "- **Request ID**: `{request_id}`\n"
    "{{/if}}\n"
    "{{#if metadata_json}}\n"
    "\n**Metadata:**\n"
    "```\n{metadata_json}\n```\n"
    "{{/if}}\n"
)

DEFAULT_AUTHENTICATION_ERROR_TEMPLATE = (
    "### 🔐 Authentication Failed\n\n"
    "{detail}\n\n"
    "**What to do:**\n"
    "- Check the API key in your settings\n"
    "- Make sure the key has not been revoked\n"
    "{{#if status}}\n"
    "- **Status**: `{status}`\n"
    "{{/if}}\n"
)

DEFAULT_RATE_LIMIT_TEMPLATE = (
    "### ⏸️ Rate Limit Exceeded\n\n"
    "{detail}\n\n"
    "{{#if retry_after_seconds}}\n"
    "**Retry after:** {retry_after_seconds}s\n"
    "{{/if}}\n"
    "Wait a moment and try again.\n"
)

DEFAULT_STALL_ERROR_TEMPLATE = (
    "### ⏱️ Stream Stalled\n\n"
    "{detail}\n\n"
    "{{#if timeout_seconds}}\n"
    "**Inactivity window:** {timeout_seconds}s\n"
    "{{/if}}\n"
    "**Possible causes:**\n"
    "- The provider is overloaded or queued your request\n"
    "- Network congestion between you and OpenRouter\n"
)

DEFAULT_NETWORK_ERROR_TEMPLATE = (
    "### 🔌 Connection Error\n\n"
    "Could not reach OpenRouter.\n\n"
    "{{#if detail}}\n"
    "**Details:** `{detail}`\n"
    "{{/if}}\n"
    "Check your internet connection and try again.\n"
)

DEFAULT_CAPABILITY_ERROR_TEMPLATE = (
    "### 🧩 Capability Not Available\n\n"
    "{detail}\n\n"
    "{{#if capability}}\n"
    "- **Capability**: `{capability}`\n"
    "{{/if}}\n"
    "{{#if model_identifier}}\n"
    "- **Model**: `{model_identifier}`\n"
    "{{/if}}\n"
)

DEFAULT_STORAGE_ERROR_TEMPLATE = (
    "### 💾 Chat History Not Saved\n\n"
    "{detail}\n"
)

_ALLOWED_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# -----------------------------------------------------------------------------
# EncryptedStr and Helper Functions
# -----------------------------------------------------------------------------

class EncryptedStr(str):
    """String wrapper that automatically encrypts/decrypts the stored credential."""

    _ENCRYPTION_PREFIX = "encrypted:"

    @classmethod
    def _get_encryption_key(cls) -> Optional[bytes]:
        """Return the Fernet key derived from ``OPENROUTER_CHAT_SECRET_KEY``.

        Returns:
            Optional[bytes]: URL-safe base64 Fernet key or ``None`` when unset.
        """
        secret = os.getenv(_SECRET_KEY_ENV)
        if not secret:
            return None
        hashed_key = hashlib.sha256(secret.encode()).digest()
        return base64.urlsafe_b64encode(hashed_key)

    @classmethod
    def encrypt(cls, value: str) -> str:
        """Encrypt ``value`` when an application secret is configured."""
        if not value or value.startswith(cls._ENCRYPTION_PREFIX):
            return value
        key = cls._get_encryption_key()
        if not key:
            return value
        fernet = Fernet(key)
        encrypted = fernet.encrypt(value.encode())
        return f"{cls._ENCRYPTION_PREFIX}{encrypted.decode()}"

    @classmethod
    def decrypt(cls, value: str) -> str:
        """Decrypt values produced by :meth:`encrypt`.

        Returns the original value when no key is configured or the token is invalid.
        """
        if not value or not value.startswith(cls._ENCRYPTION_PREFIX):
            return value
        key = cls._get_encryption_key()
        if not key:
            return value[len(cls._ENCRYPTION_PREFIX) :]
        try:
            encrypted_part = value[len(cls._ENCRYPTION_PREFIX) :]
            fernet = Fernet(key)
            decrypted = fernet.decrypt(encrypted_part.encode())
            return decrypted.decode()
        except InvalidToken:
            LOGGER.warning("Failed to decrypt value: invalid token or key mismatch")
            return value
        except (ValueError, UnicodeDecodeError) as e:
            LOGGER.warning("Failed to decrypt value: %s: %s", type(e).__name__, e)
            return value

    @classmethod
    def __get_pydantic_core_schema__(
        cls, _source_type: Any, _handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        """Expose a union schema so plain strings auto-wrap as EncryptedStr."""
        return core_schema.union_schema(
            [
                core_schema.is_instance_schema(cls),
                core_schema.chain_schema(
                    [
                        core_schema.str_schema(),
                        core_schema.no_info_plain_validator_function(
                            lambda value: cls(cls.encrypt(value) if value else value)
                        ),
                    ]
                ),
            ],
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda instance: str(instance)
            ),
        )


def _default_api_key() -> EncryptedStr:
    """Return the API key env default as EncryptedStr."""
    return EncryptedStr((os.getenv("OPENROUTER_API_KEY") or "").strip())


def _default_use_proxy() -> bool:
    return (os.getenv("OPENROUTER_CHAT_USE_PROXY") or "").strip().lower() == "true"


def _resolve_log_level_default() -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    """Normalize env-provided log level to the allowed literal set."""
    value = (os.getenv("GLOBAL_LOG_LEVEL") or "INFO").strip().upper()
    if value not in _ALLOWED_LOG_LEVELS:
        value = "INFO"
    return cast(Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], value)


# -----------------------------------------------------------------------------
# Persona and ChatSettings Configuration Classes
# -----------------------------------------------------------------------------

class Persona(BaseModel):
    """Custom persona ("bot") whose instructions replace the default system prompt."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    instructions: str


class ChatSettings(BaseModel):
    """Settings provider snapshot handed to the pipeline at call time."""

    # Connection & Auth
    BASE_URL: str = Field(
        default=((os.getenv("OPENROUTER_API_BASE_URL") or "").strip() or _OPENROUTER_BASE_URL),
        description="OpenRouter API base URL. Override this if you are using a gateway.",
    )
    API_KEY: EncryptedStr = Field(
        default_factory=_default_api_key,
        description="Your OpenRouter API key. Defaults to the OPENROUTER_API_KEY environment variable.",
    )
    USE_PROXY: bool = Field(
        default_factory=_default_use_proxy,
        description=(
            "When True, requests go to PROXY_URL and the Authorization header is omitted; "
            "the proxy attaches the credential server-side."
        ),
    )
    PROXY_URL: str = Field(
        default=_DEFAULT_PROXY_URL,
        description="Chat completions endpoint of the credential-injecting proxy.",
    )
    HTTP_REFERER: str = Field(
        default=_OPENROUTER_REFERER,
        description="`HTTP-Referer` header sent to OpenRouter for app attribution. Must be a full URL.",
    )
    X_TITLE: str = Field(
        default=_OPENROUTER_TITLE,
        description="`X-Title` header sent to OpenRouter for app attribution.",
    )
    HTTP_CONNECT_TIMEOUT_SECONDS: int = Field(
        default=10,
        ge=1,
        description="Seconds to wait for the TCP/TLS connection to OpenRouter before failing.",
    )

    # Generation
    MODEL: str = Field(
        default=_DEFAULT_MODEL,
        description="Model identifier used for text turns.",
    )
    VISION_MODEL: str = Field(
        default=_DEFAULT_VISION_MODEL,
        description="Model identifier used when the turn carries image attachments.",
    )
    TEMPERATURE: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Sampling temperature.",
    )
    MAX_TOKENS: int = Field(
        default=4000,
        ge=1,
        description="Maximum completion tokens when the model has no specific override.",
    )
    DEFAULT_SYSTEM_PROMPT: str = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        description="System directive used when no custom persona is active.",
    )
    CUSTOM_PERSONA: Optional[Persona] = Field(
        default=None,
        description="Active custom persona; its instructions replace the default system prompt.",
    )
    WEB_SEARCH_MAX_RESULTS: Optional[int] = Field(
        default=None,
        ge=1,
        description="Optional `max_results` for the web plugin when web search is enabled.",
    )

    # Streaming
    STREAM_INACTIVITY_TIMEOUT_SECONDS: float = Field(
        default=45.0,
        gt=0,
        description="Abort the stream when no line (data or keep-alive comment) arrives within this window.",
    )
    MAX_RETRIES: int = Field(
        default=2,
        ge=0,
        description="Additional attempts after a transient failure (network, stall, server error).",
    )
    RETRY_DELAY_SECONDS: float = Field(
        default=1.0,
        ge=0,
        description="Linear backoff unit: attempt N waits N x this many seconds.",
    )
    FLUSH_INTERVAL_MS: int = Field(
        default=16,
        ge=0,
        description="Coalescing window for streamed content updates (one flush per frame).",
    )

    # Prompt caching
    PROMPT_CACHE_MAX_BREAKPOINTS: int = Field(
        default=4,
        ge=0,
        description="Maximum number of cache_control breakpoints in one request.",
    )
    PROMPT_CACHE_TOKEN_THRESHOLD: int = Field(
        default=4096,
        ge=1,
        description="Minimum estimated tokens (length / 4) for a text segment to receive a breakpoint.",
    )

    # Storage & logging
    CHAT_DB_URL: str = Field(
        default=((os.getenv("OPENROUTER_CHAT_DB_URL") or "").strip() or _DEFAULT_CHAT_DB_URL),
        description="SQLAlchemy URL of the chat history database.",
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default_factory=_resolve_log_level_default,
        description="Minimum level for the package loggers.",
    )

    @model_validator(mode="after")
    def _validate_endpoints(self) -> "ChatSettings":
        """Reject referers without a scheme and normalize the base URL."""
        referer = (self.HTTP_REFERER or "").strip()
        if referer and not referer.startswith(("http://", "https://")):
            raise ValueError("HTTP_REFERER must be a full URL including scheme")
        self.BASE_URL = (self.BASE_URL or _OPENROUTER_BASE_URL).rstrip("/")
        return self

    @property
    def chat_completions_url(self) -> str:
        """Endpoint the streaming and non-streaming requests are posted to."""
        if self.USE_PROXY:
            return self.PROXY_URL
        return f"{self.BASE_URL}/chat/completions"

    def decrypted_api_key(self) -> str:
        """Return the plain-text credential."""
        return EncryptedStr.decrypt(str(self.API_KEY or ""))
