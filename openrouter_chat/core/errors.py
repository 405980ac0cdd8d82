"""Error handling and user-facing error formatting.

This module handles all error-related functionality:
- ChatClientError hierarchy: the terminal error taxonomy of the streaming pipeline
- OpenRouter error payload normalization
- HTTP status classification (authentication, rate limit, capability, server)
- Markdown rendering for user-visible notifications

Only the stream session classifies and raises terminal errors; the frame decoder
and delta interpreter skip malformed input silently.
"""

from __future__ import annotations

import json
import logging
from typing import Any, ClassVar, Optional

from .config import (
    DEFAULT_AUTHENTICATION_ERROR_TEMPLATE,
    DEFAULT_CAPABILITY_ERROR_TEMPLATE,
    DEFAULT_NETWORK_ERROR_TEMPLATE,
    DEFAULT_OPENROUTER_ERROR_TEMPLATE,
    DEFAULT_RATE_LIMIT_TEMPLATE,
    DEFAULT_STALL_ERROR_TEMPLATE,
    DEFAULT_STORAGE_ERROR_TEMPLATE,
)
from .utils import (
    _normalize_optional_str,
    _pretty_json,
    _render_error_template,
    _safe_json_loads,
)

LOGGER = logging.getLogger(__name__)

_CAPABILITY_ERROR_MARKERS = ("plugin", "web search", "web_search")

# -----------------------------------------------------------------------------
# Base Classes
# -----------------------------------------------------------------------------

class ChatClientError(RuntimeError):
    """Base class for every error the chat client surfaces to its caller."""

    kind: ClassVar[str] = "client"
    heading: ClassVar[str] = "The request could not be completed."
    template: ClassVar[str] = DEFAULT_OPENROUTER_ERROR_TEMPLATE

    def __init__(self, message: str, *, requested_model: Optional[str] = None) -> None:
        self.requested_model = (requested_model or "").strip() or None
        super().__init__(message)

    def _template_values(self) -> dict[str, Any]:
        detail = str(self).strip()
        return {
            "heading": self.heading,
            "detail": detail,
            "sanitized_detail": detail.replace("`", "\\`"),
            "model_identifier": self.requested_model or "",
        }

    def to_markdown(self, *, template: Optional[str] = None) -> str:
        """Return a user-friendly markdown block describing the failure."""
        return _render_error_template(template or self.template, self._template_values())


class OpenRouterAPIError(ChatClientError):
    """Error raised from a non-2xx OpenRouter response or an in-band stream error."""

    kind = "server"
    heading = "OpenRouter could not process your request."

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        reason: Optional[str] = None,
        provider: Optional[str] = None,
        openrouter_message: Optional[str] = None,
        openrouter_code: Optional[Any] = None,
        request_id: Optional[str] = None,
        raw_body: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        requested_model: Optional[str] = None,
        is_streaming_error: bool = False,
    ) -> None:
        self.status = status
        self.reason = reason
        self.provider = provider
        self.openrouter_message = (openrouter_message or "").strip() or None
        self.openrouter_code = openrouter_code
        self.request_id = (request_id or "").strip() or None
        self.raw_body = raw_body or ""
        self.metadata = metadata or {}
        self.is_streaming_error = is_streaming_error
        super().__init__(message, requested_model=requested_model)

    def _template_values(self) -> dict[str, Any]:
        values = super()._template_values()
        values.update(
            {
                "status": self.status or "",
                "provider": (self.provider or "").strip(),
                "openrouter_code": str(self.openrouter_code or ""),
                "request_id": self.request_id or "",
                "metadata_json": _pretty_json(self.metadata),
            }
        )
        return values


# -----------------------------------------------------------------------------
# Terminal Error Taxonomy
# -----------------------------------------------------------------------------

class AuthenticationError(OpenRouterAPIError):
    """HTTP 401 or a missing credential. Fatal, never retried."""

    kind = "authentication"
    heading = "Authentication failed."
    template = DEFAULT_AUTHENTICATION_ERROR_TEMPLATE


class RateLimitError(OpenRouterAPIError):
    """HTTP 429. Fatal to this attempt, never retried automatically."""

    kind = "rate-limit"
    heading = "Rate limit exceeded."
    template = DEFAULT_RATE_LIMIT_TEMPLATE

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs: Any) -> None:
        self.retry_after = retry_after
        super().__init__(message, **kwargs)

    def _template_values(self) -> dict[str, Any]:
        values = super()._template_values()
        values["retry_after_seconds"] = f"{self.retry_after:g}" if self.retry_after is not None else ""
        return values


class ServerError(OpenRouterAPIError):
    """Any other non-2xx response. Retried within the session's budget."""

    kind = "server"


class CapabilityUnsupportedError(OpenRouterAPIError):
    """The provider rejected a requested optional capability (e.g. the web plugin)."""

    kind = "capability-unsupported"
    heading = "Capability not available for this model."
    template = DEFAULT_CAPABILITY_ERROR_TEMPLATE

    def __init__(self, message: str, *, capability: Optional[str] = None, **kwargs: Any) -> None:
        self.capability = capability
        super().__init__(message, **kwargs)

    def _template_values(self) -> dict[str, Any]:
        values = super()._template_values()
        values["capability"] = self.capability or ""
        return values


class StallError(ChatClientError):
    """No line arrived within the inactivity window."""

    kind = "stalled"
    heading = "Stream stalled."
    template = DEFAULT_STALL_ERROR_TEMPLATE

    def __init__(self, timeout_seconds: float, **kwargs: Any) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Stream stalled (no data for {timeout_seconds:g}s)", **kwargs)

    def _template_values(self) -> dict[str, Any]:
        values = super()._template_values()
        values["timeout_seconds"] = f"{self.timeout_seconds:g}"
        return values


class NetworkError(ChatClientError):
    """Connection-level failure (DNS, TLS, reset, payload errors)."""

    kind = "network"
    heading = "Connection error."
    template = DEFAULT_NETWORK_ERROR_TEMPLATE


class StorageError(ChatClientError):
    """Chat history could not be read or written."""

    kind = "storage"
    heading = "Chat history not saved."
    template = DEFAULT_STORAGE_ERROR_TEMPLATE


class ConfigurationError(ChatClientError):
    """Invalid client configuration detected before any request."""

    kind = "configuration"
    heading = "Invalid configuration."


# -----------------------------------------------------------------------------
# Error Helper Functions
# -----------------------------------------------------------------------------

def _extract_openrouter_error_details(body_text: Optional[str]) -> dict[str, Any]:
    """Normalize OpenRouter error payloads into structured metadata."""
    parsed = _safe_json_loads(body_text) if body_text else None
    error_section = parsed.get("error", {}) if isinstance(parsed, dict) else {}
    if not isinstance(error_section, dict):
        error_section = {"message": error_section} if isinstance(error_section, str) else {}
    metadata = error_section.get("metadata", {})
    metadata_dict = metadata if isinstance(metadata, dict) else {}

    request_id = metadata_dict.get("request_id") or (
        parsed.get("request_id") if isinstance(parsed, dict) else None
    )

    return {
        "provider": metadata_dict.get("provider_name") or metadata_dict.get("provider"),
        "openrouter_message": _normalize_optional_str(error_section.get("message")),
        "openrouter_code": error_section.get("code"),
        "request_id": _normalize_optional_str(request_id),
        "raw_body": body_text or "",
        "metadata": metadata_dict,
    }


def _is_capability_error(message: str) -> bool:
    """Return True when a provider message rejects an optional capability."""
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _CAPABILITY_ERROR_MARKERS)


def _build_openrouter_api_error(
    status: int,
    reason: str,
    body_text: Optional[str],
    *,
    requested_model: Optional[str] = None,
    capabilities_requested: Optional[list[str]] = None,
    retry_after: Optional[float] = None,
) -> OpenRouterAPIError:
    """Classify a non-2xx response into the terminal error taxonomy.

    401 maps to :class:`AuthenticationError` and 429 to :class:`RateLimitError`.
    Any other status becomes a :class:`ServerError` carrying the server-provided
    message when the body is JSON, else ``Error: <status> <reason>``; when optional
    capabilities were requested and the message rejects one, the result is a
    :class:`CapabilityUnsupportedError` instead.
    """
    details = _extract_openrouter_error_details(body_text)
    common: dict[str, Any] = {
        "status": status,
        "reason": reason,
        "requested_model": requested_model,
        **details,
    }
    if status == 401:
        return AuthenticationError("Authentication failed: Invalid API key.", **common)
    if status == 429:
        return RateLimitError(
            "Rate limit exceeded. Please try again later.",
            retry_after=retry_after,
            **common,
        )
    message = details.get("openrouter_message") or f"Error: {status} {reason}".strip()
    if capabilities_requested and _is_capability_error(message):
        return CapabilityUnsupportedError(
            message,
            capability=capabilities_requested[0],
            **common,
        )
    return ServerError(message, **common)


def _build_streaming_error(
    error_payload: dict[str, Any],
    *,
    requested_model: Optional[str] = None,
    capabilities_requested: Optional[list[str]] = None,
) -> OpenRouterAPIError:
    """Create an error for an in-band ``{"error": {...}}`` event received mid-stream."""
    code = error_payload.get("code")
    status = code if isinstance(code, int) and 400 <= code <= 599 else 502
    message = _normalize_optional_str(error_payload.get("message")) or "Provider error during stream"
    metadata = error_payload.get("metadata")
    body = {"error": {"message": message, "code": code, "metadata": metadata if isinstance(metadata, dict) else {}}}
    error = _build_openrouter_api_error(
        status,
        "Stream error",
        json.dumps(body),
        requested_model=requested_model,
        capabilities_requested=capabilities_requested,
    )
    error.is_streaming_error = True
    return error
