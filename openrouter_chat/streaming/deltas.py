"""Delta interpretation for chat completion stream payloads.

Each ``data`` frame payload is one JSON chat-completion chunk. This module maps
it onto a :class:`StreamEvent`:
- ``choices[0].delta.content``   -> content chunk
- ``choices[0].delta.reasoning`` -> reasoning chunk
- top-level ``usage``            -> usage snapshot
- top-level ``error``            -> in-band provider error

Malformed payloads become ``ignorable`` events; nothing here raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Literal, Optional

LOGGER = logging.getLogger(__name__)

StreamEventKind = Literal["delta", "terminator", "ignorable", "error"]


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """Ephemeral interpretation of one stream payload."""

    kind: StreamEventKind
    content_chunk: Optional[str] = None
    reasoning_chunk: Optional[str] = None
    usage: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None


TERMINATOR = StreamEvent("terminator")
IGNORABLE = StreamEvent("ignorable")


def _non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def interpret_payload(payload: str) -> StreamEvent:
    """Return the StreamEvent carried by one SSE ``data`` payload."""
    if payload.strip() == "[DONE]":
        return TERMINATOR
    try:
        parsed = json.loads(payload)
    except (TypeError, ValueError) as exc:
        LOGGER.debug("Skipping non-JSON stream payload (%s): %.80r", exc, payload)
        return IGNORABLE
    if not isinstance(parsed, dict):
        LOGGER.debug("Skipping non-object stream payload: %.80r", payload)
        return IGNORABLE

    error = parsed.get("error")
    if isinstance(error, dict):
        return StreamEvent("error", error=error)
    if isinstance(error, str) and error:
        return StreamEvent("error", error={"message": error})

    content_chunk: Optional[str] = None
    reasoning_chunk: Optional[str] = None
    choices = parsed.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta")
        if isinstance(delta, dict):
            content_chunk = _non_empty_str(delta.get("content"))
            reasoning_chunk = _non_empty_str(delta.get("reasoning"))

    usage = parsed.get("usage")
    usage_snapshot = usage if isinstance(usage, dict) and usage else None

    if content_chunk is None and reasoning_chunk is None and usage_snapshot is None:
        return IGNORABLE
    return StreamEvent(
        "delta",
        content_chunk=content_chunk,
        reasoning_chunk=reasoning_chunk,
        usage=usage_snapshot,
    )
