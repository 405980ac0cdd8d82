"""Prompt caching integration.

Anthropic and Gemini models routed through OpenRouter honor explicit
``cache_control`` breakpoints on large text parts; other providers cache
implicitly and receive no markers.
"""

from __future__ import annotations

import copy
import logging
import math
from typing import Any, Optional

from ..models.registry import ModelFamily, ProviderFamily

LOGGER = logging.getLogger(__name__)

MAX_CACHE_BREAKPOINTS = 4
CACHE_TOKEN_THRESHOLD = 4096

_EXPLICIT_CACHE_FAMILIES = frozenset({ProviderFamily.ANTHROPIC, ProviderFamily.GEMINI})


def estimate_tokens(text: str) -> int:
    """Approximate token count: characters / 4, rounded up."""
    return math.ceil(len(text) / 4)


def should_insert_cache_control(model_id: str) -> bool:
    return ModelFamily.provider_family(model_id) in _EXPLICIT_CACHE_FAMILIES


def cache_token_threshold(model_id: str, default: int = CACHE_TOKEN_THRESHOLD) -> Optional[int]:
    """Minimum estimated tokens for a breakpoint, or None when the family caches implicitly."""
    if not should_insert_cache_control(model_id):
        return None
    return default


def _breakpoint_candidate(content: Any, threshold: int) -> Optional[tuple[Optional[int], int]]:
    """Return ``(part_index, size)`` for the one segment of a message that may be marked.

    ``part_index`` is None when the whole string content is the segment. For
    multi-part content the last eligible text part wins.
    """
    if isinstance(content, str):
        if estimate_tokens(content) >= threshold:
            return None, len(content)
        return None
    if not isinstance(content, list):
        return None
    for idx in range(len(content) - 1, -1, -1):
        part = content[idx]
        if not isinstance(part, dict) or part.get("type") != "text":
            continue
        text = part.get("text")
        if isinstance(text, str) and estimate_tokens(text) >= threshold:
            return idx, len(text)
    return None


def apply_prompt_caching(
    messages: list[dict[str, Any]],
    model_id: str,
    *,
    max_breakpoints: int = MAX_CACHE_BREAKPOINTS,
    token_threshold: int = CACHE_TOKEN_THRESHOLD,
) -> list[dict[str, Any]]:
    """Return ``messages`` with ``cache_control`` breakpoints added where worthwhile.

    At most one breakpoint per message and ``max_breakpoints`` per request; when
    more messages qualify, the largest segments are kept (earlier wins a tie).
    String contents that receive a breakpoint become a one-part text array. The
    input list and its messages are never mutated.
    """
    threshold = cache_token_threshold(model_id, token_threshold)
    if threshold is None or max_breakpoints <= 0:
        return list(messages)

    candidates: list[tuple[int, Optional[int], int]] = []
    for msg_idx, message in enumerate(messages):
        found = _breakpoint_candidate(message.get("content"), threshold)
        if found is not None:
            part_idx, size = found
            candidates.append((msg_idx, part_idx, size))

    selected = sorted(candidates, key=lambda c: (-c[2], c[0]))[:max_breakpoints]
    if not selected:
        return list(messages)

    result = list(messages)
    for msg_idx, part_idx, _size in selected:
        message = dict(messages[msg_idx])
        content = message.get("content")
        if part_idx is None:
            message["content"] = [
                {"type": "text", "text": content, "cache_control": {"type": "ephemeral"}}
            ]
        else:
            parts = copy.deepcopy(content)
            parts[part_idx]["cache_control"] = {"type": "ephemeral"}
            message["content"] = parts
        result[msg_idx] = message
    LOGGER.debug("Added %d prompt cache breakpoint(s) for model %s", len(selected), model_id)
    return result
