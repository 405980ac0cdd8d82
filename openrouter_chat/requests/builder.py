"""Request builder: conversation history to chat-completions wire body.

Assembles, in order:
1. the system directive (custom persona or default prompt)
2. one system entry with file context (current attachments plus files recovered
   from history)
3. the history, flattened to text when the turn does not use a vision model
4. the new user message

Then selects the model (vision / ``:online``), the max-token budget and the web
plugin, and adds prompt-cache breakpoints for models that use them.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from ..core.config import ChatSettings, Persona
from ..integrations.prompt_caching import apply_prompt_caching
from ..models.conversation import ConversationMessage, ProcessedFile
from ..models.registry import ModelFamily
from .personas import resolve_system_directive

LOGGER = logging.getLogger(__name__)

WEB_PLUGIN_ID = "web"


@dataclass(frozen=True)
class ChatRequest:
    """A built request: the wire body plus how it was derived."""

    body: dict[str, Any]
    model: str
    uses_vision: bool = False
    web_search: bool = False
    plugins: list[dict[str, Any]] = field(default_factory=list)


# -----------------------------------------------------------------------------
# File context
# -----------------------------------------------------------------------------


def format_file_contents(files: Iterable[ProcessedFile]) -> str:
    """Serialize attachments into the ``===== FILE: <name> =====`` block format."""
    return "\n".join(f"===== FILE: {f.name} =====\n\n{f.content}\n\n" for f in files)


def _extract_file_block(file_contents: str, name: str) -> Optional[str]:
    pattern = re.compile(
        rf"===== FILE: {re.escape(name)} =====\n\n(.*?)(?:\n\n===== FILE:|\Z)",
        re.DOTALL,
    )
    match = pattern.search(file_contents)
    if match and match.group(1):
        return match.group(1)
    return None


def collect_file_attachments_from_history(
    messages: Sequence[ConversationMessage],
) -> tuple[list[str], str]:
    """Return ``(names, combined_contents)`` of files shared earlier, deduplicated by name."""
    found: dict[str, str] = {}
    for message in messages:
        if not message.file_contents or not message.file_names:
            continue
        for name in message.file_names:
            if name in found:
                continue
            content = _extract_file_block(message.file_contents, name)
            if content:
                found[name] = content
    combined = "".join(f"===== FILE: {name} =====\n\n{content}\n\n" for name, content in found.items())
    return list(found), combined


def build_file_context(
    user_message: ConversationMessage,
    history: Sequence[ConversationMessage],
) -> str:
    """Return the file-context system text, or "" when no files are in play."""
    context = ""
    if user_message.file_contents and user_message.file_names:
        current = ", ".join(user_message.file_names)
        context += (
            f"The user has uploaded the following files: {current}. "
            f"Here are the contents:\n\n{user_message.file_contents}"
        )
    previous = [m for m in history if m.id != user_message.id]
    names, contents = collect_file_attachments_from_history(previous)
    if names:
        if context:
            context += "\n\n"
        context += (
            f"The user has previously shared these files: {', '.join(names)}. "
            f"Here are their contents:\n\n{contents}"
        )
    return context


# -----------------------------------------------------------------------------
# Message list
# -----------------------------------------------------------------------------


def prepare_api_messages(
    user_message: ConversationMessage,
    history: Sequence[ConversationMessage],
    settings: ChatSettings,
    *,
    use_vision: bool,
    persona: Optional[Persona] = None,
) -> list[dict[str, Any]]:
    """Return the ordered wire messages for one turn.

    System messages stored in ``history`` are never sent; the directive is
    always rebuilt from the active persona or the default prompt.
    """
    api_messages: list[dict[str, Any]] = [
        {"role": "system", "content": resolve_system_directive(settings, persona)}
    ]
    file_context = build_file_context(user_message, history)
    if file_context:
        api_messages.append({"role": "system", "content": file_context})
    for message in history:
        if message.role == "system" or message.id == user_message.id:
            continue
        api_messages.append(message.to_wire(flatten=not use_vision))
    api_messages.append(user_message.to_wire())
    return api_messages


# -----------------------------------------------------------------------------
# Request body
# -----------------------------------------------------------------------------


def select_model(
    settings: ChatSettings,
    *,
    model: Optional[str] = None,
    use_vision: bool = False,
    web_search: bool = False,
) -> str:
    """Vision model for image turns, ``:online`` slug for web search, else the configured model."""
    current = model or settings.MODEL
    if use_vision:
        return ModelFamily.vision_model_for(current, settings.VISION_MODEL)
    if web_search:
        return ModelFamily.online_slug(current)
    return current


def web_plugins(settings: ChatSettings) -> list[dict[str, Any]]:
    plugin: dict[str, Any] = {"id": WEB_PLUGIN_ID}
    if settings.WEB_SEARCH_MAX_RESULTS:
        plugin["max_results"] = settings.WEB_SEARCH_MAX_RESULTS
    return [plugin]


def build_request_body(
    messages: list[dict[str, Any]],
    model: str,
    settings: ChatSettings,
    *,
    plugins: Optional[list[dict[str, Any]]] = None,
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
    stream: bool = True,
) -> dict[str, Any]:
    """Return the wire body with prompt caching applied to ``messages``."""
    body: dict[str, Any] = {
        "model": model,
        "messages": apply_prompt_caching(
            messages,
            model,
            max_breakpoints=settings.PROMPT_CACHE_MAX_BREAKPOINTS,
            token_threshold=settings.PROMPT_CACHE_TOKEN_THRESHOLD,
        ),
        "temperature": settings.TEMPERATURE if temperature is None else temperature,
        "max_tokens": max_tokens or ModelFamily.max_completion_tokens(model, settings.MAX_TOKENS),
    }
    if stream:
        body["stream"] = True
    body["usage"] = {"include": True}
    if plugins:
        body["plugins"] = plugins
    return body


def build_chat_request(
    user_message: ConversationMessage,
    history: Sequence[ConversationMessage],
    settings: ChatSettings,
    *,
    model: Optional[str] = None,
    web_search: bool = False,
    persona: Optional[Persona] = None,
) -> ChatRequest:
    """Build the streamed request for ``user_message`` following ``history``."""
    use_vision = user_message.has_media()
    messages = prepare_api_messages(
        user_message,
        history,
        settings,
        use_vision=use_vision,
        persona=persona,
    )
    selected = select_model(settings, model=model, use_vision=use_vision, web_search=web_search)
    plugins = web_plugins(settings) if web_search else []
    body = build_request_body(messages, selected, settings, plugins=plugins)
    LOGGER.debug(
        "Built chat request: model=%s messages=%d vision=%s web_search=%s",
        selected,
        len(messages),
        use_vision,
        web_search,
    )
    return ChatRequest(
        body=body,
        model=selected,
        uses_vision=use_vision,
        web_search=web_search,
        plugins=plugins,
    )
