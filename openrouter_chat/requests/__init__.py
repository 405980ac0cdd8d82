"""Request domain: wire body assembly and persona directives."""

from .builder import (
    ChatRequest,
    build_chat_request,
    build_request_body,
    collect_file_attachments_from_history,
    format_file_contents,
    prepare_api_messages,
    select_model,
)
from .personas import enhance_persona_instructions, resolve_system_directive

__all__ = [
    "ChatRequest",
    "build_chat_request",
    "build_request_body",
    "collect_file_attachments_from_history",
    "format_file_contents",
    "prepare_api_messages",
    "select_model",
    "enhance_persona_instructions",
    "resolve_system_directive",
]
