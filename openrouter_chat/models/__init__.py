"""Model domain: conversation data model and model identifier helpers."""

from .conversation import (
    AudioURLPart,
    ContentPart,
    ConversationMessage,
    ImageURLPart,
    MediaURL,
    MessageContent,
    ProcessedFile,
    SavedChat,
    TextPart,
    VideoURLPart,
)
from .registry import ModelFamily, ProviderFamily

__all__ = [
    "AudioURLPart",
    "ContentPart",
    "ConversationMessage",
    "ImageURLPart",
    "MediaURL",
    "MessageContent",
    "ProcessedFile",
    "SavedChat",
    "TextPart",
    "VideoURLPart",
    "ModelFamily",
    "ProviderFamily",
]
