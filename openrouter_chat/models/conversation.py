"""Conversation data model.

- ContentPart: tagged union of text / image_url / video_url / audio_url parts
- ConversationMessage: one immutable chat turn
- ProcessedFile: pre-extracted attachment text
- SavedChat: persisted conversation with its persona
"""

from __future__ import annotations

import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..core.config import Persona

MessageRole = Literal["system", "user", "assistant"]

IMAGES_OMITTED_NOTE = "[This message contained images that are not shown in the history]"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class MediaURL(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    detail: Literal["high", "low", "auto"] = "auto"


class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str
    cache_control: Optional[dict[str, str]] = None


class ImageURLPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["image_url"] = "image_url"
    image_url: MediaURL


class VideoURLPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["video_url"] = "video_url"
    video_url: MediaURL


class AudioURLPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["audio_url"] = "audio_url"
    audio_url: MediaURL


ContentPart = Annotated[
    Union[TextPart, ImageURLPart, VideoURLPart, AudioURLPart],
    Field(discriminator="type"),
]
MessageContent = Union[str, list[ContentPart]]

_MEDIA_PART_TYPES = (ImageURLPart, VideoURLPart, AudioURLPart)


class ConversationMessage(BaseModel):
    """One chat turn. Immutable once constructed."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: MessageRole
    content: MessageContent
    reasoning: Optional[str] = None
    timestamp: datetime.datetime = Field(default_factory=_utcnow)
    file_contents: Optional[str] = None
    file_names: Optional[list[str]] = None
    reasoning_visible: Optional[bool] = None
    is_generating_image: Optional[bool] = None
    image_prompt: Optional[str] = None

    def text_parts(self) -> list[str]:
        if isinstance(self.content, str):
            return [self.content]
        return [part.text for part in self.content if isinstance(part, TextPart)]

    def text(self) -> str:
        """Text parts joined by newlines."""
        return "\n".join(self.text_parts())

    def has_images(self) -> bool:
        return not isinstance(self.content, str) and any(
            isinstance(part, ImageURLPart) for part in self.content
        )

    def has_media(self) -> bool:
        """True when any image, video or audio part is present."""
        return not isinstance(self.content, str) and any(
            isinstance(part, _MEDIA_PART_TYPES) for part in self.content
        )

    def wire_content(self, *, flatten: bool = False) -> Any:
        """Content in chat-completions wire form.

        With ``flatten`` multi-part content becomes plain text, noting omitted images.
        """
        if isinstance(self.content, str):
            return self.content
        if flatten:
            text = self.text()
            return f"{text}\n{IMAGES_OMITTED_NOTE}" if self.has_images() else text
        return [part.model_dump(exclude_none=True) for part in self.content]

    def to_wire(self, *, flatten: bool = False) -> dict[str, Any]:
        return {"role": self.role, "content": self.wire_content(flatten=flatten)}


class ProcessedFile(BaseModel):
    """Attachment whose text was extracted before the turn was sent."""

    model_config = ConfigDict(frozen=True)

    name: str
    content: str


class SavedChat(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    messages: list[ConversationMessage] = Field(default_factory=list)
    last_updated: datetime.datetime = Field(default_factory=_utcnow)
    bot: Optional[Persona] = None
