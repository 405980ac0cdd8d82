"""Model identifier helpers.

- ProviderFamily: provider family classification used by prompt caching
- ModelFamily: per-model overrides (max tokens, vision routing, online slugs)
"""

from __future__ import annotations

import enum
import logging
import re
from typing import Any, Dict

LOGGER = logging.getLogger(__name__)

_ONLINE_SUFFIX = ":online"
_OPENAI_REASONING_RE = re.compile(r"^o\d")


class ProviderFamily(str, enum.Enum):
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OPENAI = "openai"
    GROK = "grok"
    DEEPSEEK = "deepseek"
    OTHER = "other"


class ModelFamily:
    """
    One place for per-model overrides keyed on the OpenRouter model id.
    """

    _MODEL_SPECS: Dict[str, Dict[str, Any]] = {
        "z-ai/glm-4.5v": {"max_tokens": 16000, "context_window": 64000, "vision": True},
        "z-ai/glm-4.5": {"max_tokens": 8192, "context_window": 64000},
        "z-ai/glm-4.5-air:free": {"max_tokens": 8192, "context_window": 64000},
    }

    @classmethod
    def _norm(cls, model_id: str) -> str:
        return (model_id or "").strip().lower()

    @classmethod
    def base_model(cls, model_id: str) -> str:
        """Model id without the ``:online`` suffix."""
        norm = cls._norm(model_id)
        if norm.endswith(_ONLINE_SUFFIX):
            return norm[: -len(_ONLINE_SUFFIX)]
        return norm

    @classmethod
    def provider_family(cls, model_id: str) -> ProviderFamily:
        """Classify ``model_id`` into the provider family that decides caching behavior."""
        m = cls._norm(model_id)
        if "claude" in m or m.startswith("anthropic/"):
            return ProviderFamily.ANTHROPIC
        if "gemini" in m or m.startswith("google/"):
            return ProviderFamily.GEMINI
        bare = m.split("/", 1)[-1]
        if "gpt" in m or m.startswith("openai/") or _OPENAI_REASONING_RE.match(bare):
            return ProviderFamily.OPENAI
        if "grok" in m or m.startswith("x-ai/"):
            return ProviderFamily.GROK
        if "deepseek" in m:
            return ProviderFamily.DEEPSEEK
        return ProviderFamily.OTHER

    @classmethod
    def max_completion_tokens(cls, model_id: str, default: int) -> int:
        """Per-model completion budget, else ``default``."""
        spec = cls._MODEL_SPECS.get(cls.base_model(model_id)) or {}
        return int(spec.get("max_tokens") or default)

    @classmethod
    def supports_vision(cls, model_id: str) -> bool:
        spec = cls._MODEL_SPECS.get(cls.base_model(model_id)) or {}
        return bool(spec.get("vision"))

    @classmethod
    def vision_model_for(cls, model_id: str, default_vision_model: str) -> str:
        """Model to use for a turn that carries images."""
        if cls.supports_vision(model_id):
            return model_id
        return default_vision_model

    @classmethod
    def online_slug(cls, model_id: str) -> str:
        """Append ``:online`` once, enabling OpenRouter's web search routing."""
        slug = (model_id or "").strip()
        if slug.endswith(_ONLINE_SUFFIX):
            return slug
        return f"{slug}{_ONLINE_SUFFIX}"
