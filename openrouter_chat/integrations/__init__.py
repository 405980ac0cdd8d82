"""Provider-specific integrations."""

from .prompt_caching import apply_prompt_caching, estimate_tokens, should_insert_cache_control

__all__ = ["apply_prompt_caching", "estimate_tokens", "should_insert_cache_control"]
