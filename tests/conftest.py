"""Test configuration helpers for unit tests."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from openrouter_chat.core.config import ChatSettings


class ManualScheduler:
    """Frame scheduler driven by the test instead of the event loop."""

    def __init__(self) -> None:
        self.pending: dict[int, Callable[[], None]] = {}
        self.scheduled = 0
        self.cancelled = 0
        self._next = 0

    def schedule(self, callback: Callable[[], None]) -> int:
        self._next += 1
        self.pending[self._next] = callback
        self.scheduled += 1
        return self._next

    def cancel(self, handle: Any) -> None:
        if self.pending.pop(handle, None) is not None:
            self.cancelled += 1

    def run_frame(self) -> None:
        callbacks = list(self.pending.values())
        self.pending.clear()
        for callback in callbacks:
            callback()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in (
        "OPENROUTER_API_KEY",
        "OPENROUTER_CHAT_SECRET_KEY",
        "OPENROUTER_CHAT_USE_PROXY",
        "OPENROUTER_API_BASE_URL",
        "OPENROUTER_CHAT_DB_URL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> ChatSettings:
    return ChatSettings(
        API_KEY="sk-test",
        RETRY_DELAY_SECONDS=0,
        STREAM_INACTIVITY_TIMEOUT_SECONDS=5,
    )


@pytest.fixture
def manual_scheduler() -> ManualScheduler:
    return ManualScheduler()
