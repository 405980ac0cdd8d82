"""Streaming aggregator: coalesced UI snapshots and the finalized assistant message.

Content chunks are buffered and published at most once per frame through a
:class:`FrameScheduler`; reasoning chunks are published immediately. On
completion the buffers are frozen into an immutable :class:`ConversationMessage`.

The aggregator runs on the event loop thread only; it holds no locks.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from ..core.errors import ChatClientError
from ..core.utils import generate_id
from ..models.conversation import ConversationMessage
from .session import StreamCallbacks, StreamController

LOGGER = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL_MS = 16

# -----------------------------------------------------------------------------
# Frame scheduling
# -----------------------------------------------------------------------------


class FrameScheduler(Protocol):
    """Schedules a callback for the next display frame."""

    def schedule(self, callback: Callable[[], None]) -> Any: ...

    def cancel(self, handle: Any) -> None: ...


class LoopFrameScheduler:
    """Frame scheduler on the running asyncio loop (one frame ~= 16 ms)."""

    def __init__(self, interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS) -> None:
        self.interval = max(0, interval_ms) / 1000

    def schedule(self, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(self.interval, callback)

    def cancel(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()


# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamingSnapshot:
    """Immutable projection of the in-flight message handed to the UI."""

    message_id: str
    content: str
    reasoning: str
    reasoning_visible: bool


@dataclass
class StreamingState:
    message_id: str
    content: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    reasoning_visible: bool = False
    completed: bool = False

    def snapshot(self) -> StreamingSnapshot:
        return StreamingSnapshot(
            message_id=self.message_id,
            content="".join(self.content),
            reasoning="".join(self.reasoning),
            reasoning_visible=self.reasoning_visible,
        )


# -----------------------------------------------------------------------------
# Aggregator
# -----------------------------------------------------------------------------


class StreamingAggregator:
    """Owns the StreamingState of one in-flight session."""

    def __init__(
        self,
        *,
        on_snapshot: Callable[[StreamingSnapshot], None],
        on_message: Callable[[ConversationMessage], None],
        on_error: Optional[Callable[[ChatClientError], None]] = None,
        on_usage: Optional[Callable[[dict[str, Any]], None]] = None,
        scheduler: Optional[FrameScheduler] = None,
        flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS,
    ) -> None:
        self.on_snapshot = on_snapshot
        self.on_message = on_message
        self.on_error = on_error
        self.on_usage = on_usage
        self.scheduler: FrameScheduler = scheduler or LoopFrameScheduler(flush_interval_ms)
        self.state: Optional[StreamingState] = None
        self.controller: Optional[StreamController] = None
        self._pending: Any = None
        self._last_published: Optional[StreamingSnapshot] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin(self, message_id: Optional[str] = None) -> StreamingSnapshot:
        """Start a new in-flight message and publish its empty placeholder."""
        if self.state is not None and not self.state.completed:
            raise RuntimeError("A stream is already in flight")
        self.state = StreamingState(message_id=message_id or generate_id("assistant-"))
        self.controller = None
        self._pending = None
        self._last_published = None
        self._publish()
        return self.state.snapshot()

    @property
    def active(self) -> bool:
        return self.state is not None and not self.state.completed

    def callbacks(self) -> StreamCallbacks:
        """Callbacks wiring a stream session into this aggregator."""
        return StreamCallbacks(
            on_chunk=self.handle_chunk,
            on_complete=self.handle_complete,
            on_error=self.handle_error,
            on_reasoning_chunk=self.handle_reasoning_chunk,
            on_usage=self.handle_usage,
            on_controller=self.bind_controller,
        )

    def bind_controller(self, controller: StreamController) -> None:
        self.controller = controller

    # ------------------------------------------------------------------
    # Session callbacks
    # ------------------------------------------------------------------

    def handle_chunk(self, chunk: str) -> None:
        state = self.state
        if state is None or state.completed:
            return
        state.content.append(chunk)
        state.reasoning_visible = False
        if self._pending is None:
            self._pending = self.scheduler.schedule(self._on_frame)

    def handle_reasoning_chunk(self, chunk: str) -> None:
        state = self.state
        if state is None or state.completed:
            return
        state.reasoning.append(chunk)
        state.reasoning_visible = True
        self._publish()

    def handle_usage(self, usage: dict[str, Any]) -> None:
        state = self.state
        if state is None or state.completed:
            return
        if self.on_usage is not None:
            self.on_usage(usage)

    def handle_complete(self) -> None:
        state = self.state
        if state is None or state.completed:
            return
        state.completed = True
        self._cancel_pending()
        self._publish()
        reasoning = "".join(state.reasoning)
        message = ConversationMessage(
            id=generate_id("assistant-"),
            role="assistant",
            content="".join(state.content),
            reasoning=reasoning or None,
            reasoning_visible=False,
        )
        self._clear()
        LOGGER.debug("Stream finalized as %s (%d chars)", message.id, len(message.text()))
        self.on_message(message)

    def handle_error(self, error: ChatClientError) -> None:
        state = self.state
        if state is None or state.completed:
            return
        state.completed = True
        self._cancel_pending()
        self._clear()
        if self.on_error is not None:
            self.on_error(error)

    def set_reasoning_visible(self, visible: bool) -> None:
        """User toggle of the reasoning panel of the in-flight message."""
        state = self.state
        if state is None or state.completed:
            return
        state.reasoning_visible = visible
        self._publish()

    def cancel(self) -> None:
        """Stop the in-flight stream: no message and no error are produced."""
        state = self.state
        controller = self.controller
        if state is not None and not state.completed:
            state.completed = True
            self._cancel_pending()
            self._clear()
        if controller is not None:
            controller.cancel()

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def snapshot(self) -> Optional[StreamingSnapshot]:
        """Current projection of the in-flight message, or None when idle."""
        return self.state.snapshot() if self.state is not None else None

    def flush(self) -> None:
        """Publish the current projection now if it changed since the last publish."""
        self._cancel_pending()
        self._publish()

    def _on_frame(self) -> None:
        self._pending = None
        if self.state is None or self.state.completed:
            return
        self._publish()

    def _publish(self) -> None:
        state = self.state
        if state is None:
            return
        snapshot = state.snapshot()
        if snapshot == self._last_published:
            return
        self._last_published = snapshot
        self.on_snapshot(snapshot)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self.scheduler.cancel(self._pending)
            self._pending = None

    def _clear(self) -> None:
        self.state = None
        self.controller = None
        self._last_published = None
