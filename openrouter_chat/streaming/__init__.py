"""Streaming pipeline: frame decoding, delta interpretation, session and aggregation."""

from .aggregator import (
    FrameScheduler,
    LoopFrameScheduler,
    StreamingAggregator,
    StreamingSnapshot,
    StreamingState,
)
from .deltas import StreamEvent, interpret_payload
from .session import (
    SessionState,
    StreamCallbacks,
    StreamController,
    StreamSession,
    build_request_headers,
    complete_chat,
    stream_chat,
)
from .sse_parser import SSEFrame, SSEFrameDecoder

__all__ = [
    "FrameScheduler",
    "LoopFrameScheduler",
    "StreamingAggregator",
    "StreamingSnapshot",
    "StreamingState",
    "StreamEvent",
    "interpret_payload",
    "SessionState",
    "StreamCallbacks",
    "StreamController",
    "StreamSession",
    "build_request_headers",
    "complete_chat",
    "stream_chat",
    "SSEFrame",
    "SSEFrameDecoder",
]
