"""Server-Sent Events (SSE) frame decoding.

This module turns the raw byte stream of a chat completion response into frames:
- Line splitting on LF with an optional trailing CR (CRLF and LF both accepted)
- Multi-line ``data:`` accumulation until a blank line
- ``[DONE]`` terminator detection
- Comment (keep-alive) lines

Decoding is incremental: bytes may be split at any position, including inside a
multi-byte UTF-8 sequence, because text decoding happens per complete line.
Malformed input never raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Optional

LOGGER = logging.getLogger(__name__)

_DONE_SENTINEL = "[DONE]"

FrameKind = Literal["data", "done", "comment"]


@dataclass(frozen=True, slots=True)
class SSEFrame:
    """One decoded unit of the event stream.

    ``data`` frames carry the joined payload text; ``done`` marks the ``[DONE]``
    terminator; ``comment`` is a keep-alive line such as ``: OPENROUTER PROCESSING``.
    """

    kind: FrameKind
    data: Optional[str] = None


class SSEFrameDecoder:
    """Incremental SSE decoder fed with arbitrary byte chunks.

    ``line_count`` increases by one for every complete line consumed (data,
    comment, other field or blank) so callers can treat any received line as
    liveness for their inactivity watchdog.
    """

    def __init__(self) -> None:
        self._buf = bytearray()
        self._event_data_parts: list[str] = []
        self.line_count = 0
        self.finished = False

    def feed(self, chunk: bytes) -> list[SSEFrame]:
        """Consume ``chunk`` and return the frames completed by it, in order.

        Once a ``done`` frame has been produced the decoder ignores further input.
        """
        if self.finished or not chunk:
            return []
        self._buf.extend(chunk)
        frames: list[SSEFrame] = []
        start_idx = 0
        while True:
            newline_idx = self._buf.find(b"\n", start_idx)
            if newline_idx == -1:
                break
            raw_line = bytes(self._buf[start_idx:newline_idx])
            start_idx = newline_idx + 1
            frame = self._process_line(raw_line)
            if frame is None:
                continue
            frames.append(frame)
            if frame.kind == "done":
                self.finished = True
                self._buf.clear()
                return frames
        if start_idx > 0:
            del self._buf[:start_idx]
        return frames

    def finish(self) -> list[SSEFrame]:
        """Signal end of stream.

        A trailing partial line and any ``data:`` lines not closed by a blank
        line are discarded.
        """
        if self._buf or self._event_data_parts:
            LOGGER.debug(
                "Discarding unterminated SSE input at end of stream (%d bytes, %d data lines)",
                len(self._buf),
                len(self._event_data_parts),
            )
        self._buf.clear()
        self._event_data_parts.clear()
        self.finished = True
        return []

    def _process_line(self, raw_line: bytes) -> Optional[SSEFrame]:
        self.line_count += 1
        if raw_line.endswith(b"\r"):
            raw_line = raw_line[:-1]
        line = raw_line.decode("utf-8", errors="replace")

        # Empty line = event boundary
        if not line:
            if not self._event_data_parts:
                return None
            data = "\n".join(self._event_data_parts)
            self._event_data_parts.clear()
            if data == _DONE_SENTINEL:
                return SSEFrame("done")
            return SSEFrame("data", data)

        if line.startswith(":"):
            return SSEFrame("comment")

        if line.startswith("data:"):
            value = line[6:] if line.startswith("data: ") else line[5:]
            self._event_data_parts.append(value)
            return None

        # event:, id:, retry: and unknown fields carry no payload.
        return None
