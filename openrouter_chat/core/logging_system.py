"""Logging system with request-scoped log capture.

This module handles all logging-related functionality:
- SessionLogger: per-request logger with context-aware buffering
- Log event classification and formatting
- Explicit cleanup of request buffers

The SessionLogger uses contextvars to track request_id and chat_id, enabling
per-request log isolation and structured event capture without threading
identifiers through every call.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
from collections import deque
from contextvars import ContextVar
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# SessionLogger Class
# -----------------------------------------------------------------------------

class _SessionBufferHandler(logging.Handler):
    """Handler that forwards records to :meth:`SessionLogger.process_record`."""

    def emit(self, record: logging.LogRecord) -> None:
        SessionLogger.process_record(record)


class SessionLogger:
    """Per-request logger that writes to stdout and an in-memory log buffer.

    The logger tracks two identifiers via contextvars:
    - request_id: per-request unique id used to key the in-memory log buffer.
    - chat_id:    the saved chat the request belongs to.

    Cleanup is explicit: the chat controller calls ``cleanup`` once a turn ends
    so there is no background task pruning logs.

    Attributes:
        request_id: ContextVar storing the per-request buffer key.
        chat_id:    ContextVar storing the chat identifier.
        log_level:  ContextVar storing the minimum level to print for this request.
        logs:       Map of request_id -> fixed-size deque of structured log events.
    """

    request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
    chat_id: ContextVar[Optional[str]] = ContextVar("chat_id", default=None)
    log_level: ContextVar[int] = ContextVar("log_level", default=logging.INFO)
    package: str = "openrouter_chat"
    max_lines: int = 2000
    logs: Dict[str, deque[dict[str, Any]]] = {}
    _last_seen: Dict[str, float] = {}
    _state_lock = threading.Lock()
    _console_formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @staticmethod
    def _classify_event_type(message: str) -> str:
        msg = (message or "").lstrip()
        if msg.startswith("OpenRouter request headers:"):
            return "openrouter.request.headers"
        if msg.startswith("OpenRouter request payload:"):
            return "openrouter.request.payload"
        if msg.startswith("Retrying"):
            return "openrouter.retry"
        return "chat"

    @classmethod
    def _build_event(cls, record: logging.LogRecord) -> dict[str, Any]:
        """Return a structured log event extracted from a LogRecord."""
        message = record.getMessage()
        event: dict[str, Any] = {
            "created": float(record.created),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", None),
            "chat_id": getattr(record, "chat_id", None),
            "event_type": cls._classify_event_type(message),
            "func": record.funcName,
            "lineno": record.lineno,
            "message": message,
        }
        if record.exc_text:
            event["exception"] = {"text": record.exc_text}
        elif record.exc_info:
            event["exception"] = {"text": "".join(traceback.format_exception(*record.exc_info))}
        return event

    @classmethod
    def format_event_as_text(cls, event: dict[str, Any]) -> str:
        """Text rendering for debug dumps."""
        created = float(event.get("created") or time.time())
        base = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(created))
        msecs = int((created - int(created)) * 1000)
        level = str(event.get("level") or "INFO")
        chat = str(event.get("chat_id") or "-")
        return f"{base},{msecs:03d} [{level}] [chat={chat}] {event.get('message') or ''}"

    @classmethod
    def _attach_context(cls, record: logging.LogRecord) -> bool:
        """Attach request metadata and the per-request console level."""
        record.request_id = cls.request_id.get()
        record.chat_id = cls.chat_id.get()
        record.session_log_level = cls.log_level.get()
        return True

    @classmethod
    def get_logger(cls, name: str = __name__) -> logging.Logger:
        """Return the logger for ``name`` with the package wired to the session buffer.

        The session handler is installed once on the ``openrouter_chat`` package
        logger, so every module-level ``LOGGER`` in the package reaches stdout
        and the in-memory ``SessionLogger.logs`` buffer through propagation.

        Args:
            name: Logger name; defaults to the current module name.

        Returns:
            logging.Logger: ``logging.getLogger(name)``.
        """
        package_logger = logging.getLogger(cls.package)
        with cls._state_lock:
            if not any(isinstance(h, _SessionBufferHandler) for h in package_logger.handlers):
                handler = _SessionBufferHandler()
                handler.addFilter(cls._attach_context)
                package_logger.addHandler(handler)
                package_logger.setLevel(logging.DEBUG)
                package_logger.propagate = False
        return logging.getLogger(name)

    @classmethod
    def set_max_lines(cls, value: int) -> None:
        """Set the maximum in-memory lines retained per request."""
        cls.max_lines = max(100, min(200000, int(value)))

    @classmethod
    def process_record(cls, record: logging.LogRecord) -> None:
        session_log_level = getattr(record, "session_log_level", logging.INFO)
        if record.levelno >= int(session_log_level):
            sys.stdout.write(cls._console_formatter.format(record) + "\n")
            sys.stdout.flush()
        request_id = getattr(record, "request_id", None)
        if not request_id:
            return
        event = cls._build_event(record)
        with cls._state_lock:
            buffer = cls.logs.get(request_id)
            if buffer is None or buffer.maxlen != cls.max_lines:
                buffer = deque(buffer or (), maxlen=cls.max_lines)
                cls.logs[request_id] = buffer
            buffer.append(event)
            cls._last_seen[request_id] = time.time()

    @classmethod
    def events(cls, request_id: str) -> list[dict[str, Any]]:
        """Return a copy of the buffered events for ``request_id``."""
        with cls._state_lock:
            return list(cls.logs.get(request_id, ()))

    @classmethod
    def cleanup(cls, request_id: Optional[str] = None, *, max_age_seconds: float = 3600) -> None:
        """Drop the buffer for ``request_id``, plus any buffer idle past ``max_age_seconds``."""
        cutoff = time.time() - max_age_seconds
        with cls._state_lock:
            stale = [rid for rid, ts in cls._last_seen.items() if ts < cutoff]
            if request_id:
                stale.append(request_id)
            for rid in stale:
                cls.logs.pop(rid, None)
                cls._last_seen.pop(rid, None)
