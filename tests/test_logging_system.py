from __future__ import annotations

import logging
import time

import pytest

from openrouter_chat.core.logging_system import SessionLogger


@pytest.fixture(autouse=True)
def _reset_session_logs():
    SessionLogger.logs.clear()
    SessionLogger._last_seen.clear()
    yield
    SessionLogger.logs.clear()
    SessionLogger._last_seen.clear()


def test_records_are_buffered_per_request(capsys):
    logger = SessionLogger.get_logger("openrouter_chat.tests.buffer")
    token = SessionLogger.request_id.set("req-1")
    chat_token = SessionLogger.chat_id.set("chat-1")
    try:
        logger.info("OpenRouter request payload: {}")
        logger.debug("hidden from console")
    finally:
        SessionLogger.chat_id.reset(chat_token)
        SessionLogger.request_id.reset(token)

    events = SessionLogger.events("req-1")
    assert [e["message"] for e in events] == ["OpenRouter request payload: {}", "hidden from console"]
    assert events[0]["event_type"] == "openrouter.request.payload"
    assert events[0]["chat_id"] == "chat-1"

    out = capsys.readouterr().out
    assert "OpenRouter request payload" in out
    assert "hidden from console" not in out


def test_per_request_console_level(capsys):
    logger = SessionLogger.get_logger("openrouter_chat.tests.level")
    token = SessionLogger.log_level.set(logging.DEBUG)
    try:
        logger.debug("now visible")
    finally:
        SessionLogger.log_level.reset(token)
    assert "now visible" in capsys.readouterr().out


def test_records_without_request_are_not_buffered():
    logger = SessionLogger.get_logger("openrouter_chat.tests.nobuffer")
    logger.warning("Retrying something")
    assert SessionLogger.logs == {}


def test_buffer_is_bounded():
    logger = SessionLogger.get_logger("openrouter_chat.tests.bounded")
    previous = SessionLogger.max_lines
    SessionLogger.set_max_lines(100)
    token = SessionLogger.request_id.set("req-2")
    try:
        for idx in range(150):
            logger.debug("line %d", idx)
    finally:
        SessionLogger.request_id.reset(token)
        SessionLogger.max_lines = previous
    events = SessionLogger.events("req-2")
    assert len(events) == 100
    assert events[0]["message"] == "line 50"


def test_cleanup_drops_request_and_stale_buffers():
    logger = SessionLogger.get_logger("openrouter_chat.tests.cleanup")
    for rid in ("old", "current", "other"):
        token = SessionLogger.request_id.set(rid)
        try:
            logger.debug("hello")
        finally:
            SessionLogger.request_id.reset(token)
    SessionLogger._last_seen["old"] = time.time() - 7200

    SessionLogger.cleanup("current")

    assert set(SessionLogger.logs) == {"other"}


def test_format_event_as_text():
    event = {"created": time.time(), "level": "WARNING", "chat_id": None, "message": "stalled"}
    text = SessionLogger.format_event_as_text(event)
    assert text.endswith("[WARNING] [chat=-] stalled")


def test_module_loggers_feed_the_buffer_through_the_package_logger():
    SessionLogger.get_logger("openrouter_chat.tests.first")
    SessionLogger.get_logger("openrouter_chat.tests.second")
    package_logger = logging.getLogger("openrouter_chat")
    assert sum(type(h).__name__ == "_SessionBufferHandler" for h in package_logger.handlers) == 1

    module_logger = logging.getLogger("openrouter_chat.tests.plain_module")
    token = SessionLogger.request_id.set("req-3")
    try:
        module_logger.warning("Retrying OpenRouter request after ServerError (attempt 1 failed): boom")
    finally:
        SessionLogger.request_id.reset(token)

    (event,) = SessionLogger.events("req-3")
    assert event["event_type"] == "openrouter.retry"
    assert event["logger"] == "openrouter_chat.tests.plain_module"
