"""Streaming aggregator tests driven by a manual frame scheduler."""

from __future__ import annotations

import random

import pytest

from openrouter_chat.core.errors import NetworkError
from openrouter_chat.streaming.aggregator import StreamingAggregator, StreamingSnapshot
from openrouter_chat.streaming.session import StreamController


class _Sink:
    def __init__(self) -> None:
        self.snapshots: list[StreamingSnapshot] = []
        self.messages = []
        self.errors = []
        self.usage = []


@pytest.fixture
def sink() -> _Sink:
    return _Sink()


@pytest.fixture
def aggregator(sink: _Sink, manual_scheduler) -> StreamingAggregator:
    return StreamingAggregator(
        on_snapshot=sink.snapshots.append,
        on_message=sink.messages.append,
        on_error=sink.errors.append,
        on_usage=sink.usage.append,
        scheduler=manual_scheduler,
    )


def test_begin_publishes_empty_placeholder(aggregator, sink):
    placeholder = aggregator.begin("assistant-1")
    assert placeholder.content == ""
    assert sink.snapshots == [placeholder]
    assert aggregator.active


def test_begin_while_in_flight_is_rejected(aggregator):
    aggregator.begin()
    with pytest.raises(RuntimeError):
        aggregator.begin()


def test_content_chunks_coalesce_into_one_flush_per_frame(aggregator, sink, manual_scheduler):
    aggregator.begin("m")
    for piece in ("a", "b", "c"):
        aggregator.handle_chunk(piece)

    assert manual_scheduler.scheduled == 1
    assert len(sink.snapshots) == 1

    manual_scheduler.run_frame()
    assert [s.content for s in sink.snapshots] == ["", "abc"]

    aggregator.handle_chunk("d")
    assert manual_scheduler.scheduled == 2
    manual_scheduler.run_frame()
    assert sink.snapshots[-1].content == "abcd"


def test_reasoning_chunks_publish_immediately(aggregator, sink, manual_scheduler):
    aggregator.begin("m")
    aggregator.handle_reasoning_chunk("thinking")
    aggregator.handle_reasoning_chunk(" more")

    assert manual_scheduler.scheduled == 0
    assert [s.reasoning for s in sink.snapshots[1:]] == ["thinking", "thinking more"]
    assert sink.snapshots[-1].reasoning_visible

    aggregator.handle_chunk("answer")
    manual_scheduler.run_frame()
    assert not sink.snapshots[-1].reasoning_visible


def test_flush_is_idempotent(aggregator, sink, manual_scheduler):
    aggregator.begin("m")
    aggregator.handle_chunk("x")
    aggregator.flush()
    aggregator.flush()

    assert [s.content for s in sink.snapshots] == ["", "x"]
    assert manual_scheduler.cancelled == 1
    assert manual_scheduler.pending == {}


def test_published_content_only_ever_grows(aggregator, sink, manual_scheduler):
    rng = random.Random(1234)
    aggregator.begin("m")
    expected = ""
    for _ in range(200):
        piece = "".join(rng.choice("abcxyz ") for _ in range(rng.randint(1, 5)))
        expected += piece
        aggregator.handle_chunk(piece)
        if rng.random() < 0.3:
            manual_scheduler.run_frame()
    aggregator.flush()

    contents = [s.content for s in sink.snapshots]
    for earlier, later in zip(contents, contents[1:]):
        assert later.startswith(earlier)
    assert contents[-1] == expected


def test_complete_builds_final_message(aggregator, sink, manual_scheduler):
    aggregator.begin("m")
    aggregator.handle_reasoning_chunk("plan")
    aggregator.handle_chunk("Hello")
    aggregator.handle_chunk(" world")
    aggregator.handle_usage({"total_tokens": 12})
    aggregator.handle_complete()

    (message,) = sink.messages
    assert message.role == "assistant"
    assert message.text() == "Hello world"
    assert message.reasoning == "plan"
    assert message.id.startswith("assistant-")
    assert sink.snapshots[-1].content == "Hello world"
    assert sink.usage == [{"total_tokens": 12}]
    assert not aggregator.active
    assert aggregator.snapshot() is None
    assert manual_scheduler.pending == {}


def test_complete_without_reasoning_leaves_it_unset(aggregator, sink):
    aggregator.begin("m")
    aggregator.handle_chunk("hi")
    aggregator.handle_complete()
    assert sink.messages[0].reasoning is None
    assert not sink.messages[0].reasoning_visible


def test_reasoning_only_reply_finalizes_collapsed(aggregator, sink):
    aggregator.begin("m")
    aggregator.handle_reasoning_chunk("thinking it over")
    assert sink.snapshots[-1].reasoning_visible
    aggregator.handle_complete()

    (message,) = sink.messages
    assert message.reasoning == "thinking it over"
    assert message.text() == ""
    assert not message.reasoning_visible


def test_error_discards_partial_message(aggregator, sink, manual_scheduler):
    aggregator.begin("m")
    aggregator.handle_chunk("partial")
    error = NetworkError("Network error: reset")
    aggregator.handle_error(error)

    assert sink.errors == [error]
    assert sink.messages == []
    assert not aggregator.active
    assert manual_scheduler.pending == {}


def test_cancel_stops_controller_and_drops_late_callbacks(aggregator, sink, manual_scheduler):
    aggregator.begin("m")
    controller = StreamController()
    aggregator.bind_controller(controller)
    aggregator.handle_chunk("a")

    aggregator.cancel()
    assert controller.cancelled

    aggregator.handle_chunk("late")
    aggregator.handle_complete()
    aggregator.handle_error(NetworkError("late"))
    manual_scheduler.run_frame()

    assert sink.messages == []
    assert sink.errors == []
    assert [s.content for s in sink.snapshots] == [""]


def test_chunks_after_completion_are_dropped(aggregator, sink, manual_scheduler):
    aggregator.begin("m")
    aggregator.handle_chunk("done")
    aggregator.handle_complete()
    published = len(sink.snapshots)

    aggregator.handle_chunk("extra")
    aggregator.handle_reasoning_chunk("extra")
    manual_scheduler.run_frame()

    assert len(sink.snapshots) == published
    assert len(sink.messages) == 1


def test_reasoning_visibility_toggle(aggregator, sink):
    aggregator.begin("m")
    aggregator.handle_reasoning_chunk("r")
    aggregator.set_reasoning_visible(False)
    assert not sink.snapshots[-1].reasoning_visible
    aggregator.set_reasoning_visible(False)
    assert len(sink.snapshots) == 3


def test_callbacks_wire_session_hooks(aggregator):
    callbacks = aggregator.callbacks()
    controller = StreamController()
    callbacks.on_controller(controller)
    assert aggregator.controller is controller
