"""
tests/unit/test_event_stream.py — EventStream, Event Union, Cancellation

Covers:
  - push order, multiple consumers, late subscribers replaying from the start
  - terminal event closes the stream; later pushes are ignored
  - end() without a terminal event, result override
  - parse_event() round-trips serialised events through the union
  - describe_event() one-liners
  - CancellationToken / first_cancelled
"""

from __future__ import annotations

import asyncio

import pytest

from pincer.agent.cancellation import CancellationToken, first_cancelled
from pincer.agent.event_stream import EventStream
from pincer.agent.events import (
    AgentEndEvent,
    AgentStartEvent,
    MessageUpdateEvent,
    ToolErrorEvent,
    ToolExecutionStartEvent,
    TurnStartEvent,
    WarningEvent,
    describe_event,
    is_agent_end,
    parse_event,
)
from pincer.agent.types import RunStatus


async def _collect(stream: EventStream) -> list:
    return [e async for e in stream]


def _int_stream() -> EventStream[int]:
    return EventStream(is_terminal=lambda e: e < 0, extract_result=lambda events: sum(events))


# ─────────────────────────────────────────────────────────────────────────────
# EventStream
# ─────────────────────────────────────────────────────────────────────────────


class TestEventStream:
    @pytest.mark.asyncio
    async def test_delivers_in_push_order_including_terminal(self):
        stream = _int_stream()
        consumer = asyncio.create_task(_collect(stream))
        await asyncio.sleep(0)
        for value in (1, 2, 3, -1):
            stream.push(value)
        assert await consumer == [1, 2, 3, -1]

    @pytest.mark.asyncio
    async def test_every_consumer_sees_every_event(self):
        stream = _int_stream()
        first = asyncio.create_task(_collect(stream))
        second = asyncio.create_task(_collect(stream))
        await asyncio.sleep(0)
        stream.push(1)
        await asyncio.sleep(0)
        stream.push(2)
        stream.push(-5)
        assert await first == [1, 2, -5]
        assert await second == [1, 2, -5]

    @pytest.mark.asyncio
    async def test_late_subscriber_replays(self):
        stream = _int_stream()
        stream.push(4)
        stream.push(-1)
        assert await _collect(stream) == [4, -1]

    @pytest.mark.asyncio
    async def test_pushes_after_terminal_are_ignored(self):
        stream = _int_stream()
        assert stream.push(1)
        assert stream.push(-1)
        assert not stream.push(7)
        assert stream.done
        assert stream.events == [1, -1]
        assert len(stream) == 2

    @pytest.mark.asyncio
    async def test_result_is_extracted_once_closed(self):
        stream = _int_stream()
        waiter = asyncio.create_task(stream.result())
        stream.push(10)
        stream.push(5)
        await asyncio.sleep(0)
        assert not waiter.done()
        stream.push(-3)
        assert await waiter == 12

    @pytest.mark.asyncio
    async def test_end_releases_consumers(self):
        stream = _int_stream()
        consumer = asyncio.create_task(_collect(stream))
        stream.push(1)
        stream.end()
        assert await consumer == [1]
        assert await stream.result() == 1

    @pytest.mark.asyncio
    async def test_end_result_override(self):
        stream = _int_stream()
        stream.end(result="aborted")
        assert await stream.result() == "aborted"
        stream.end(result="ignored")
        assert await stream.result() == "aborted"

    @pytest.mark.asyncio
    async def test_agent_run_stream_closes_on_agent_end(self):
        stream = EventStream.for_agent_run()
        start = AgentStartEvent(prompt="hi")
        end = AgentEndEvent(status=RunStatus.COMPLETED)
        stream.push(start)
        stream.push(end)
        stream.push(TurnStartEvent(turn=2))
        assert await stream.result() == [start, end]


# ─────────────────────────────────────────────────────────────────────────────
# Event union
# ─────────────────────────────────────────────────────────────────────────────


class TestEventUnion:
    def test_parse_event_round_trip(self):
        original = ToolErrorEvent(
            tool_call_id="c1",
            tool_name="read_file",
            args={"path": "a.txt"},
            error="boom",
            run_id="run_1",
        )
        parsed = parse_event(original.model_dump_json())
        assert isinstance(parsed, ToolErrorEvent)
        assert parsed == original

    def test_parse_event_from_dict(self):
        parsed = parse_event({"type": "warning", "message": "careful", "source": "hooks"})
        assert isinstance(parsed, WarningEvent)
        assert parsed.source == "hooks"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            parse_event({"type": "nope"})

    def test_is_agent_end(self):
        assert is_agent_end(AgentEndEvent(status=RunStatus.ABORTED))
        assert not is_agent_end(AgentStartEvent())

    def test_describe_event(self):
        assert describe_event(AgentEndEvent(status=RunStatus.COMPLETED, turns=2)) == "run completed after 2 turn(s)"
        assert describe_event(ToolExecutionStartEvent(
            tool_call_id="c1", tool_name="read_file", args={"path": "x"},
        )) == "→ read_file(path)"
        assert describe_event(MessageUpdateEvent(delta="Hel")) == "Hel"


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────


class TestCancellationToken:
    def test_first_reason_wins(self):
        token = CancellationToken()
        assert not token.cancelled
        token.cancel("user_interrupt")
        token.cancel("later")
        assert token.cancelled
        assert token.reason == "user_interrupt"

    def test_first_cancelled_skips_none_and_active(self):
        active, hit = CancellationToken(), CancellationToken()
        hit.cancel()
        assert first_cancelled(None, active, hit) is hit
        assert first_cancelled(None, active) is None
