"""
agent/event_stream.py — Ordered Event Delivery for One Run

A single producer (the loop) pushes events; any number of consumers
iterate. Events go into an append-only buffer and each `async for` gets its
own cursor into it, so consumers never steal from each other, late
subscribers replay from the start, and nothing is dropped.

The first event matching `is_terminal` closes the stream: it is delivered,
the final result is computed once from the full event list, waiting
iterators finish, and later pushes are ignored.

push() and end() must be called from the event loop thread.

Usage:
    stream = EventStream.for_agent_run()
    async for event in stream:
        ...
    events = await stream.result()
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Generic, Optional, TypeVar

from pincer.agent.events import AgentEvent, is_agent_end

E = TypeVar("E")


class EventStream(Generic[E]):
    def __init__(
        self,
        is_terminal: Callable[[E], bool],
        extract_result: Optional[Callable[[list[E]], Any]] = None,
    ):
        self._is_terminal = is_terminal
        self._extract_result = extract_result or (lambda events: list(events))
        self._events: list[E] = []
        self._waiters: list[asyncio.Future] = []
        self._done = False
        self._result: Any = None

    @classmethod
    def for_agent_run(cls) -> "EventStream[AgentEvent]":
        """Stream that closes on agent_end; result() is the full event list."""
        return cls(is_terminal=is_agent_end)

    # ── Producer side ─────────────────────────────────────────────────────────

    def push(self, event: E) -> bool:
        """Append an event. Returns False (and does nothing) once closed."""
        if self._done:
            return False
        self._events.append(event)
        if self._is_terminal(event):
            self._close()
        else:
            self._wake()
        return True

    def end(self, result: Any = None) -> None:
        """Close without a terminal event. `result` overrides the extractor."""
        if self._done:
            return
        self._close(result)

    # ── Consumer side ─────────────────────────────────────────────────────────

    @property
    def done(self) -> bool:
        return self._done

    @property
    def events(self) -> list[E]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __aiter__(self) -> AsyncIterator[E]:
        return self._iterate()

    async def result(self) -> Any:
        """Wait for the stream to close and return the final result."""
        while not self._done:
            await self._wait()
        return self._result

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _iterate(self) -> AsyncIterator[E]:
        position = 0
        while True:
            if position < len(self._events):
                event = self._events[position]
                position += 1
                yield event
                continue
            if self._done:
                return
            await self._wait()

    async def _wait(self) -> None:
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    def _wake(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _close(self, result: Any = None) -> None:
        self._done = True
        self._result = result if result is not None else self._extract_result(list(self._events))
        self._wake()
