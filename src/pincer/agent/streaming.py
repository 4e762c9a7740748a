"""
agent/streaming.py — Streaming a Run

stream_run() exposes a run as an async iterator of events, backed by an
EventStream the loop pushes into. event_to_sse() and SSE_HEADERS frame
events for a Server-Sent Events response.

Usage:
    runner = compose(core_runner(loop), with_steering(controller))
    async for event in stream_run(runner, RunRequest(prompt="hi")):
        print(describe_event(event))
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import TYPE_CHECKING, AsyncIterator

from pincer.agent.event_stream import EventStream
from pincer.agent.events import AgentEvent

if TYPE_CHECKING:
    from pincer.agent.middleware import RunRequest, Runner

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def event_to_sse(event: AgentEvent) -> str:
    return f"data: {event.model_dump_json()}\n\n"


async def stream_run(runner: "Runner", request: "RunRequest") -> AsyncIterator[AgentEvent]:
    """
    Start the run in a task and yield its events as they are emitted.

    Closing the iterator early cancels the run. Once agent_end has been
    yielded, an exception raised by the run is re-raised here.
    """
    stream: EventStream[AgentEvent] = EventStream.for_agent_run()
    request = replace(request, options=replace(request.options, stream=stream))
    task = asyncio.create_task(runner(request), name=f"stream_run:{request.options.run_id or 'run'}")
    # A runner that fails before agent_end must still release the consumer
    task.add_done_callback(lambda _: stream.end())

    try:
        async for event in stream:
            yield event
    finally:
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    await task
