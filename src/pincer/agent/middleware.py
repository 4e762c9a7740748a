"""
agent/middleware.py — Composable Run Middleware

One core runner plus independent wrappers, applied explicitly:

    runner = compose(
        core_runner(loop),
        with_steering(controller),
        with_memory(recall),
        with_event_sink(response.write),
    )
    result = await runner(RunRequest(prompt="hi", system_prompt=soul))

compose(core, a, b) builds a(b(core)): `a` sees the request first.
Middleware never subclasses the loop; it rewrites the RunRequest
(options, hooks, listeners) before handing it on.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional

from pincer.agent.events import MemorySaveEvent, MemorySearchEvent
from pincer.agent.hooks import AgentHooks, HookContext, HookUpdate
from pincer.agent.loop import AgentLoop, RunOptions
from pincer.agent.steering import SteeringController
from pincer.agent.streaming import event_to_sse
from pincer.agent.types import AgentResult
from pincer.brain.types import ToolDefinition
from pincer.memory.recall import MemoryRecall
from pincer.observability.logger import get_logger

log = get_logger(__name__)


@dataclass
class RunRequest:
    prompt: str
    system_prompt: str = ""
    tools: Optional[list[ToolDefinition]] = None
    options: RunOptions = field(default_factory=RunOptions)


Runner = Callable[[RunRequest], Awaitable[AgentResult]]
Middleware = Callable[[Runner], Runner]


def core_runner(loop: AgentLoop) -> Runner:
    async def run(request: RunRequest) -> AgentResult:
        return await loop.run(request.prompt, request.system_prompt, request.tools, request.options)
    return run


def compose(core: Runner, *middleware: Middleware) -> Runner:
    runner = core
    for wrap in reversed(middleware):
        runner = wrap(runner)
    return runner


def _with_hooks(request: RunRequest, hooks: AgentHooks) -> RunRequest:
    merged = (request.options.hooks or AgentHooks()).merged(hooks)
    return replace(request, options=replace(request.options, hooks=merged))


# ─────────────────────────────────────────────────────────────────────────────
# Steering
# ─────────────────────────────────────────────────────────────────────────────


def with_steering(controller: SteeringController) -> Middleware:
    """
    Attach a steering controller to each run. The interruption flag is
    reset on entry so an interrupt aimed at a previous run does not abort
    this one.
    """
    def wrap(next_runner: Runner) -> Runner:
        async def run(request: RunRequest) -> AgentResult:
            controller.reset_interruption()
            request = replace(request, options=replace(request.options, steering=controller))
            try:
                return await next_runner(request)
            finally:
                controller.current_turn_id = None
        return run
    return wrap


# ─────────────────────────────────────────────────────────────────────────────
# Memory
# ─────────────────────────────────────────────────────────────────────────────


def with_memory(recall: MemoryRecall) -> Middleware:
    """
    Before the run: search prior sessions and prepend what was found to the
    system prompt (memory_search). After it: save the conversation with
    auto-extracted tags (memory_save).
    """
    async def before_agent_start(ctx: HookContext) -> Optional[HookUpdate]:
        found = await recall.search(ctx.prompt, exclude_session=ctx.session_id)
        ctx.emit(MemorySearchEvent(
            query=ctx.prompt,
            sessions_found=len(found.sessions),
            context_length=len(found.context),
        ))
        if not found.context:
            return None
        system_prompt = f"{ctx.system_prompt}\n\n{found.context}" if ctx.system_prompt else found.context
        return HookUpdate(system_prompt=system_prompt)

    async def on_agent_end(ctx: HookContext, result: AgentResult) -> None:
        saved = await recall.save_conversation(
            ctx.session_id,
            result.messages,
            additional={"run_id": result.run_id, "status": result.status.value},
        )
        ctx.emit(MemorySaveEvent(
            saved=saved,
            message_count=len(result.messages),
            tool_count=len(result.tool_executions),
        ))

    hooks = AgentHooks(before_agent_start=[before_agent_start], on_agent_end=[on_agent_end])

    def wrap(next_runner: Runner) -> Runner:
        async def run(request: RunRequest) -> AgentResult:
            return await next_runner(_with_hooks(request, hooks))
        return run
    return wrap


# ─────────────────────────────────────────────────────────────────────────────
# Transport
# ─────────────────────────────────────────────────────────────────────────────


def with_event_sink(send: Callable[[str], Any]) -> Middleware:
    """
    Forward every event as an SSE frame to `send` (a transport write).
    `send` is called synchronously, in emission order; any existing
    on_event listener still runs first.
    """
    def wrap(next_runner: Runner) -> Runner:
        async def run(request: RunRequest) -> AgentResult:
            previous = request.options.on_event

            def on_event(event: Any) -> None:
                try:
                    if previous is not None:
                        previous(event)
                finally:
                    send(event_to_sse(event))

            return await next_runner(replace(request, options=replace(request.options, on_event=on_event)))
        return run
    return wrap
