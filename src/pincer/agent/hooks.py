"""
agent/hooks.py — Agent Lifecycle Hooks

Hooks let middleware act inside a run without subclassing the loop:

    before_agent_start(ctx)          → optional HookUpdate (prompt, system
                                       prompt or history rewrite)
    before_tool_call(ctx, call)      → optional dict of replacement args
    after_tool_call(ctx, execution)
    on_agent_end(ctx, result)        runs just before agent_end is emitted

Hooks may be sync or async. Every hook receives a HookContext whose
`emit` publishes an event into the running stream, stamped with the run's
ids. A hook that raises is logged and reported as a warning event; it
never fails the run.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from pincer.agent.types import AgentConfig, AgentResult, ToolExecutionResult
from pincer.brain.types import Message, ToolCall, ToolDefinition


@dataclass
class HookContext:
    run_id: str
    session_id: str
    prompt: str
    system_prompt: str
    messages: list[Message]
    tools: list[ToolDefinition]
    config: AgentConfig
    emit: Callable[[Any], None]


@dataclass
class HookUpdate:
    prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    messages: Optional[list[Message]] = None


_Maybe = Union[Awaitable[Any], Any]

BeforeAgentStartHook = Callable[[HookContext], _Maybe]
BeforeToolCallHook = Callable[[HookContext, ToolCall], _Maybe]
AfterToolCallHook = Callable[[HookContext, ToolExecutionResult], _Maybe]
AgentEndHook = Callable[[HookContext, AgentResult], _Maybe]


@dataclass
class AgentHooks:
    before_agent_start: list[BeforeAgentStartHook] = field(default_factory=list)
    before_tool_call: list[BeforeToolCallHook] = field(default_factory=list)
    after_tool_call: list[AfterToolCallHook] = field(default_factory=list)
    on_agent_end: list[AgentEndHook] = field(default_factory=list)

    def merged(self, other: Optional["AgentHooks"]) -> "AgentHooks":
        """New AgentHooks running self's hooks first, then other's."""
        if other is None:
            return self
        return AgentHooks(
            before_agent_start=[*self.before_agent_start, *other.before_agent_start],
            before_tool_call=[*self.before_tool_call, *other.before_tool_call],
            after_tool_call=[*self.after_tool_call, *other.after_tool_call],
            on_agent_end=[*self.on_agent_end, *other.on_agent_end],
        )

    def __bool__(self) -> bool:
        return bool(
            self.before_agent_start or self.before_tool_call
            or self.after_tool_call or self.on_agent_end
        )


async def call_hook(hook: Callable[..., _Maybe], *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def hook_name(hook: Callable[..., Any]) -> str:
    return getattr(hook, "__qualname__", None) or getattr(hook, "__name__", None) or repr(hook)
