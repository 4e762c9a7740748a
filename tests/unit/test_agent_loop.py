"""
tests/unit/test_agent_loop.py — AgentLoop

Covers:
  - event order for a plain run and a tool round trip
  - tool failures fed back to the model, failure summaries as response
  - tool call cap (skipped calls, tools withheld from the next turn)
  - max turns, timeout, abort via signal / steering, task cancellation
  - provider errors carrying the terminal result
  - context overflow compaction retry
  - planning events, steering injection, hooks, auto model routing
  - thinking deltas, inline tool calls, NO_REPLY stripping
"""

from __future__ import annotations

import asyncio

import pytest

from pincer.agent.cancellation import CancellationToken
from pincer.agent.event_stream import EventStream
from pincer.agent.hooks import AgentHooks, HookUpdate
from pincer.agent.loop import AgentLoop, RunOptions
from pincer.agent.steering import SteeringController
from pincer.agent.tool_bridge import ToolBridge
from pincer.agent.types import AgentConfig, RunStatus, StepStatus
from pincer.brain.types import CompletionDelta, CompletionResult, Role, ToolCall
from pincer.context.model_router import ModelRouter
from pincer.context.types import ModelProfile
from pincer.exceptions import CompletionProviderError, LLMContextError
from pincer.tools.registry import ToolRegistry


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────


class ScriptedProvider:
    """Replays a fixed list of replies; exceptions in the list are raised."""

    def __init__(self, *replies, delay: float = 0.0):
        self._replies = list(replies)
        self.delay = delay
        self.calls: list[dict] = []

    async def complete(self, history, system_prompt, tools, options, on_delta=None):
        self.calls.append({
            "history": list(history),
            "system_prompt": system_prompt,
            "tools": list(tools),
            "options": options,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self._replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if on_delta is not None:
            if reply.thinking:
                on_delta(CompletionDelta(thinking=reply.thinking))
            if reply.content:
                on_delta(CompletionDelta(content=reply.content))
        return reply


class HangingProvider:
    async def complete(self, history, system_prompt, tools, options, on_delta=None):
        await asyncio.Event().wait()


def _text(content: str, **kw) -> CompletionResult:
    return CompletionResult(content=content, **kw)


def _calls(*calls: tuple[str, str, dict]) -> CompletionResult:
    return CompletionResult(tool_calls=[ToolCall(id=i, name=n, arguments=a) for i, n, a in calls])


@pytest.fixture
def registry():
    reg = ToolRegistry()

    @reg.register(
        name="echo",
        description="Echo text back",
        parameters={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
    )
    async def echo(text: str) -> str:
        return text

    @reg.register(name="crash", description="Always fails")
    async def crash() -> str:
        raise OSError("disk on fire")

    return reg


@pytest.fixture
def bridge(registry):
    return ToolBridge(registry, require_approval=False)


def _loop(provider, bridge=None, **config) -> AgentLoop:
    return AgentLoop(provider, tool_bridge=bridge, config=AgentConfig(**config))


def _recorder():
    events: list = []
    return events, RunOptions(on_event=events.append)


def _types(events) -> list[str]:
    return [e.type for e in events]


# ─────────────────────────────────────────────────────────────────────────────
# Event order
# ─────────────────────────────────────────────────────────────────────────────


class TestEventOrder:
    @pytest.mark.asyncio
    async def test_plain_run(self):
        provider = ScriptedProvider(_text("Hello there"))
        events, options = _recorder()
        result = await _loop(provider).run("hello", options=options)

        assert _types(events) == [
            "agent_start",
            "turn_start",
            "message_start",
            "message_update",
            "message_end",
            "turn_end",
            "agent_end",
        ]
        assert result.status == RunStatus.COMPLETED
        assert result.response == "Hello there"
        assert result.turns == 1
        assert [m.role for m in result.messages] == [Role.USER, Role.ASSISTANT]
        assert events[-1].status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_every_event_carries_run_ids(self):
        provider = ScriptedProvider(_text("ok"))
        events = []
        await _loop(provider).run(
            "hello", options=RunOptions(on_event=events.append, run_id="run_fixed", session_id="s9"),
        )
        assert {e.run_id for e in events} == {"run_fixed"}
        assert {e.session_id for e in events} == {"s9"}

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, bridge):
        provider = ScriptedProvider(_calls(("c1", "echo", {"text": "hi"})), _text("done"))
        events, options = _recorder()
        result = await _loop(provider, bridge).run("say hi", options=options)

        assert _types(events) == [
            "agent_start",
            "turn_start",
            "message_start",
            "message_end",
            "tool_execution_start",
            "tool_update",
            "tool_result",
            "turn_end",
            "turn_start",
            "message_start",
            "message_update",
            "message_end",
            "turn_end",
            "agent_end",
        ]
        assert result.response == "done"
        assert result.turns == 2
        assert result.tool_executions[0].result == "hi"
        assert [m.role for m in result.messages] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]

        second_history = provider.calls[1]["history"]
        assert second_history[-1].role == Role.TOOL
        assert second_history[-1].tool_call_id == "c1"
        assert second_history[-1].content == "hi"

    @pytest.mark.asyncio
    async def test_tooling_section_added_to_system_prompt(self, bridge):
        provider = ScriptedProvider(_text("ok"))
        await _loop(provider, bridge).run("hello", system_prompt="You are helpful.")
        prompt = provider.calls[0]["system_prompt"]
        assert prompt.startswith("You are helpful.")
        assert "## Tooling" in prompt
        assert "- echo: Echo text back" in prompt

    @pytest.mark.asyncio
    async def test_stream_receives_events(self):
        provider = ScriptedProvider(_text("ok"))
        stream = EventStream.for_agent_run()
        await _loop(provider).run("hello", options=RunOptions(stream=stream))
        assert stream.done
        events = await stream.result()
        assert events[0].type == "agent_start"
        assert events[-1].type == "agent_end"

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_run(self):
        provider = ScriptedProvider(_text("ok"))

        def listener(event):
            raise RuntimeError("listener bug")

        result = await _loop(provider).run("hello", options=RunOptions(on_event=listener))
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_thinking_events(self):
        provider = ScriptedProvider(_text("answer", thinking="let me think"))
        events, options = _recorder()
        await _loop(provider).run("hello", options=options)
        assert _types(events)[2:7] == [
            "message_start",
            "thinking_start",
            "thinking_delta",
            "message_update",
            "thinking_end",
        ]
        assert events[6].content == "let me think"


# ─────────────────────────────────────────────────────────────────────────────
# Tools
# ─────────────────────────────────────────────────────────────────────────────


class TestToolHandling:
    @pytest.mark.asyncio
    async def test_unknown_tool_is_reported_to_model(self, bridge):
        provider = ScriptedProvider(_calls(("c1", "missing", {})), _text("sorry"))
        events, options = _recorder()
        result = await _loop(provider, bridge).run("go", options=options)

        assert result.status == RunStatus.COMPLETED
        assert result.response == "sorry"
        assert "tool_error" in _types(events)
        tool_message = provider.calls[1]["history"][-1]
        assert tool_message.role == Role.TOOL
        assert tool_message.content.startswith("Error:")
        assert result.tool_executions[0].success is False

    @pytest.mark.asyncio
    async def test_failed_tool_summarised_when_run_ends_on_it(self, bridge):
        provider = ScriptedProvider(_calls(("c1", "crash", {})))
        events, options = _recorder()
        result = await _loop(provider, bridge, max_turns=1).run("go", options=options)

        assert result.status == RunStatus.COMPLETED
        assert result.response.startswith("A tool failed: crash - ")
        warnings = [e for e in events if e.type == "warning"]
        assert warnings[0].message == "Reached max turns (1)"

    @pytest.mark.asyncio
    async def test_max_turns_keeps_last_assistant_text(self, bridge):
        provider = ScriptedProvider(CompletionResult(
            content="Let me check.",
            tool_calls=[ToolCall(id="c1", name="echo", arguments={"text": "x"})],
        ))
        events, options = _recorder()
        result = await _loop(provider, bridge, max_turns=1).run("go", options=options)

        assert result.status == RunStatus.COMPLETED
        assert result.turns == 1
        assert result.response == "Let me check."
        assert result.tool_executions[0].success is True
        assert result.messages[-1].role == Role.TOOL
        assert _types(events)[-1] == "agent_end"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_multiple_failures_listed(self, bridge):
        provider = ScriptedProvider(_calls(("c1", "crash", {}), ("c2", "missing", {})))
        result = await _loop(provider, bridge, max_turns=1).run("go")
        assert result.status == RunStatus.COMPLETED
        assert result.response.startswith("Multiple tools failed:\n- crash:")
        assert "- missing:" in result.response

    @pytest.mark.asyncio
    async def test_no_bridge_means_no_tools(self):
        provider = ScriptedProvider(_calls(("c1", "echo", {"text": "x"})), _text("fine"))
        result = await _loop(provider).run("go")
        assert provider.calls[0]["tools"] == []
        assert result.tool_executions[0].success is False
        assert result.response == "fine"

    @pytest.mark.asyncio
    async def test_tool_call_cap(self, bridge):
        provider = ScriptedProvider(
            _calls(("c1", "echo", {"text": "a"}), ("c2", "echo", {"text": "b"})),
            _text("ok"),
        )
        events, options = _recorder()
        result = await _loop(provider, bridge, max_tool_calls=1).run("go", options=options)

        assert len(result.tool_executions) == 1
        skipped = [m for m in result.messages if m.role == Role.TOOL and m.tool_call_id == "c2"]
        assert skipped[0].content == "Error: tool call limit reached"
        assert any(e.type == "warning" and e.source == "tool_limit" for e in events)
        assert provider.calls[1]["tools"] == []

    @pytest.mark.asyncio
    async def test_inline_tool_calls_are_executed(self, bridge):
        inline = 'Sure. <tool_call>{"tool": "echo", "arguments": {"text": "inline"}}</tool_call>'
        provider = ScriptedProvider(_text(inline), _text("done"))
        result = await _loop(provider, bridge).run("go")

        assert result.tool_executions[0].tool_name == "echo"
        assert result.tool_executions[0].result == "inline"
        assert "<tool_call>" not in result.messages[1].content

    @pytest.mark.asyncio
    async def test_inline_tool_calls_ignored_after_cap(self, bridge):
        inline = 'Calling again. <tool_call>{"tool": "echo", "arguments": {"text": "x"}}</tool_call>'
        provider = ScriptedProvider(*[_text(inline) for _ in range(5)])
        result = await _loop(provider, bridge, max_tool_calls=1, max_turns=5).run(
            "go", system_prompt="You are helpful."
        )

        assert result.status == RunStatus.COMPLETED
        assert result.turns == 2
        assert len(result.tool_executions) == 1
        assert result.response == "Calling again."
        assert "## Tooling" in provider.calls[0]["system_prompt"]
        assert provider.calls[1]["tools"] == []
        assert "## Tooling" not in provider.calls[1]["system_prompt"]
        assert provider.calls[1]["system_prompt"].startswith("You are helpful.")

    @pytest.mark.asyncio
    async def test_no_reply_marker_stripped(self):
        provider = ScriptedProvider(_text("All set. NO_REPLY"))
        result = await _loop(provider).run("hello")
        assert result.response == "All set."


# ─────────────────────────────────────────────────────────────────────────────
# Termination
# ─────────────────────────────────────────────────────────────────────────────


class TestTermination:
    @pytest.mark.asyncio
    async def test_pre_cancelled_signal(self):
        provider = ScriptedProvider(_text("never"))
        token = CancellationToken()
        token.cancel("user_interrupt")
        events = []
        result = await _loop(provider).run(
            "hello", options=RunOptions(on_event=events.append, signal=token),
        )

        assert result.status == RunStatus.ABORTED
        assert result.error == "Run aborted: user_interrupt"
        assert result.turns == 0
        assert provider.calls == []
        assert _types(events) == ["agent_start", "agent_end"]

    @pytest.mark.asyncio
    async def test_steering_interrupt_stops_at_next_turn(self, registry):
        steering = SteeringController()

        @registry.register(name="stop_me")
        async def stop_me() -> str:
            steering.interrupt("stop")
            return "stopping"

        bridge = ToolBridge(registry, require_approval=False)
        provider = ScriptedProvider(_calls(("c1", "stop_me", {})), _text("never"))
        result = await _loop(provider, bridge).run("go", options=RunOptions(steering=steering))

        assert result.status == RunStatus.ABORTED
        assert result.error == "Run aborted: stop"
        assert result.turns == 1
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_timeout(self, bridge):
        provider = ScriptedProvider(_calls(("c1", "echo", {"text": "late"})), delay=0.05)
        events, options = _recorder()
        result = await _loop(provider, bridge, timeout_ms=10).run("go", options=options)

        assert result.status == RunStatus.TIMEOUT
        assert result.error == "Run timed out after 10 ms"
        assert result.tool_executions == []
        assert events[-1].type == "agent_end"
        assert events[-1].status == RunStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_task_cancellation_still_emits_agent_end(self):
        events, options = _recorder()
        task = asyncio.create_task(_loop(HangingProvider()).run("hello", options=options))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert events[-1].type == "agent_end"
        assert events[-1].status == RunStatus.ABORTED

    @pytest.mark.asyncio
    async def test_provider_error_carries_result(self):
        provider = ScriptedProvider(RuntimeError("backend down"))
        events, options = _recorder()
        with pytest.raises(CompletionProviderError) as exc_info:
            await _loop(provider).run("hello", options=options)

        result = exc_info.value.result
        assert result.status == RunStatus.ERROR
        assert "backend down" in result.error
        assert result.messages[0].content == "hello"
        assert _types(events)[-4:] == ["message_start", "message_end", "error", "agent_end"]

    @pytest.mark.asyncio
    async def test_context_overflow_retries_after_compaction(self):
        provider = ScriptedProvider(LLMContextError("prompt too long"), _text("ok"))
        events, options = _recorder()
        result = await _loop(provider).run("hello", options=options)

        assert result.status == RunStatus.COMPLETED
        assert len(provider.calls) == 2
        assert any(e.type == "warning" and e.source == "context" for e in events)

    @pytest.mark.asyncio
    async def test_context_overflow_gives_up(self):
        provider = ScriptedProvider(LLMContextError("too long"), LLMContextError("still too long"))
        with pytest.raises(CompletionProviderError, match="Context overflow persisted"):
            await _loop(provider, max_compaction_retries=1).run("hello")


# ─────────────────────────────────────────────────────────────────────────────
# Planning, steering, hooks, routing
# ─────────────────────────────────────────────────────────────────────────────


class TestRunFeatures:
    @pytest.mark.asyncio
    async def test_plan_created_and_advanced(self):
        provider = ScriptedProvider(_text("done"))
        events, options = _recorder()
        prompt = "Please refactor:\n- read the parser\n- update the tests"
        result = await _loop(provider).run(prompt, options=options)

        types = _types(events)
        assert types.index("plan_created") == types.index("turn_start") + 1
        assert "plan_step" in types
        assert "## Plan" in provider.calls[0]["system_prompt"]
        assert [s.status for s in result.plan.steps] == [StepStatus.DONE, StepStatus.IN_PROGRESS]
        assert result.summary.next_step == "update the tests"

    @pytest.mark.asyncio
    async def test_steering_messages_injected_at_turn_start(self):
        steering = SteeringController()
        steering.queue_message("also check the README")
        provider = ScriptedProvider(_text("ok"))
        events = []
        await _loop(provider).run(
            "hello", options=RunOptions(on_event=events.append, steering=steering, run_id="run_x"),
        )

        history = provider.calls[0]["history"]
        assert [m.content for m in history] == ["hello", "also check the README"]
        assert _types(events)[2:4] == ["message_start", "message_end"]
        assert steering.current_turn_id == "run_x:turn_1"
        assert not steering.has_pending_messages()

    @pytest.mark.asyncio
    async def test_hooks(self, bridge):
        seen: dict = {}

        def rewrite(ctx):
            return HookUpdate(prompt="rewritten prompt")

        async def patch_args(ctx, call):
            return {"text": "patched"}

        def after(ctx, execution):
            seen["execution"] = execution

        def on_end(ctx, result):
            seen["status"] = result.status

        hooks = AgentHooks(
            before_agent_start=[rewrite],
            before_tool_call=[patch_args],
            after_tool_call=[after],
            on_agent_end=[on_end],
        )
        provider = ScriptedProvider(_calls(("c1", "echo", {"text": "orig"})), _text("done"))
        await _loop(provider, bridge).run("original", options=RunOptions(hooks=hooks))

        assert provider.calls[0]["history"][0].content == "rewritten prompt"
        assert seen["execution"].result == "patched"
        assert seen["status"] == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failing_hook_becomes_warning(self):
        def broken(ctx):
            raise ValueError("hook bug")

        provider = ScriptedProvider(_text("ok"))
        events = []
        result = await _loop(provider).run(
            "hello",
            options=RunOptions(on_event=events.append, hooks=AgentHooks(before_agent_start=[broken])),
        )
        assert result.status == RunStatus.COMPLETED
        assert any(e.type == "warning" and e.source == "hooks" for e in events)

    @pytest.mark.asyncio
    async def test_auto_model_routing(self):
        provider = ScriptedProvider(_text("ok"))
        router = ModelRouter(models=[ModelProfile(id="ollama/tiny", context_window=8192, max_output_tokens=1024)])
        loop = AgentLoop(provider, router=router, config=AgentConfig(model="auto"))
        result = await loop.run("hello")

        assert provider.calls[0]["options"].model == "ollama/tiny"
        assert result.model == "ollama/tiny"

    def test_update_config(self):
        loop = _loop(ScriptedProvider())
        config = loop.update_config(max_turns=3, max_context_tokens=16000)
        assert config.max_turns == 3
        assert loop.config is config
        assert loop.context_manager.config.max_context_tokens == 16000
        assert loop.planner.max_context_tokens == 16000
