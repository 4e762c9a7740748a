"""
agent/loop.py — Agent Loop

Drives one run: a prompt goes in, turns of completion + tool dispatch run
until the model answers without tool calls, and a terminal AgentResult
comes out. Every observable step is emitted as an AgentEvent.

For each turn the loop:
    1. Checks the run's cancellation token and deadline   (_checkpoint)
    2. Emits turn_start and injects pending steering messages
    3. On turn 1, asks the TaskPlanner whether to plan
    4. Compacts history when it exceeds the token budget
    5. Streams a completion from the provider
    6. Dispatches requested tool calls through the ToolBridge
    7. Emits turn_end; stops when the model gave a final answer

Event order for a plain run:
    agent_start, turn_start, message_start, message_update*, message_end,
    turn_end, agent_end

agent_end is always the last event, including on timeout, abort and
provider failure. Tool failures never end a run: they are fed back to the
model as tool-role messages. Provider failures end the run with status
`error` and propagate as CompletionProviderError carrying the result.

Usage:
    loop = AgentLoop(provider, tool_bridge=ToolBridge(registry))
    result = await loop.run("List the files in my workspace", system_prompt)
    print(result.response)
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pincer.agent.cancellation import CancellationToken, first_cancelled
from pincer.agent.event_stream import EventStream
from pincer.agent.events import (
    AgentEndEvent,
    AgentStartEvent,
    CompactionEvent,
    ContextReplaceEvent,
    ErrorEvent,
    MessageEndEvent,
    MessageStartEvent,
    MessageUpdateEvent,
    PlanCreatedEvent,
    PlanStepEvent,
    SummaryUpdateEvent,
    ThinkingDeltaEvent,
    ThinkingEndEvent,
    ThinkingStartEvent,
    ToolErrorEvent,
    ToolExecutionStartEvent,
    ToolResultEvent,
    ToolUpdateEvent,
    TurnEndEvent,
    TurnStartEvent,
    WarningEvent,
)
from pincer.agent.hooks import AgentHooks, HookContext, HookUpdate, call_hook, hook_name
from pincer.agent.run_queue import create_run_id
from pincer.agent.steering import SteeringController
from pincer.agent.task_planner import TaskPlanner
from pincer.agent.tool_bridge import ToolBridge
from pincer.agent.types import (
    AgentConfig,
    AgentResult,
    RunStatus,
    SummaryPatch,
    TaskPlan,
    ToolExecutionResult,
    WorkingSummary,
)
from pincer.brain.provider import CompletionProvider
from pincer.brain.tool_parsing import extract_inline_tool_calls, strip_inline_tool_calls
from pincer.brain.types import (
    CompletionDelta,
    CompletionOptions,
    CompletionResult,
    Message,
    Role,
    ToolCall,
    ToolDefinition,
)
from pincer.context.context_manager import ContextManager
from pincer.context.model_router import ModelRouter
from pincer.context.token_estimator import TokenEstimator
from pincer.context.types import ContextConfig, RoutingPriority, TaskRequirements
from pincer.exceptions import CompletionProviderError, LLMContextError, ToolError, ToolNotFoundError
from pincer.observability.logger import bind_run, clear_run, get_logger

log = get_logger(__name__)

AUTO_MODEL = "auto"

# Overflow retries compact to this share of the current history size
_OVERFLOW_TARGET_RATIO = 0.75

_NO_REPLY_RE = re.compile(r"\bNO_REPLY\b")
_TOOLING_RE = re.compile(r"^##\s+Tooling", re.MULTILINE)

EventListener = Callable[[Any], None]


@dataclass
class RunOptions:
    """
    Per-run wiring. Everything here is optional.

    on_event:   synchronous listener called with every event, in order
    signal:     external cancellation token (Ctrl-C, client disconnect)
    steering:   controller whose queue is drained at turn boundaries and
                whose interruption token is checked with `signal`
    stream:     EventStream that receives every event
    history:    prior conversation to continue from
    hooks:      run-scoped hooks, run after the loop's own
    """
    on_event: Optional[EventListener] = None
    signal: Optional[CancellationToken] = None
    run_id: Optional[str] = None
    session_id: Optional[str] = None
    steering: Optional[SteeringController] = None
    stream: Optional[EventStream] = None
    history: list[Message] = field(default_factory=list)
    hooks: Optional[AgentHooks] = None


@dataclass
class _RunState:
    run_id: str
    session_id: str
    config: AgentConfig
    options: RunOptions
    model: str
    started_at: float
    started: float
    messages: list[Message] = field(default_factory=list)
    tool_executions: list[ToolExecutionResult] = field(default_factory=list)
    tool_calls_made: int = 0
    turns: int = 0
    plan: Optional[TaskPlan] = None
    summary: Optional[WorkingSummary] = None
    status: RunStatus = RunStatus.COMPLETED
    error: Optional[str] = None

    @property
    def deadline(self) -> float:
        return self.started + self.config.timeout_seconds


class AgentLoop:
    def __init__(
        self,
        provider: CompletionProvider,
        tool_bridge: Optional[ToolBridge] = None,
        context_manager: Optional[ContextManager] = None,
        planner: Optional[TaskPlanner] = None,
        router: Optional[ModelRouter] = None,
        config: Optional[AgentConfig] = None,
        session_id: str = "agent-session",
        hooks: Optional[AgentHooks] = None,
        routing_priority: RoutingPriority = RoutingPriority.LOCAL,
    ):
        self.provider = provider
        self.tool_bridge = tool_bridge
        self._config = config or AgentConfig()
        self.context_manager = context_manager or ContextManager(ContextConfig(
            max_context_tokens=self._config.max_context_tokens,
            reserved_tokens=self._config.reserved_tokens,
            compression_strategy=self._config.compression_strategy,
        ))
        self.planner = planner or TaskPlanner(
            max_context_tokens=self._config.max_context_tokens,
            reserved_tokens=self._config.reserved_tokens,
        )
        self.router = router or ModelRouter()
        self.session_id = session_id
        self.hooks = hooks or AgentHooks()
        self.routing_priority = RoutingPriority(routing_priority)

    # ── Config ────────────────────────────────────────────────────────────────

    @property
    def config(self) -> AgentConfig:
        return self._config

    def update_config(self, config: Optional[AgentConfig] = None, **changes: Any) -> AgentConfig:
        """
        Replace the config used by future runs. A run already in progress
        keeps the snapshot it started with.
        """
        base = config or self._config
        self._config = AgentConfig(**{**base.model_dump(), **changes}) if changes else base
        self.context_manager.update_config(
            max_context_tokens=self._config.max_context_tokens,
            reserved_tokens=self._config.reserved_tokens,
            compression_strategy=self._config.compression_strategy,
        )
        self.planner.max_context_tokens = self._config.max_context_tokens
        self.planner.reserved_tokens = self._config.reserved_tokens
        log.info("agent_loop.config_updated", model=self._config.model)
        return self._config

    # ─────────────────────────────────────────────────────────────────────────
    # Public: run
    # ─────────────────────────────────────────────────────────────────────────

    async def run(
        self,
        prompt: str,
        system_prompt: str = "",
        tools: Optional[list[ToolDefinition]] = None,
        options: Optional[RunOptions] = None,
    ) -> AgentResult:
        """
        Run the prompt to completion and return the terminal result.

        Raises:
            CompletionProviderError: the provider failed; `.result` holds the
                                     terminal AgentResult (status error).
            NoSuitableModelError:    model="auto" and no model fits.
        """
        options = options or RunOptions()
        config = self._config
        state = _RunState(
            run_id=options.run_id or create_run_id(),
            session_id=options.session_id or self.session_id,
            config=config,
            options=options,
            model=config.model,
            started_at=time.time(),
            started=time.monotonic(),
            messages=list(options.history),
        )
        hooks = self.hooks.merged(options.hooks)

        bind_run(state.run_id, state.session_id)
        log.info("agent_loop.run_start", model=config.model, prompt=prompt[:120])
        try:
            return await self._run(state, hooks, prompt, system_prompt, tools)
        finally:
            clear_run()

    async def _run(
        self,
        state: _RunState,
        hooks: AgentHooks,
        prompt: str,
        system_prompt: str,
        tools: Optional[list[ToolDefinition]],
    ) -> AgentResult:
        self._emit(state, AgentStartEvent(prompt=prompt, model=state.config.model))
        if tools is None:
            tools = await self._load_tools(state)

        ctx = HookContext(
            run_id=state.run_id,
            session_id=state.session_id,
            prompt=prompt,
            system_prompt=system_prompt,
            messages=list(state.messages),
            tools=tools,
            config=state.config,
            emit=lambda event: self._emit(state, event),
        )

        try:
            for hook in hooks.before_agent_start:
                update = await self._run_hook(state, hook, ctx)
                if isinstance(update, HookUpdate):
                    if update.prompt is not None:
                        ctx.prompt = update.prompt
                    if update.system_prompt is not None:
                        ctx.system_prompt = update.system_prompt
                    if update.messages is not None:
                        ctx.messages = list(update.messages)

            state.messages = list(ctx.messages)
            state.model = self._resolve_model(state, ctx.prompt, ctx.system_prompt, tools)
            state.messages.append(Message.user(ctx.prompt))
            await self._turns(state, ctx, tools)

        except asyncio.CancelledError:
            state.status, state.error = RunStatus.ABORTED, "cancelled"
            log.warning("agent_loop.cancelled", turns=state.turns)
            await self._finish(state, hooks, ctx, run_hooks=False)
            raise

        except Exception as e:
            state.status = RunStatus.ERROR
            state.error = str(e) or type(e).__name__
            log.error(
                "agent_loop.run_failed",
                error=state.error,
                error_type=type(e).__name__,
                turns=state.turns,
                exc_info=True,
            )
            self._emit(state, ErrorEvent(error=state.error, error_type=type(e).__name__))
            result = await self._finish(state, hooks, ctx)
            if isinstance(e, CompletionProviderError):
                e.result = result
            raise

        return await self._finish(state, hooks, ctx)

    # ─────────────────────────────────────────────────────────────────────────
    # Turn loop
    # ─────────────────────────────────────────────────────────────────────────

    async def _turns(self, state: _RunState, ctx: HookContext, tools: list[ToolDefinition]) -> None:
        steering = state.options.steering

        while True:
            stop = self._checkpoint(state)
            if stop is not None:
                self._stop(state, stop)
                return

            if state.turns >= state.config.max_turns:
                log.warning("agent_loop.max_turns", max_turns=state.config.max_turns)
                self._emit(state, WarningEvent(
                    message=f"Reached max turns ({state.config.max_turns})",
                    source="agent_loop",
                ))
                return

            state.turns += 1
            turn = state.turns
            if steering is not None:
                steering.current_turn_id = f"{state.run_id}:turn_{turn}"
            self._emit(state, TurnStartEvent(turn=turn))
            log.debug("agent_loop.turn_start", turn=turn, messages=len(state.messages))

            self._inject_steering(state)
            if turn == 1:
                self._maybe_plan(state, ctx.prompt, ctx.system_prompt)

            # Past the tool-call cap the model sees no tools, listed or offered.
            offered = tools if state.tool_calls_made < state.config.max_tool_calls else []
            system_prompt = self._with_tooling(ctx.system_prompt, offered) + self._plan_section(state)
            self._ensure_budget(state, system_prompt)

            completion = await self._complete(state, system_prompt, offered)

            content = completion.content
            calls = completion.tool_calls
            if not calls:
                inline = extract_inline_tool_calls(content)
                if inline:
                    content = strip_inline_tool_calls(content)
                    if offered:
                        calls = inline
                    else:
                        log.info("agent_loop.inline_calls_ignored", turn=turn, count=len(inline))
            state.messages.append(Message.assistant(content, tool_calls=calls))

            if not calls:
                self._emit(state, TurnEndEvent(turn=turn, tool_calls=0))
                self._advance_plan(state)
                return

            stop = await self._dispatch_tools(state, ctx, calls)
            self._emit(state, TurnEndEvent(turn=turn, tool_calls=len(calls)))
            if stop is not None:
                self._stop(state, stop)
                return

    def _checkpoint(self, state: _RunState) -> Optional[RunStatus]:
        """The one place a run observes its deadline and cancellation."""
        if time.monotonic() >= state.deadline:
            return RunStatus.TIMEOUT
        steering = state.options.steering
        token = first_cancelled(state.options.signal, steering.token if steering else None)
        if token is not None:
            state.error = f"Run aborted: {token.reason}"
            return RunStatus.ABORTED
        return None

    def _stop(self, state: _RunState, status: RunStatus) -> None:
        state.status = status
        if status == RunStatus.TIMEOUT:
            state.error = f"Run timed out after {state.config.timeout_ms} ms"
        log.warning("agent_loop.stopped", status=status.value, reason=state.error, turns=state.turns)

    def _inject_steering(self, state: _RunState) -> None:
        steering = state.options.steering
        if steering is None:
            return
        for entry in steering.take_pending():
            state.messages.append(entry.message)
            self._emit(state, MessageStartEvent(role=entry.message.role))
            self._emit(state, MessageEndEvent(role=entry.message.role, content=entry.message.content))
            log.info("agent_loop.steering_injected", message_id=entry.id, priority=entry.priority.value)

    # ── Completion ────────────────────────────────────────────────────────────

    async def _complete(
        self,
        state: _RunState,
        system_prompt: str,
        tools: list[ToolDefinition],
    ) -> CompletionResult:
        attempts = 0
        while True:
            try:
                return await self._stream_completion(state, system_prompt, tools)
            except LLMContextError as e:
                if attempts >= state.config.max_compaction_retries:
                    raise CompletionProviderError(
                        f"Context overflow persisted after {attempts} compaction(s): {e}"
                    ) from e
                attempts += 1
                estimator = self.context_manager.estimator_for(state.model)
                target = max(1, int(estimator.estimate_messages(state.messages) * _OVERFLOW_TARGET_RATIO))
                self._emit(state, WarningEvent(
                    message=f"Backend reported context overflow; compacting (attempt {attempts})",
                    source="context",
                ))
                self._compact(state, system_prompt, "context_overflow", target_tokens=target)
            except Exception as e:
                raise CompletionProviderError(f"Completion provider failed: {e}") from e

    async def _stream_completion(
        self,
        state: _RunState,
        system_prompt: str,
        tools: list[ToolDefinition],
    ) -> CompletionResult:
        options = CompletionOptions(
            model=state.model,
            temperature=state.config.temperature,
            timeout_seconds=max(0.001, state.deadline - time.monotonic()),
            run_id=state.run_id,
            session_id=state.session_id,
        )
        streamed: list[str] = []
        thinking: list[str] = []

        def on_delta(delta: CompletionDelta) -> None:
            if delta.thinking:
                if not thinking:
                    self._emit(state, ThinkingStartEvent())
                thinking.append(delta.thinking)
                self._emit(state, ThinkingDeltaEvent(delta=delta.thinking))
            if delta.content:
                streamed.append(delta.content)
                self._emit(state, MessageUpdateEvent(delta=delta.content))

        self._emit(state, MessageStartEvent(role=Role.ASSISTANT))
        try:
            result = await self.provider.complete(
                list(state.messages), system_prompt, tools, options, on_delta,
            )
        except BaseException:
            if thinking:
                self._emit(state, ThinkingEndEvent(content="".join(thinking)))
            self._emit(state, MessageEndEvent(role=Role.ASSISTANT, content="".join(streamed)))
            raise

        if thinking:
            self._emit(state, ThinkingEndEvent(content=result.thinking or "".join(thinking)))
        elif result.thinking:
            self._emit(state, ThinkingStartEvent())
            self._emit(state, ThinkingEndEvent(content=result.thinking))
        if not streamed and result.content:
            self._emit(state, MessageUpdateEvent(delta=result.content))
        self._emit(state, MessageEndEvent(role=Role.ASSISTANT, content=result.content))

        log.debug(
            "agent_loop.completion",
            model=state.model,
            tool_calls=len(result.tool_calls),
            content_chars=len(result.content),
            output_tokens=result.usage.output_tokens,
        )
        return result

    # ── Tools ─────────────────────────────────────────────────────────────────

    async def _dispatch_tools(
        self,
        state: _RunState,
        ctx: HookContext,
        calls: list[ToolCall],
    ) -> Optional[RunStatus]:
        for call in calls:
            stop = self._checkpoint(state)
            if stop is not None:
                return stop

            if state.tool_calls_made >= state.config.max_tool_calls:
                state.messages.append(Message.tool(
                    call.id, call.name, "Error: tool call limit reached", is_error=True,
                ))
                self._emit(state, WarningEvent(
                    message=f"Tool call limit ({state.config.max_tool_calls}) reached; skipped {call.name}",
                    source="tool_limit",
                ))
                continue

            state.tool_calls_made += 1
            await self._execute_tool(state, ctx, call)
        return None

    async def _execute_tool(self, state: _RunState, ctx: HookContext, call: ToolCall) -> ToolExecutionResult:
        args = dict(call.arguments)
        ctx.messages = list(state.messages)
        for hook in self._hooks_for(state).before_tool_call:
            replaced = await self._run_hook(state, hook, ctx, call.model_copy(update={"arguments": args}))
            if isinstance(replaced, dict):
                args = replaced

        self._emit(state, ToolExecutionStartEvent(tool_call_id=call.id, tool_name=call.name, args=args))
        log.info("agent_loop.tool_call", tool=call.name, tool_call_id=call.id)
        start = time.monotonic()

        try:
            if self.tool_bridge is None:
                raise ToolNotFoundError("No tool executor is configured", tool_name=call.name)
            result = await self.tool_bridge.execute_tool(
                call.name,
                args,
                session_id=state.session_id,
                tool_call_id=call.id,
                run_id=state.run_id,
                require_approval=state.config.require_approval,
                allow_dangerous=state.config.allow_dangerous_tools,
            )
        except ToolError as e:
            duration_ms = round((time.monotonic() - start) * 1000, 1)
            error = str(e)
            execution = ToolExecutionResult(
                tool_call_id=call.id,
                tool_name=call.name,
                args=args,
                error=error,
                duration_ms=duration_ms,
                success=False,
            )
            self._emit(state, ToolUpdateEvent(
                tool_call_id=call.id, tool_name=call.name, output=f"Error: {error}", duration_ms=duration_ms,
            ))
            self._emit(state, ToolErrorEvent(
                tool_call_id=call.id, tool_name=call.name, args=args, error=error, duration_ms=duration_ms,
            ))
            state.messages.append(Message.tool(call.id, call.name, f"Error: {error}", is_error=True))
            log.warning("agent_loop.tool_failed", tool=call.name, error=error, error_type=type(e).__name__)
        else:
            duration_ms = round((time.monotonic() - start) * 1000, 1)
            text = self.tool_bridge.format_result(result)
            execution = ToolExecutionResult(
                tool_call_id=call.id,
                tool_name=call.name,
                args=args,
                result=result,
                duration_ms=duration_ms,
            )
            self._emit(state, ToolUpdateEvent(
                tool_call_id=call.id, tool_name=call.name, output=text, duration_ms=duration_ms,
            ))
            self._emit(state, ToolResultEvent(
                tool_call_id=call.id, tool_name=call.name, args=args, result=result, duration_ms=duration_ms,
            ))
            state.messages.append(Message.tool(call.id, call.name, text))

        state.tool_executions.append(execution)
        for hook in self._hooks_for(state).after_tool_call:
            await self._run_hook(state, hook, ctx, execution)

        if state.summary is not None:
            if execution.success:
                patch = SummaryPatch(changes=[f"Tool {call.name} completed"])
            else:
                failure = f"Tool {call.name} failed: {execution.error or 'unknown error'}"
                patch = SummaryPatch(changes=[failure], open_questions=[failure])
            state.summary = self.planner.update_working_summary(state.summary, patch)
            self._emit(state, SummaryUpdateEvent(summary=state.summary))
        return execution

    async def _load_tools(self, state: _RunState) -> list[ToolDefinition]:
        if self.tool_bridge is None:
            return []
        try:
            return await self.tool_bridge.get_tool_definitions()
        except Exception as e:
            log.warning("agent_loop.tool_catalog_failed", error=str(e))
            self._emit(state, WarningEvent(message=f"Could not load tool catalog: {e}", source="tool_bridge"))
            return []

    # ── Planning ──────────────────────────────────────────────────────────────

    def _maybe_plan(self, state: _RunState, prompt: str, system_prompt: str) -> None:
        decision = self.planner.should_plan(prompt, system_prompt)
        log.debug(
            "agent_loop.plan_decision",
            should_plan=decision.should_plan,
            reason=decision.reason,
            total_tokens=decision.total_tokens,
        )
        if not decision.should_plan:
            return
        state.plan = self.planner.create_plan(prompt)
        state.summary = self.planner.create_working_summary(state.plan)
        self._emit(state, PlanCreatedEvent(plan=state.plan, reason=decision.reason))

    def _advance_plan(self, state: _RunState) -> None:
        if state.plan is None:
            return
        plan, finished, started = self.planner.advance(state.plan)
        if finished is None:
            return
        state.plan = plan
        self._emit(state, PlanStepEvent(step=finished, next_step=started))
        if state.summary is not None:
            state.summary = self.planner.update_working_summary(state.summary, SummaryPatch(
                changes=[f"Completed step: {finished.title}"],
                next_step=started.title if started else "",
            ))
            self._emit(state, SummaryUpdateEvent(summary=state.summary))

    @staticmethod
    def _plan_section(state: _RunState) -> str:
        if state.plan is None:
            return ""
        lines = [f"{i}. [{s.status.value}] {s.title}" for i, s in enumerate(state.plan.steps, 1)]
        return "\n\n## Plan\nWork through these steps in order:\n" + "\n".join(lines)

    # ── Context ───────────────────────────────────────────────────────────────

    def _ensure_budget(self, state: _RunState, system_prompt: str) -> None:
        if self.context_manager.needs_compression(state.messages, system_prompt, state.model):
            self._compact(state, system_prompt, "token_budget")

    def _compact(
        self,
        state: _RunState,
        system_prompt: str,
        reason: str,
        target_tokens: Optional[int] = None,
    ) -> None:
        if state.summary is not None:
            self._replace_with_summary(state, reason)

        before = len(state.messages)
        result = self.context_manager.compress_history(
            state.messages, system_prompt, state.model, target_tokens=target_tokens,
        )
        if not result.changed:
            return
        state.messages = result.messages
        self._emit(state, CompactionEvent(
            reason=reason,
            strategy=result.strategy_used,
            original_messages=before,
            compressed_messages=len(result.messages),
            original_tokens=result.original_token_count,
            compressed_tokens=result.compressed_token_count,
            compression_ratio=result.compression_ratio,
        ))
        self._emit(state, ContextReplaceEvent(
            reason=reason,
            original_messages=before,
            compressed_messages=len(result.messages),
        ))

    def _replace_with_summary(self, state: _RunState, reason: str) -> bool:
        """History becomes [first user message, working summary, last two messages]."""
        messages = state.messages
        start = max(0, len(messages) - 2)
        while start > 0 and messages[start].role == Role.TOOL:
            start -= 1
        tail = messages[start:]

        replaced: list[Message] = []
        first_user = next((m for m in messages if m.role == Role.USER), None)
        if first_user is not None and not any(first_user is m for m in tail):
            replaced.append(first_user)
        replaced.append(Message.user(
            state.summary.render(), synthetic=True, kind="working_summary",
        ))
        replaced.extend(tail)
        if len(replaced) >= len(messages):
            return False

        state.messages = replaced
        self._emit(state, ContextReplaceEvent(
            reason=f"summary_{reason}",
            original_messages=len(messages),
            compressed_messages=len(replaced),
        ))
        log.info("agent_loop.summary_replace", original=len(messages), replaced=len(replaced))
        return True

    # ── Model / prompt ────────────────────────────────────────────────────────

    def _resolve_model(
        self,
        state: _RunState,
        prompt: str,
        system_prompt: str,
        tools: list[ToolDefinition],
    ) -> str:
        if state.config.model != AUTO_MODEL:
            return state.config.model
        estimator = TokenEstimator()
        selection = self.router.select_model(TaskRequirements(
            estimated_input_tokens=(
                estimator.estimate(system_prompt)
                + estimator.estimate_messages(state.messages)
                + estimator.estimate(prompt)
            ),
            needs_tools=bool(tools),
            priority=self.routing_priority,
        ))
        log.info("agent_loop.model_routed", model=selection.model_id, reason=selection.reason)
        return selection.model_id

    @staticmethod
    def _with_tooling(system_prompt: str, tools: list[ToolDefinition]) -> str:
        if not tools or _TOOLING_RE.search(system_prompt):
            return system_prompt
        listing = "\n".join(f"- {t.name}: {t.description}" for t in tools)
        section = (
            "## Tooling\n"
            "Tool names are case-sensitive. Call tools exactly as listed.\n\n"
            f"{listing}"
        )
        return f"{system_prompt}\n\n{section}" if system_prompt else section

    # ── Finish ────────────────────────────────────────────────────────────────

    async def _finish(
        self,
        state: _RunState,
        hooks: AgentHooks,
        ctx: HookContext,
        run_hooks: bool = True,
    ) -> AgentResult:
        ended_at = time.time()
        result = AgentResult(
            response=_final_response(state.messages, state.tool_executions),
            tool_executions=list(state.tool_executions),
            messages=list(state.messages),
            turns=state.turns,
            duration_ms=round((time.monotonic() - state.started) * 1000, 1),
            run_id=state.run_id,
            session_id=state.session_id,
            started_at=state.started_at,
            ended_at=ended_at,
            status=state.status,
            model=state.model,
            error=state.error,
            plan=state.plan,
            summary=state.summary,
        )

        if run_hooks:
            ctx.messages = list(state.messages)
            for hook in hooks.on_agent_end:
                await self._run_hook(state, hook, ctx, result)

        self._emit(state, AgentEndEvent(
            status=result.status,
            response=result.response,
            turns=result.turns,
            duration_ms=result.duration_ms,
            error=result.error,
        ))
        log.info(
            "agent_loop.run_end",
            status=result.status.value,
            turns=result.turns,
            tool_calls=len(result.tool_executions),
            duration_ms=result.duration_ms,
        )
        return result

    # ── Emission / hooks ──────────────────────────────────────────────────────

    def _emit(self, state: _RunState, event: Any) -> None:
        event.run_id = state.run_id
        event.session_id = state.session_id
        if state.options.stream is not None:
            state.options.stream.push(event)
        if state.options.on_event is not None:
            try:
                state.options.on_event(event)
            except Exception as e:
                log.warning("agent_loop.listener_failed", event_type=event.type, error=str(e))

    def _hooks_for(self, state: _RunState) -> AgentHooks:
        return self.hooks.merged(state.options.hooks)

    async def _run_hook(self, state: _RunState, hook: Callable[..., Any], *args: Any) -> Any:
        try:
            return await call_hook(hook, *args)
        except Exception as e:
            name = hook_name(hook)
            log.warning("agent_loop.hook_failed", hook=name, error=str(e), exc_info=True)
            self._emit(state, WarningEvent(message=f"Hook {name} failed: {e}", source="hooks"))
            return None


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _final_response(messages: list[Message], executions: list[ToolExecutionResult]) -> str:
    """
    The last assistant text, minus NO_REPLY markers. When the run ended on
    something else, summarise failed tools, then fall back to the most
    recent assistant text.
    """
    if messages and messages[-1].role == Role.ASSISTANT:
        cleaned = _NO_REPLY_RE.sub("", messages[-1].content).strip()
        if cleaned:
            return cleaned

    failures = [e for e in executions if not e.success]
    if len(failures) == 1:
        return f"A tool failed: {failures[0].tool_name} - {failures[0].error or 'unknown error'}"
    if failures:
        details = "\n".join(f"- {f.tool_name}: {f.error or 'unknown error'}" for f in failures)
        return f"Multiple tools failed:\n{details}"

    for message in reversed(messages):
        if message.role == Role.ASSISTANT:
            cleaned = _NO_REPLY_RE.sub("", message.content).strip()
            if cleaned:
                return cleaned
    return ""
