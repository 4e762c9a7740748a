"""
agent/events.py — Agent Event Union

Every observable step of a run is one of the event models below. The set is
closed: AgentEvent is a pydantic discriminated union on `type`, so
serialised events round-trip through parse_event(), and consumers that
branch on event classes finish with assert_never() to fail type checking
when a new kind is added.

run_id, session_id and timestamp are stamped by the loop at emission.
"""

from __future__ import annotations

import json
import time
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union, assert_never

from pydantic import BaseModel, Field, TypeAdapter

from pincer.agent.types import RunStatus, TaskPlan, TaskPlanStep, WorkingSummary
from pincer.brain.types import Role


class EventType(str, Enum):
    AGENT_START = "agent_start"
    AGENT_END = "agent_end"
    TURN_START = "turn_start"
    TURN_END = "turn_end"
    MESSAGE_START = "message_start"
    MESSAGE_UPDATE = "message_update"
    MESSAGE_END = "message_end"
    TOOL_EXECUTION_START = "tool_execution_start"
    TOOL_UPDATE = "tool_update"
    TOOL_RESULT = "tool_result"
    TOOL_ERROR = "tool_error"
    THINKING_START = "thinking_start"
    THINKING_DELTA = "thinking_delta"
    THINKING_END = "thinking_end"
    MEMORY_SEARCH = "memory_search"
    MEMORY_SAVE = "memory_save"
    PLAN_CREATED = "plan_created"
    PLAN_STEP = "plan_step"
    SUMMARY_UPDATE = "summary_update"
    CONTEXT_REPLACE = "context_replace"
    COMPACTION = "compaction"
    ERROR = "error"
    WARNING = "warning"


class _EventBase(BaseModel):
    run_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


# ── Lifecycle ────────────────────────────────────────────────────────────────

class AgentStartEvent(_EventBase):
    type: Literal["agent_start"] = "agent_start"
    prompt: str = ""
    model: str = ""


class AgentEndEvent(_EventBase):
    type: Literal["agent_end"] = "agent_end"
    status: RunStatus
    response: str = ""
    turns: int = 0
    duration_ms: float = 0.0
    error: Optional[str] = None


class TurnStartEvent(_EventBase):
    type: Literal["turn_start"] = "turn_start"
    turn: int


class TurnEndEvent(_EventBase):
    type: Literal["turn_end"] = "turn_end"
    turn: int
    tool_calls: int = 0


# ── Messages ─────────────────────────────────────────────────────────────────

class MessageStartEvent(_EventBase):
    type: Literal["message_start"] = "message_start"
    role: Role


class MessageUpdateEvent(_EventBase):
    type: Literal["message_update"] = "message_update"
    role: Role = Role.ASSISTANT
    delta: str


class MessageEndEvent(_EventBase):
    type: Literal["message_end"] = "message_end"
    role: Role
    content: str = ""


# ── Tools ────────────────────────────────────────────────────────────────────

class ToolExecutionStartEvent(_EventBase):
    type: Literal["tool_execution_start"] = "tool_execution_start"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolUpdateEvent(_EventBase):
    type: Literal["tool_update"] = "tool_update"
    tool_call_id: str
    tool_name: str
    output: str = ""
    duration_ms: float = 0.0


class ToolResultEvent(_EventBase):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    duration_ms: float = 0.0


class ToolErrorEvent(_EventBase):
    type: Literal["tool_error"] = "tool_error"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    error: str
    duration_ms: float = 0.0


# ── Thinking ─────────────────────────────────────────────────────────────────

class ThinkingStartEvent(_EventBase):
    type: Literal["thinking_start"] = "thinking_start"


class ThinkingDeltaEvent(_EventBase):
    type: Literal["thinking_delta"] = "thinking_delta"
    delta: str


class ThinkingEndEvent(_EventBase):
    type: Literal["thinking_end"] = "thinking_end"
    content: str = ""


# ── Memory ───────────────────────────────────────────────────────────────────

class MemorySearchEvent(_EventBase):
    type: Literal["memory_search"] = "memory_search"
    query: str
    sessions_found: int = 0
    context_length: int = 0


class MemorySaveEvent(_EventBase):
    type: Literal["memory_save"] = "memory_save"
    saved: bool
    message_count: int = 0
    tool_count: int = 0


# ── Planning ─────────────────────────────────────────────────────────────────

class PlanCreatedEvent(_EventBase):
    type: Literal["plan_created"] = "plan_created"
    plan: TaskPlan
    reason: str = ""


class PlanStepEvent(_EventBase):
    type: Literal["plan_step"] = "plan_step"
    step: TaskPlanStep
    next_step: Optional[TaskPlanStep] = None


class SummaryUpdateEvent(_EventBase):
    type: Literal["summary_update"] = "summary_update"
    summary: WorkingSummary


# ── Context ──────────────────────────────────────────────────────────────────

class ContextReplaceEvent(_EventBase):
    type: Literal["context_replace"] = "context_replace"
    reason: str
    original_messages: int
    compressed_messages: int


class CompactionEvent(_EventBase):
    type: Literal["compaction"] = "compaction"
    reason: str
    strategy: str
    original_messages: int
    compressed_messages: int
    original_tokens: int = 0
    compressed_tokens: int = 0
    compression_ratio: float = 1.0


# ── Diagnostics ──────────────────────────────────────────────────────────────

class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    error: str
    error_type: str = ""


class WarningEvent(_EventBase):
    type: Literal["warning"] = "warning"
    message: str
    source: str = ""


AgentEvent = Annotated[
    Union[
        AgentStartEvent,
        AgentEndEvent,
        TurnStartEvent,
        TurnEndEvent,
        MessageStartEvent,
        MessageUpdateEvent,
        MessageEndEvent,
        ToolExecutionStartEvent,
        ToolUpdateEvent,
        ToolResultEvent,
        ToolErrorEvent,
        ThinkingStartEvent,
        ThinkingDeltaEvent,
        ThinkingEndEvent,
        MemorySearchEvent,
        MemorySaveEvent,
        PlanCreatedEvent,
        PlanStepEvent,
        SummaryUpdateEvent,
        ContextReplaceEvent,
        CompactionEvent,
        ErrorEvent,
        WarningEvent,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[AgentEvent] = TypeAdapter(AgentEvent)


def parse_event(data: dict[str, Any] | str) -> AgentEvent:
    """Rebuild a typed event from its dict or JSON form."""
    if isinstance(data, str):
        data = json.loads(data)
    return _adapter.validate_python(data)


def is_agent_end(event: AgentEvent) -> bool:
    return isinstance(event, AgentEndEvent)


def describe_event(event: AgentEvent) -> str:
    """One-line human summary of an event (CLI transcripts, debug logs)."""
    if isinstance(event, AgentStartEvent):
        return f"run started ({event.model})"
    elif isinstance(event, AgentEndEvent):
        return f"run {event.status.value} after {event.turns} turn(s)"
    elif isinstance(event, TurnStartEvent):
        return f"turn {event.turn}"
    elif isinstance(event, TurnEndEvent):
        return f"turn {event.turn} done ({event.tool_calls} tool call(s))"
    elif isinstance(event, MessageStartEvent):
        return f"{event.role.value} message"
    elif isinstance(event, MessageUpdateEvent):
        return event.delta
    elif isinstance(event, MessageEndEvent):
        return f"{event.role.value} message complete"
    elif isinstance(event, ToolExecutionStartEvent):
        return f"→ {event.tool_name}({', '.join(event.args)})"
    elif isinstance(event, ToolUpdateEvent):
        return f"… {event.tool_name}"
    elif isinstance(event, ToolResultEvent):
        return f"✓ {event.tool_name} ({event.duration_ms:.0f} ms)"
    elif isinstance(event, ToolErrorEvent):
        return f"✗ {event.tool_name}: {event.error}"
    elif isinstance(event, ThinkingStartEvent):
        return "thinking…"
    elif isinstance(event, ThinkingDeltaEvent):
        return event.delta
    elif isinstance(event, ThinkingEndEvent):
        return "thinking done"
    elif isinstance(event, MemorySearchEvent):
        return f"memory: {event.sessions_found} related session(s)"
    elif isinstance(event, MemorySaveEvent):
        return "memory: saved" if event.saved else "memory: not saved"
    elif isinstance(event, PlanCreatedEvent):
        return f"plan: {len(event.plan.steps)} step(s)"
    elif isinstance(event, PlanStepEvent):
        return f"plan: finished '{event.step.title}'"
    elif isinstance(event, SummaryUpdateEvent):
        return "summary updated"
    elif isinstance(event, ContextReplaceEvent):
        return f"context {event.original_messages} → {event.compressed_messages} messages ({event.reason})"
    elif isinstance(event, CompactionEvent):
        return f"compacted with {event.strategy} (ratio {event.compression_ratio:.2f})"
    elif isinstance(event, ErrorEvent):
        return f"error: {event.error}"
    elif isinstance(event, WarningEvent):
        return f"warning: {event.message}"
    else:
        assert_never(event)
