"""
agent/ — Pincer Agent Runtime

Public API:
    from pincer.agent import AgentLoop, RunQueue, SteeringController, compose

Component overview:
    AgentLoop            Turn/tool state machine for one run
    RunQueue             Serialises runs per session, runs sessions concurrently
    SteeringController   Priority queue of out-of-band messages + interruption
    EventStream          Ordered fan-out delivery of one run's events
    ToolBridge           Validates, approves and dispatches tool calls
    TaskPlanner          Plan decision, step extraction, working summary
    middleware           compose(core, with_steering, with_memory, with_event_sink)
"""

from pincer.agent.approval import ApprovalRequest, TimedApprovalGate, auto_approve, deny_all, gate_for_mode
from pincer.agent.cancellation import CancellationToken
from pincer.agent.event_stream import EventStream
from pincer.agent.events import AgentEvent, EventType, describe_event, parse_event
from pincer.agent.hooks import AgentHooks, HookContext, HookUpdate
from pincer.agent.loop import AgentLoop, RunOptions
from pincer.agent.middleware import (
    RunRequest,
    Runner,
    compose,
    core_runner,
    with_event_sink,
    with_memory,
    with_steering,
)
from pincer.agent.run_queue import RunQueue, create_run_id
from pincer.agent.steering import MessagePriority, QueuedMessage, SteeringController
from pincer.agent.streaming import SSE_HEADERS, event_to_sse, stream_run
from pincer.agent.task_planner import TaskPlanner
from pincer.agent.tool_bridge import ToolBridge, ToolExecutor
from pincer.agent.types import (
    AgentConfig,
    AgentResult,
    RunMetadata,
    RunStatus,
    TaskPlan,
    TaskPlanStep,
    ToolExecutionResult,
    WorkingSummary,
)

__all__ = [
    "AgentLoop",
    "RunOptions",
    "RunQueue",
    "create_run_id",
    "SteeringController",
    "MessagePriority",
    "QueuedMessage",
    "EventStream",
    "AgentEvent",
    "EventType",
    "describe_event",
    "parse_event",
    "ToolBridge",
    "ToolExecutor",
    "TaskPlanner",
    "AgentHooks",
    "HookContext",
    "HookUpdate",
    "RunRequest",
    "Runner",
    "compose",
    "core_runner",
    "with_event_sink",
    "with_memory",
    "with_steering",
    "SSE_HEADERS",
    "event_to_sse",
    "stream_run",
    "CancellationToken",
    "ApprovalRequest",
    "TimedApprovalGate",
    "auto_approve",
    "deny_all",
    "gate_for_mode",
    "AgentConfig",
    "AgentResult",
    "RunMetadata",
    "RunStatus",
    "TaskPlan",
    "TaskPlanStep",
    "ToolExecutionResult",
    "WorkingSummary",
]
