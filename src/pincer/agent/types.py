"""
agent/types.py — Agent Runtime Data Models

Config, run results, plan and run-queue metadata shared across the agent
package. Runtime-only coordination state (steering queue entries, hook
contexts) lives next to the component that owns it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pincer.brain.types import Message
from pincer.context.types import CompressionStrategy


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.ABORTED, RunStatus.TIMEOUT,
})


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"


# ─────────────────────────────────────────────────────────────────────────────
# Config
# ─────────────────────────────────────────────────────────────────────────────


class AgentConfig(BaseModel):
    """
    Per-run configuration. Frozen: a run snapshots the loop's config at entry,
    and AgentLoop.update_config() swaps in a new instance between runs.

    model="auto" asks the loop's ModelRouter to pick a model per run.
    """
    model_config = ConfigDict(frozen=True)

    model: str = "ollama/llama3.1:8b"
    temperature: float = 0.7
    max_tool_calls: int = 5
    max_turns: int = 10
    timeout_ms: int = 120_000
    allow_dangerous_tools: bool = False
    require_approval: bool = True
    max_context_tokens: int = 8192
    reserved_tokens: int = 1000
    compression_strategy: CompressionStrategy = CompressionStrategy.HYBRID
    max_compaction_retries: int = 1

    @model_validator(mode="after")
    def _check_limits(self) -> "AgentConfig":
        if self.max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        if self.max_tool_calls < 0:
            raise ValueError("max_tool_calls must be >= 0")
        if self.timeout_ms < 1:
            raise ValueError("timeout_ms must be >= 1")
        if self.reserved_tokens >= self.max_context_tokens:
            raise ValueError("reserved_tokens must be smaller than max_context_tokens")
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


# ─────────────────────────────────────────────────────────────────────────────
# Tool execution
# ─────────────────────────────────────────────────────────────────────────────


class ToolContext(BaseModel):
    """Execution context handed to the Tool Executor with every call."""
    session_id: str
    workspace_root: str
    tool_call_id: str
    run_id: Optional[str] = None


class ToolExecutionResult(BaseModel):
    """One executed (or rejected) tool call, recorded on the AgentResult."""
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    success: bool = True


# ─────────────────────────────────────────────────────────────────────────────
# Planning
# ─────────────────────────────────────────────────────────────────────────────


class TaskPlanStep(BaseModel):
    id: str
    title: str
    status: StepStatus = StepStatus.PENDING


class TaskPlan(BaseModel):
    id: str
    steps: list[TaskPlanStep] = Field(default_factory=list)
    summary: str = ""
    created_at: float

    @property
    def current_step(self) -> Optional[TaskPlanStep]:
        return next((s for s in self.steps if s.status == StepStatus.IN_PROGRESS), None)

    @property
    def next_pending(self) -> Optional[TaskPlanStep]:
        return next((s for s in self.steps if s.status == StepStatus.PENDING), None)

    @property
    def is_complete(self) -> bool:
        return all(s.status == StepStatus.DONE for s in self.steps)


class WorkingSummary(BaseModel):
    changes: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)
    next_step: Optional[str] = None
    updated_at: float

    def render(self) -> str:
        """Text form injected into history when compaction replaces it."""
        parts = ["## Working Summary"]
        if self.changes:
            parts.append("Changes:\n" + "\n".join(f"- {c}" for c in self.changes))
        if self.decisions:
            parts.append("Decisions:\n" + "\n".join(f"- {d}" for d in self.decisions))
        if self.open_questions:
            parts.append("Open questions:\n" + "\n".join(f"- {q}" for q in self.open_questions))
        if self.next_step:
            parts.append(f"Next step: {self.next_step}")
        return "\n\n".join(parts)


class SummaryPatch(BaseModel):
    changes: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)
    next_step: Optional[str] = None


class PlanDecision(BaseModel):
    should_plan: bool
    reason: str             # prompt_length | complexity_keywords | not_needed | disabled
    prompt_tokens: int
    system_tokens: int
    total_tokens: int
    threshold: int


# ─────────────────────────────────────────────────────────────────────────────
# Run results
# ─────────────────────────────────────────────────────────────────────────────


class AgentResult(BaseModel):
    """Terminal outcome of one AgentLoop.run()."""
    response: str = ""
    tool_executions: list[ToolExecutionResult] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    turns: int = 0
    duration_ms: float = 0.0
    run_id: str
    session_id: str
    started_at: float
    ended_at: float
    status: RunStatus
    model: str = ""
    error: Optional[str] = None
    plan: Optional[TaskPlan] = None
    summary: Optional[WorkingSummary] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED


class RunMetadata(BaseModel):
    """
    Lifecycle record for one queued run. Frozen: RunQueue replaces the stored
    instance on every transition, so any instance handed out is a stable
    point-in-time snapshot.
    """
    model_config = ConfigDict(frozen=True)

    run_id: str
    session_id: str
    status: RunStatus = RunStatus.QUEUED
    queued_at: float
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    error: Optional[str] = None


class EnqueueResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    meta: RunMetadata
    result: Any = None
