"""
brain/types.py — Pincer Brain Data Models

Shared types used by the completion provider, the agent loop and the
context layer. Providers map their native response shapes into these.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"           # tool result fed back to the model


# ─────────────────────────────────────────────────────────────────────────────
# Tool calling types
# ─────────────────────────────────────────────────────────────────────────────


class ToolCall(BaseModel):
    """A single tool invocation requested by the model."""
    id: str = Field(..., description="Correlation id for this call")
    name: str = Field(..., description="Tool name to call")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Parsed JSON arguments")


class ToolDefinition(BaseModel):
    """
    Provider-agnostic tool definition, supplied by the Tool Executor.

    requires_approval routes the call through the approval gate;
    dangerous tools are refused unless the run allows them.
    """
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    requires_approval: bool = False
    dangerous: bool = False

    def to_llm_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    A single message in the conversation.

    Assistant messages that request tools carry tool_calls; tool-role
    messages carry the tool_call_id and tool name they answer.
    """
    role: Role
    content: str = ""
    timestamp: float = Field(default_factory=time.time)
    tokens: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def system(cls, content: str, **metadata: Any) -> "Message":
        return cls(role=Role.SYSTEM, content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> "Message":
        return cls(role=Role.USER, content=content, metadata=metadata)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Optional[list[ToolCall]] = None,
        **metadata: Any,
    ) -> "Message":
        return cls(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=tool_calls or [],
            metadata=metadata,
        )

    @classmethod
    def tool(
        cls,
        tool_call_id: str,
        name: str,
        content: str,
        is_error: bool = False,
    ) -> "Message":
        return cls(
            role=Role.TOOL,
            content=content,
            tool_call_id=tool_call_id,
            name=name,
            metadata={"tool": name, "is_error": is_error},
        )

    @property
    def is_synthetic(self) -> bool:
        return bool(self.metadata.get("synthetic"))


# ─────────────────────────────────────────────────────────────────────────────
# Completion request / response
# ─────────────────────────────────────────────────────────────────────────────


class CompletionOptions(BaseModel):
    """Per-request options passed to CompletionProvider.complete()."""
    model: str
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    timeout_seconds: Optional[float] = None
    run_id: Optional[str] = None
    session_id: Optional[str] = None


class CompletionDelta(BaseModel):
    """One streamed fragment; either field may be empty."""
    content: str = ""
    thinking: str = ""


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class CompletionResult(BaseModel):
    """Normalised provider response."""
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    thinking: str = ""
    model: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0
