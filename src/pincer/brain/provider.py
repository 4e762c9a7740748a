"""
brain/provider.py — Completion Provider Contract

The agent loop talks to a language model only through this protocol.
Implementations stream partial content through on_delta while the call is
in flight and resolve with the full content plus any requested tool calls.

Implementations should raise LLMError subclasses from pincer.exceptions;
LLMContextError in particular lets the loop compact and retry.
"""

from __future__ import annotations

from typing import Callable, Optional, Protocol, runtime_checkable

from pincer.brain.types import (
    CompletionDelta,
    CompletionOptions,
    CompletionResult,
    Message,
    ToolDefinition,
)

DeltaCallback = Callable[[CompletionDelta], None]


@runtime_checkable
class CompletionProvider(Protocol):
    async def complete(
        self,
        history: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition],
        options: CompletionOptions,
        on_delta: Optional[DeltaCallback] = None,
    ) -> CompletionResult:
        ...
