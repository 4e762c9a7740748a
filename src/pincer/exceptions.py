"""
exceptions.py — Pincer Unified Error Hierarchy

All Pincer-specific exceptions live here. Every layer of the runtime
raises typed subclasses of PincerError — never bare Exception.

Import from here, not from individual modules:
    from pincer.exceptions import ToolNotFoundError, NoSuitableModelError

Hierarchy:
    PincerError
    ├── AgentError
    │   ├── CompletionProviderError
    │   ├── RunTimeoutError
    │   └── RunAbortedError
    ├── ToolError
    │   ├── ToolNotFoundError
    │   ├── ToolExecutionError
    │   │   └── ToolValidationError
    │   └── ApprovalDeniedError
    ├── RoutingError
    │   └── NoSuitableModelError
    ├── RunQueueError
    │   └── DuplicateRunError
    └── LLMError
        ├── LLMConnectionError
        ├── LLMRateLimitError
        ├── LLMContextError
        └── LLMInvalidRequestError
"""

from __future__ import annotations

from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class PincerError(Exception):
    """Base class for all Pincer exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Agent layer
# ─────────────────────────────────────────────────────────────────────────────

class AgentError(PincerError):
    """Base for agent loop errors."""


class CompletionProviderError(AgentError):
    """
    The completion provider failed in a way the loop cannot recover from.

    The terminal AgentResult (status=error) is attached as `result` so the
    caller still gets the best available response text and tool history.
    """

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result


class RunTimeoutError(AgentError):
    """A run exceeded its timeout_ms deadline."""


class RunAbortedError(AgentError):
    """A run was cancelled by its caller or by a steering interruption."""


# ─────────────────────────────────────────────────────────────────────────────
# Tool layer
# ─────────────────────────────────────────────────────────────────────────────

class ToolError(PincerError):
    """Base for all tool dispatch errors."""

    def __init__(self, message: str, tool_name: str = ""):
        super().__init__(message)
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Requested tool is not in the executor's catalog."""


class ToolExecutionError(ToolError):
    """The tool executor raised or reported a failure."""


class ToolValidationError(ToolExecutionError):
    """Arguments do not satisfy the tool's parameter schema."""


class ApprovalDeniedError(ToolError):
    """The approval gate refused the call (or dangerous tools are disabled)."""


# ─────────────────────────────────────────────────────────────────────────────
# Model routing
# ─────────────────────────────────────────────────────────────────────────────

class RoutingError(PincerError):
    """Base for model selection errors."""


class NoSuitableModelError(RoutingError):
    """No model in the table satisfies the task requirements."""


# ─────────────────────────────────────────────────────────────────────────────
# Run queue
# ─────────────────────────────────────────────────────────────────────────────

class RunQueueError(PincerError):
    """Base for run queue errors."""


class DuplicateRunError(RunQueueError):
    """A run with this run_id is already tracked by the queue."""


# ─────────────────────────────────────────────────────────────────────────────
# LLM provider layer
# ─────────────────────────────────────────────────────────────────────────────

class LLMError(PincerError):
    """Base exception for all completion backend errors."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class LLMConnectionError(LLMError):
    """Backend unreachable or authentication failed."""


class LLMRateLimitError(LLMError):
    """Rate limit hit."""

    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider, status_code=429)
        self.retry_after = retry_after


class LLMContextError(LLMError):
    """Input exceeds the model's context window."""


class LLMInvalidRequestError(LLMError):
    """Bad request — invalid parameters or unsupported feature."""
