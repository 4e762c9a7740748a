"""
agent/tool_bridge.py — Tool Bridge

Adapts the loop's tool-call contract to a concrete Tool Executor.

Flow:
  model tool_call → ToolBridge.execute_tool()
    → Catalog lookup                 (ToolNotFoundError)
    → Dangerous-tool policy          (ApprovalDeniedError)
    → Argument validation            (ToolValidationError)
    → Approval gate, when required   (ApprovalDeniedError)
    → Executor call, with timeout    (ToolExecutionError)
    → raw result

Unlike a fire-and-report bus, the bridge raises typed ToolErrors; the agent
loop turns them into tool-role messages and tool_error events.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from pydantic import BaseModel

from pincer.agent.approval import ApprovalGate, ApprovalRequest, auto_approve
from pincer.agent.types import ToolContext
from pincer.brain.types import ToolDefinition
from pincer.exceptions import (
    ApprovalDeniedError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolValidationError,
)
from pincer.observability.logger import get_logger

log = get_logger(__name__)

# Max tool output fed back to the model
MAX_RESULT_CHARS = 8_000

DEFAULT_TIMEOUT_SECONDS = 30.0


@runtime_checkable
class ToolExecutor(Protocol):
    """External capability invoked by name. See pincer.tools.registry for one."""

    async def list_tools(self) -> list[ToolDefinition]:
        ...

    async def call(self, name: str, args: dict[str, Any], context: ToolContext) -> Any:
        ...


class ToolBridgeStats(BaseModel):
    total_tools: int
    dangerous_tools: int
    tools_requiring_approval: int
    executions: int
    failures: int
    denials: int


class ToolBridge:
    """
    Usage:
        bridge = ToolBridge(registry, workspace_root="./data/workspace")
        tools = await bridge.get_tool_definitions()
        result = await bridge.execute_tool("read_file", {"path": "a.txt"}, session_id="s1")
    """

    def __init__(
        self,
        executor: ToolExecutor,
        workspace_root: str | Path | None = None,
        approval_gate: Optional[ApprovalGate] = None,
        require_approval: bool = True,
        allow_dangerous_tools: bool = False,
        timeout_seconds: Optional[float] = DEFAULT_TIMEOUT_SECONDS,
        max_result_chars: int = MAX_RESULT_CHARS,
    ):
        """
        Args:
            executor:              Tool Executor collaborator.
            workspace_root:        Injected into every ToolContext (default: cwd).
            approval_gate:         Consulted for requires_approval tools.
            require_approval:      Default policy; a run's AgentConfig overrides it.
            allow_dangerous_tools: Default policy; a run's AgentConfig overrides it.
            timeout_seconds:       Per-call limit, None for no limit.
            max_result_chars:      Truncation limit for text fed back to the model.
        """
        self.executor = executor
        self.workspace_root = str(Path(workspace_root) if workspace_root else Path.cwd())
        self.approval_gate = approval_gate or auto_approve
        self.require_approval = require_approval
        self.allow_dangerous_tools = allow_dangerous_tools
        self.timeout_seconds = timeout_seconds
        self.max_result_chars = max_result_chars
        self._catalog: dict[str, ToolDefinition] = {}
        self._executions = 0
        self._failures = 0
        self._denials = 0

    # ── Catalog ───────────────────────────────────────────────────────────────

    async def get_tool_definitions(self, refresh: bool = False) -> list[ToolDefinition]:
        """Fetch the executor's catalog, filling in missing descriptions/schemas."""
        if self._catalog and not refresh:
            return list(self._catalog.values())

        shaped: dict[str, ToolDefinition] = {}
        for tool in await self.executor.list_tools():
            shaped[tool.name] = tool.model_copy(update={
                "description": tool.description or f"Execute {tool.name} tool",
                "parameters": tool.parameters or {"type": "object", "properties": {}, "required": []},
            })
        self._catalog = shaped
        log.debug("tool_bridge.catalog", tools=list(shaped))
        return list(shaped.values())

    # ── Execution ─────────────────────────────────────────────────────────────

    async def execute_tool(
        self,
        name: str,
        args: dict[str, Any],
        session_id: str = "agent-session",
        tool_call_id: Optional[str] = None,
        run_id: Optional[str] = None,
        require_approval: Optional[bool] = None,
        allow_dangerous: Optional[bool] = None,
    ) -> Any:
        """
        Run one tool call and return its raw result.

        Raises:
            ToolNotFoundError, ApprovalDeniedError, ToolValidationError,
            ToolExecutionError
        """
        tool_call_id = tool_call_id or f"tool_{uuid.uuid4().hex[:10]}"
        require_approval = self.require_approval if require_approval is None else require_approval
        allow_dangerous = self.allow_dangerous_tools if allow_dangerous is None else allow_dangerous

        # ── Step 1: Catalog lookup ────────────────────────────────────────────
        if name not in self._catalog:
            await self.get_tool_definitions(refresh=True)
        tool = self._catalog.get(name)
        if tool is None:
            log.warning("tool_bridge.unknown_tool", tool=name, tool_call_id=tool_call_id)
            raise ToolNotFoundError(
                f"Unknown tool '{name}'. Available tools: {sorted(self._catalog)}",
                tool_name=name,
            )

        # ── Step 2: Dangerous-tool policy ─────────────────────────────────────
        if tool.dangerous and not allow_dangerous:
            self._denials += 1
            log.warning("tool_bridge.dangerous_blocked", tool=name, tool_call_id=tool_call_id)
            raise ApprovalDeniedError(
                f"Tool '{name}' is marked dangerous and dangerous tools are disabled.",
                tool_name=name,
            )

        # ── Step 3: Argument validation ───────────────────────────────────────
        problem = _validate_args(args, tool.parameters)
        if problem:
            self._failures += 1
            raise ToolValidationError(f"Invalid parameters: {problem}", tool_name=name)

        # ── Step 4: Approval gate ─────────────────────────────────────────────
        if tool.requires_approval and require_approval:
            approved = await self._ask_approval(ApprovalRequest(
                tool_call_id=tool_call_id,
                tool_name=name,
                args=args,
                session_id=session_id,
            ))
            if not approved:
                self._denials += 1
                raise ApprovalDeniedError(f"Action denied: '{name}' was not approved.", tool_name=name)

        # ── Step 5: Execute ───────────────────────────────────────────────────
        context = ToolContext(
            session_id=session_id,
            workspace_root=self.workspace_root,
            tool_call_id=tool_call_id,
            run_id=run_id,
        )
        start = time.monotonic()
        self._executions += 1
        try:
            call = self.executor.call(name, args, context)
            if self.timeout_seconds is not None:
                result = await asyncio.wait_for(call, timeout=self.timeout_seconds)
            else:
                result = await call
        except asyncio.TimeoutError as e:
            self._failures += 1
            log.error("tool_bridge.timeout", tool=name, timeout_seconds=self.timeout_seconds)
            raise ToolExecutionError(
                f"Tool '{name}' timed out after {self.timeout_seconds}s", tool_name=name,
            ) from e
        except Exception as e:
            self._failures += 1
            log.error(
                "tool_bridge.execution_error",
                tool=name,
                tool_call_id=tool_call_id,
                error=str(e),
                exc_info=True,
            )
            raise ToolExecutionError(
                f"Tool execution failed: {type(e).__name__}: {e}", tool_name=name,
            ) from e

        failure = _failure_of(result)
        if failure is not None:
            self._failures += 1
            raise ToolExecutionError(failure or f"Tool {name} execution failed", tool_name=name)

        log.info(
            "tool_bridge.success",
            tool=name,
            tool_call_id=tool_call_id,
            duration_ms=round((time.monotonic() - start) * 1000, 1),
        )
        return _unwrap(result)

    def format_result(self, result: Any) -> str:
        return format_tool_result(result, self.max_result_chars)

    async def get_stats(self) -> ToolBridgeStats:
        tools = await self.get_tool_definitions()
        return ToolBridgeStats(
            total_tools=len(tools),
            dangerous_tools=sum(1 for t in tools if t.dangerous),
            tools_requiring_approval=sum(1 for t in tools if t.requires_approval),
            executions=self._executions,
            failures=self._failures,
            denials=self._denials,
        )

    async def _ask_approval(self, request: ApprovalRequest) -> bool:
        try:
            return bool(await self.approval_gate(request))
        except Exception as e:
            log.error("tool_bridge.approval_gate_error", tool=request.tool_name, error=str(e))
            return False


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


_JSON_TYPE_MAP: dict[str, type | tuple] = {
    "string":  str,
    "integer": int,
    "number":  (int, float),
    "boolean": bool,
    "array":   list,
    "object":  dict,
}


def _validate_args(arguments: dict[str, Any], schema: dict[str, Any]) -> Optional[str]:
    """
    Check required fields and declared primitive types.
    Returns an error string if invalid, None if valid.
    """
    for field in schema.get("required", []):
        if field not in arguments:
            return f"Missing required field: '{field}'"

    properties = schema.get("properties", {})
    for field, value in arguments.items():
        json_type = properties.get(field, {}).get("type")
        expected = _JSON_TYPE_MAP.get(json_type) if isinstance(json_type, str) else None
        if expected is None:
            continue
        # bool is a subclass of int
        if json_type in ("integer", "number") and isinstance(value, bool):
            return f"Field '{field}': expected {json_type}, got boolean"
        if not isinstance(value, expected):
            return f"Field '{field}': expected {json_type}, got {type(value).__name__}"
    return None


def _failure_of(result: Any) -> Optional[str]:
    """Error text when an executor reports failure instead of raising, else None."""
    if isinstance(result, dict) and result.get("success") is False:
        return str(result.get("error") or "")
    if getattr(result, "success", None) is False:
        return str(getattr(result, "error", "") or "")
    return None


def _unwrap(result: Any) -> Any:
    """Executors may return {"success": True, "result": ...} envelopes."""
    if isinstance(result, dict) and result.get("success") is True and "result" in result:
        return result["result"]
    return result


def format_tool_result(result: Any, max_chars: int = MAX_RESULT_CHARS) -> str:
    """Render a tool result as text for the model, truncated with a notice."""
    if result is None:
        text = "Done."
    elif isinstance(result, str):
        text = result
    elif isinstance(result, BaseModel):
        text = result.model_dump_json(indent=2)
    elif isinstance(result, (dict, list)):
        try:
            text = json.dumps(result, indent=2, default=str)
        except (TypeError, ValueError):
            text = str(result)
    else:
        text = str(result)

    if len(text) <= max_chars:
        return text
    return (
        text[:max_chars]
        + f"\n\n[Output truncated — {len(text) - max_chars} chars omitted. "
        f"Total: {len(text)} chars]"
    )
