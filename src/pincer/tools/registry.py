"""
tools/registry.py — Tool Registry

Decorator-based Tool Executor: maps tool names to their definitions and
async handlers. ToolBridge talks to it through list_tools() / call().

Handlers receive the call's arguments as keyword arguments. A handler
that declares a `context` parameter also receives the ToolContext
(session id, workspace root, correlation id).

Usage:
    registry = ToolRegistry()

    @registry.register(
        name="read_file",
        description="Read a text file from the workspace",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    )
    async def read_file(path: str, context: ToolContext) -> str:
        ...

    bridge = ToolBridge(registry)
"""

from __future__ import annotations

import inspect
from typing import Any, Callable, Optional

from pincer.agent.types import ToolContext
from pincer.brain.types import ToolDefinition
from pincer.exceptions import ToolNotFoundError
from pincer.observability.logger import get_logger

log = get_logger(__name__)


class ToolRegistry:
    """
    Registry that maps tool names to their definitions and async handlers.

    Thread-safe for reads (dict lookups). Not designed for concurrent writes.
    """

    def __init__(self) -> None:
        self._definitions: dict[str, ToolDefinition] = {}
        self._handlers: dict[str, Callable] = {}
        self._disabled: set[str] = set()

    def register(
        self,
        name: str,
        description: str = "",
        parameters: Optional[dict[str, Any]] = None,
        requires_approval: bool = False,
        dangerous: bool = False,
    ) -> Callable:
        """Decorator to register an async tool handler."""
        def decorator(fn: Callable) -> Callable:
            self.register_tool(
                ToolDefinition(
                    name=name,
                    description=description,
                    parameters=parameters or {"type": "object", "properties": {}, "required": []},
                    requires_approval=requires_approval,
                    dangerous=dangerous,
                ),
                fn,
            )
            return fn

        return decorator

    def register_tool(self, definition: ToolDefinition, handler: Callable) -> None:
        """Programmatic registration (alternative to decorator)."""
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Tool handler for '{definition.name}' must be an async function")
        self._definitions[definition.name] = definition
        self._handlers[definition.name] = handler
        log.debug(
            "tool.registered",
            tool=definition.name,
            requires_approval=definition.requires_approval,
            dangerous=definition.dangerous,
        )

    def unregister(self, name: str) -> bool:
        self._handlers.pop(name, None)
        self._disabled.discard(name)
        return self._definitions.pop(name, None) is not None

    def get_definition(self, name: str) -> Optional[ToolDefinition]:
        return self._definitions.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._definitions

    def enable(self, name: str) -> None:
        self._disabled.discard(name)

    def disable(self, name: str) -> None:
        if name in self._definitions:
            self._disabled.add(name)

    # ── Tool Executor protocol ────────────────────────────────────────────────

    async def list_tools(self) -> list[ToolDefinition]:
        return [d for n, d in self._definitions.items() if n not in self._disabled]

    async def call(self, name: str, args: dict[str, Any], context: ToolContext) -> Any:
        handler = self._handlers.get(name)
        if handler is None or name in self._disabled:
            raise ToolNotFoundError(f"Tool '{name}' is not registered", tool_name=name)

        kwargs = dict(args)
        if "context" in inspect.signature(handler).parameters:
            kwargs["context"] = context
        return await handler(**kwargs)

    def __len__(self) -> int:
        return len(self._definitions)

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={list(self._definitions.keys())}>"
