"""
tools/workspace.py — Workspace File Tools

A small built-in tool set for the CLI: read, write and list files inside
the run's workspace root (ToolContext.workspace_root). Paths resolving
outside the workspace are refused.

Registered tools:
  - list_files   → list a directory
  - read_file    → read a text file
  - write_file   → write/overwrite a text file (requires approval)
"""

from __future__ import annotations

import json
from pathlib import Path

from pincer.agent.types import ToolContext
from pincer.tools.registry import ToolRegistry

# Hard cap: refuse to load files larger than this into the model context
_MAX_READ_BYTES = 1 * 1024 * 1024  # 1 MB


def _resolve(path: str, context: ToolContext) -> Path:
    root = Path(context.workspace_root).expanduser().resolve()
    resolved = (root / path).resolve()
    if resolved != root and root not in resolved.parents:
        raise PermissionError(f"Path escapes the workspace: {path}")
    return resolved


async def list_files(context: ToolContext, path: str = ".", show_hidden: bool = False) -> str:
    resolved = _resolve(path, context)
    if not resolved.is_dir():
        raise NotADirectoryError(f"Not a directory: {path}")
    entries = []
    for entry in sorted(resolved.iterdir()):
        if not show_hidden and entry.name.startswith("."):
            continue
        entries.append({
            "name": entry.name,
            "type": "dir" if entry.is_dir() else "file",
            "size": entry.stat().st_size if entry.is_file() else None,
        })
    return json.dumps({"path": path, "entries": entries}, indent=2)


async def read_file(path: str, context: ToolContext) -> str:
    resolved = _resolve(path, context)
    if not resolved.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    size = resolved.stat().st_size
    if size > _MAX_READ_BYTES:
        return f"[File too large to read directly: {size:,} bytes (limit {_MAX_READ_BYTES:,} bytes)]"
    return resolved.read_text(encoding="utf-8")


async def write_file(path: str, content: str, context: ToolContext) -> str:
    resolved = _resolve(path, context)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(content, encoding="utf-8")
    return f"Written {len(content)} characters to {path}"


def register_workspace_tools(registry: ToolRegistry) -> ToolRegistry:
    registry.register(
        name="list_files",
        description="List files and directories inside the workspace.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory relative to the workspace root"},
                "show_hidden": {"type": "boolean", "description": "Include dotfiles"},
            },
            "required": [],
        },
    )(list_files)
    registry.register(
        name="read_file",
        description="Read a UTF-8 text file from the workspace.",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string", "description": "File path relative to the workspace root"}},
            "required": ["path"],
        },
    )(read_file)
    registry.register(
        name="write_file",
        description="Write a UTF-8 text file in the workspace, replacing it if it exists.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the workspace root"},
                "content": {"type": "string", "description": "Text content to write"},
            },
            "required": ["path", "content"],
        },
        requires_approval=True,
    )(write_file)
    return registry
