"""
brain/tool_parsing.py — Inline Tool Call Extraction

Small local models often lack native function calling and instead write
tool requests into their reply text. Two shapes are recognised:

    <tool_call>{"tool": "read_file", "arguments": {"path": "a.txt"}}</tool_call>

    ```tool_code
    read_file
    {"path": "a.txt"}
    ```
"""

from __future__ import annotations

import json
import re
import uuid

from pincer.brain.types import ToolCall
from pincer.observability.logger import get_logger

log = get_logger(__name__)

_TAGGED = re.compile(r"<tool_call>\s*(\{[\s\S]*?\})\s*</tool_call>")
_FENCED = re.compile(r"```tool_code\s*\n([a-zA-Z_][\w\-]*)\s*\n([\s\S]*?)```")


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:10]}"


def extract_inline_tool_calls(content: str) -> list[ToolCall]:
    """Return tool calls embedded in assistant text, in order of appearance."""
    if not content or ("<tool_call>" not in content and "```tool_code" not in content):
        return []

    calls: list[ToolCall] = []
    for match in _TAGGED.finditer(content):
        try:
            parsed = json.loads(match.group(1))
        except json.JSONDecodeError as e:
            log.warning("tool_parsing.bad_json", error=str(e))
            continue
        name = parsed.get("tool") or parsed.get("name")
        args = parsed.get("arguments", {})
        if not name or not isinstance(args, dict):
            continue
        calls.append(ToolCall(id=_new_call_id(), name=name, arguments=args))

    for match in _FENCED.finditer(content):
        name, body = match.group(1), match.group(2).strip()
        try:
            args = json.loads(body) if body else {}
        except json.JSONDecodeError:
            args = {"input": body}
        if not isinstance(args, dict):
            args = {"input": args}
        calls.append(ToolCall(id=_new_call_id(), name=name, arguments=args))

    if calls:
        log.debug("tool_parsing.extracted", count=len(calls))
    return calls


def strip_inline_tool_calls(content: str) -> str:
    """Remove tool-call blocks from assistant text, leaving the prose."""
    return _FENCED.sub("", _TAGGED.sub("", content)).strip()
