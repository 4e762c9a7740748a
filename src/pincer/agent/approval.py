"""
agent/approval.py — Tool Approval Gates

An approval gate is any async callable taking an ApprovalRequest and
returning True (run the tool) or False (deny). ToolBridge consults it for
tools flagged requires_approval when the run's config asks for approval.

    auto_approve         approve everything
    deny_all             deny everything
    TimedApprovalGate    park the request until resolve() is called from
                         outside (CLI prompt, chat button), falling back to
                         a default decision when the wait times out
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from pincer.observability.logger import get_logger

log = get_logger(__name__)


class ApprovalRequest(BaseModel):
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    session_id: str = ""
    requested_at: float = Field(default_factory=time.time)


ApprovalGate = Callable[[ApprovalRequest], Awaitable[bool]]


async def auto_approve(request: ApprovalRequest) -> bool:
    return True


async def deny_all(request: ApprovalRequest) -> bool:
    return False


class TimedApprovalGate:
    """
    Usage:
        gate = TimedApprovalGate(timeout_seconds=120, on_request=show_prompt)
        bridge = ToolBridge(executor, approval_gate=gate)
        ...
        gate.resolve(tool_call_id, approved=True)   # from the UI side
    """

    def __init__(
        self,
        timeout_seconds: float = 120.0,
        default: bool = False,
        on_request: Optional[Callable[[ApprovalRequest], None]] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.default = default
        self.on_request = on_request
        self._pending: dict[str, tuple[ApprovalRequest, asyncio.Future]] = {}

    async def __call__(self, request: ApprovalRequest) -> bool:
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[request.tool_call_id] = (request, future)
        log.info("approval.requested", tool=request.tool_name, tool_call_id=request.tool_call_id)

        if self.on_request is not None:
            self.on_request(request)

        try:
            return await asyncio.wait_for(future, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            log.warning(
                "approval.timeout",
                tool=request.tool_name,
                tool_call_id=request.tool_call_id,
                default=self.default,
            )
            return self.default
        finally:
            self._pending.pop(request.tool_call_id, None)

    def resolve(self, tool_call_id: str, approved: bool) -> bool:
        """Answer a pending request. Returns False if nothing was waiting."""
        entry = self._pending.pop(tool_call_id, None)
        if entry is None:
            return False
        _, future = entry
        if future.done():
            return False
        future.set_result(approved)
        log.info("approval.resolved", tool_call_id=tool_call_id, approved=approved)
        return True

    def pending(self) -> list[ApprovalRequest]:
        return [request for request, _ in self._pending.values()]


def gate_for_mode(mode: str, timeout_seconds: float = 120.0) -> ApprovalGate:
    """Map the tools.approval_mode setting onto a gate."""
    if mode == "auto":
        return auto_approve
    if mode == "deny":
        return deny_all
    if mode == "prompt":
        return TimedApprovalGate(timeout_seconds=timeout_seconds)
    raise ValueError(f"Unknown approval mode: '{mode}'")
