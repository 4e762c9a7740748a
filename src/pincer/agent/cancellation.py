"""
agent/cancellation.py — Cooperative Cancellation Token

One token is threaded through a run. Callers (CLI Ctrl-C, steering
interrupts, transport disconnects) call cancel(); the loop polls
`cancelled` at its checkpoints: turn boundaries and before each tool
dispatch. Nothing in-flight is torn down.

Backed by threading.Event so a signal handler or another thread can cancel
safely while the loop runs on the event loop thread.
"""

from __future__ import annotations

import threading
from typing import Optional


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def __repr__(self) -> str:
        state = f"cancelled={self._reason!r}" if self.cancelled else "active"
        return f"<CancellationToken {state}>"


def first_cancelled(*tokens: Optional[CancellationToken]) -> Optional[CancellationToken]:
    """Return the first token that has been cancelled, ignoring None."""
    for token in tokens:
        if token is not None and token.cancelled:
            return token
    return None
