"""
agent/steering.py — Steering Controller

Out-of-band input for an active session: messages queued here are picked up
by the agent loop at its next turn boundary, highest priority first
(urgent > high > normal > low, arrival order within a tier).

Processing an urgent message also raises the interruption flag, and
interrupt() raises it directly. The flag is a CancellationToken the loop
checks at its checkpoints; reset_interruption() swaps in a fresh token
before the next run.

Processed entries stay visible for a grace period so late observers can
see they were handled, then are purged on the next queue access.

All queue state is guarded by one lock; listeners are called synchronously
after the lock is released.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from pincer.agent.cancellation import CancellationToken
from pincer.brain.types import Message
from pincer.observability.logger import get_logger

log = get_logger(__name__)


class MessagePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {
    MessagePriority.URGENT: 0,
    MessagePriority.HIGH: 1,
    MessagePriority.NORMAL: 2,
    MessagePriority.LOW: 3,
}


@dataclass
class QueuedMessage:
    id: str
    message: Message
    priority: MessagePriority
    timestamp: float
    seq: int
    processed: bool = False
    processed_at: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SteeringStats:
    total_queued: int
    pending: int
    processed: int
    by_priority: dict[str, int]
    interrupted: bool


Listener = Callable[[QueuedMessage], None]


class Subscription:
    """Handle returned by subscribe(); unsubscribe() is idempotent."""

    def __init__(self, controller: "SteeringController", listener: Listener):
        self._controller = controller
        self._listener = listener
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._controller._remove_listener(self._listener)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.unsubscribe()


class SteeringController:
    def __init__(self, processed_grace_seconds: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.processed_grace_seconds = processed_grace_seconds
        self._clock = clock
        self._queue: list[QueuedMessage] = []
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()
        self._seq = 0
        self._token = CancellationToken()
        self.current_turn_id: Optional[str] = None

    # ── Queue ─────────────────────────────────────────────────────────────────

    def queue_message(
        self,
        message: Message | str,
        priority: MessagePriority = MessagePriority.NORMAL,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Queue a message and notify listeners before returning its id."""
        if isinstance(message, str):
            message = Message.user(message)
        priority = MessagePriority(priority)

        with self._lock:
            self._purge_expired()
            self._seq += 1
            entry = QueuedMessage(
                id=f"msg_{uuid.uuid4().hex[:12]}",
                message=message,
                priority=priority,
                timestamp=time.time(),
                seq=self._seq,
                metadata=dict(metadata or {}),
            )
            self._queue.append(entry)
            self._queue.sort(key=lambda q: (q.priority.rank, q.seq))
            listeners = list(self._listeners)

        log.info("steering.queued", message_id=entry.id, priority=priority.value)
        for listener in listeners:
            try:
                listener(entry)
            except Exception as e:
                log.warning("steering.listener_failed", message_id=entry.id, error=str(e))
        return entry.id

    def get_next_message(self) -> Optional[QueuedMessage]:
        """Highest-priority unprocessed entry, left in the queue."""
        with self._lock:
            self._purge_expired()
            return next((q for q in self._queue if not q.processed), None)

    def mark_processed(self, message_id: str) -> bool:
        with self._lock:
            entry = next((q for q in self._queue if q.id == message_id), None)
            if entry is None or entry.processed:
                return False
            entry.processed = True
            entry.processed_at = self._clock()

        log.debug("steering.processed", message_id=message_id, priority=entry.priority.value)
        if entry.priority == MessagePriority.URGENT:
            self.interrupt(reason="urgent_message")
        return True

    def take_pending(self) -> list[QueuedMessage]:
        """Mark every pending entry processed and return them in priority order."""
        taken: list[QueuedMessage] = []
        while (entry := self.get_next_message()) is not None:
            if self.mark_processed(entry.id):
                taken.append(entry)
        return taken

    def has_pending_messages(self) -> bool:
        return self.get_next_message() is not None

    def get_pending_messages(self) -> list[QueuedMessage]:
        with self._lock:
            self._purge_expired()
            return [q for q in self._queue if not q.processed]

    def clear_messages(self) -> int:
        with self._lock:
            count = len(self._queue)
            self._queue.clear()
        return count

    # ── Interruption ──────────────────────────────────────────────────────────

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def is_interrupted(self) -> bool:
        return self._token.cancelled

    def interrupt(self, reason: str = "interrupted") -> bool:
        """
        Raise the interruption flag. Returns True if a turn was active.
        In-flight provider and tool calls are not touched.
        """
        self._token.cancel(reason)
        log.info("steering.interrupt", reason=reason, turn_id=self.current_turn_id)
        return self.current_turn_id is not None

    def reset_interruption(self) -> None:
        with self._lock:
            self._token = CancellationToken()

    # ── Listeners ─────────────────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Subscription:
        with self._lock:
            self._listeners.append(listener)
        return Subscription(self, listener)

    def _remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    # ── Stats ─────────────────────────────────────────────────────────────────

    def get_stats(self) -> SteeringStats:
        with self._lock:
            self._purge_expired()
            queue = list(self._queue)
        return SteeringStats(
            total_queued=len(queue),
            pending=sum(1 for q in queue if not q.processed),
            processed=sum(1 for q in queue if q.processed),
            by_priority={p.value: sum(1 for q in queue if q.priority == p) for p in MessagePriority},
            interrupted=self.is_interrupted,
        )

    # ── Internals ─────────────────────────────────────────────────────────────

    def _purge_expired(self) -> None:
        cutoff = self._clock() - self.processed_grace_seconds
        self._queue = [
            q for q in self._queue
            if not q.processed or (q.processed_at is not None and q.processed_at > cutoff)
        ]
