"""
agent/run_queue.py — Per-Session Run Serialisation

Runs for the same session execute one at a time, in enqueue order; runs
for different sessions execute concurrently. Each session keeps a tail
gate: a new run first waits for the previous gate and then invokes its
runner. A run's gate resolves only after its own task has settled
(success, failure or cancellation all count) and the gate before it has
resolved, so cancelling a queued run never lets a later one overtake a
run that is still executing.

Lifecycle metadata is kept in a lock-guarded map of frozen RunMetadata
snapshots. Transitions are monotonic:

    queued → running → completed | error | aborted | timeout
    queued → aborted                 (cancelled while waiting its turn)

A runner that returns an object with a terminal `status` (AgentResult)
has that status recorded; otherwise a normal return is `completed`.
Exceptions are recorded and re-raised to the caller of enqueue().
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

from pincer.agent.types import EnqueueResult, RunMetadata, RunStatus
from pincer.exceptions import DuplicateRunError, RunAbortedError, RunTimeoutError
from pincer.observability.logger import get_logger

log = get_logger(__name__)

Runner = Callable[[RunMetadata], Awaitable[Any]]

_ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.ABORTED}),
    RunStatus.RUNNING: frozenset({
        RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.ABORTED, RunStatus.TIMEOUT,
    }),
}


def create_run_id() -> str:
    return f"run_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class RunQueue:
    """
    Usage:
        queue = RunQueue()
        outcome = await queue.enqueue("session-1", lambda meta: loop.run(prompt))
        outcome.meta.status     # RunStatus.COMPLETED
        outcome.result          # whatever the runner returned
    """

    def __init__(self) -> None:
        self._runs: dict[str, RunMetadata] = {}
        self._tails: dict[str, asyncio.Future] = {}
        self._lock = threading.Lock()

    create_run_id = staticmethod(create_run_id)

    # ── Run control ───────────────────────────────────────────────────────────

    async def enqueue(
        self,
        session_id: str,
        runner: Runner,
        run_id: Optional[str] = None,
    ) -> EnqueueResult:
        """
        Queue `runner` behind the session's previous run and wait for it.

        Raises:
            DuplicateRunError: run_id is already tracked.
            Any exception raised by the runner, after it is recorded.
        """
        run_id = run_id or create_run_id()
        meta = RunMetadata(run_id=run_id, session_id=session_id, queued_at=time.time())
        with self._lock:
            if run_id in self._runs:
                raise DuplicateRunError(f"Run '{run_id}' is already queued")
            self._runs[run_id] = meta

        previous = self._tails.get(session_id)
        gate: asyncio.Future = asyncio.get_running_loop().create_future()
        self._tails[session_id] = gate
        task = asyncio.create_task(self._execute(previous, run_id, runner), name=f"run:{run_id}")
        task.add_done_callback(lambda _t: self._settle(session_id, previous, gate))

        log.info(
            "run_queue.enqueued",
            run_id=run_id,
            session_id=session_id,
            waiting=previous is not None and not previous.done(),
        )

        result = await task
        return EnqueueResult(meta=self._runs[run_id], result=result)

    def get_run(self, run_id: str) -> Optional[RunMetadata]:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(self, session_id: Optional[str] = None) -> list[RunMetadata]:
        with self._lock:
            runs = list(self._runs.values())
        if session_id is not None:
            runs = [r for r in runs if r.session_id == session_id]
        return sorted(runs, key=lambda r: r.queued_at)

    def pending_count(self, session_id: str) -> int:
        """Runs for the session that have not reached a terminal state."""
        return sum(1 for r in self.list_runs(session_id) if not r.status.is_terminal)

    def forget(self, run_id: str) -> bool:
        """Drop a finished run's metadata. Active runs are kept."""
        with self._lock:
            meta = self._runs.get(run_id)
            if meta is None or not meta.status.is_terminal:
                return False
            del self._runs[run_id]
            return True

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _execute(
        self,
        previous: Optional[asyncio.Future],
        run_id: str,
        runner: Runner,
    ) -> Any:
        try:
            if previous is not None:
                await asyncio.wait({previous})
        except asyncio.CancelledError:
            self._transition(run_id, RunStatus.ABORTED, ended_at=time.time(), error="cancelled while queued")
            raise

        meta = self._transition(run_id, RunStatus.RUNNING, started_at=time.time())
        log.info("run_queue.started", run_id=run_id, session_id=meta.session_id)

        try:
            result = await runner(meta)
        except asyncio.CancelledError:
            self._transition(run_id, RunStatus.ABORTED, ended_at=time.time(), error="cancelled")
            raise
        except Exception as e:
            status = RunStatus.ERROR
            if isinstance(e, (RunTimeoutError, asyncio.TimeoutError)):
                status = RunStatus.TIMEOUT
            elif isinstance(e, RunAbortedError):
                status = RunStatus.ABORTED
            self._transition(run_id, status, ended_at=time.time(), error=str(e) or type(e).__name__)
            log.warning(
                "run_queue.failed",
                run_id=run_id,
                status=status.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        status, error = _outcome_of(result)
        final = self._transition(run_id, status, ended_at=time.time(), error=error)
        log.info(
            "run_queue.finished",
            run_id=run_id,
            status=status.value,
            duration_ms=round(((final.ended_at or 0) - (final.started_at or 0)) * 1000, 1),
        )
        return result

    def _transition(self, run_id: str, status: RunStatus, **fields: Any) -> RunMetadata:
        with self._lock:
            current = self._runs[run_id]
            allowed = _ALLOWED_TRANSITIONS.get(current.status, frozenset())
            if status not in allowed:
                raise RuntimeError(
                    f"Illegal run transition {current.status.value} → {status.value} for '{run_id}'"
                )
            updated = current.model_copy(update={"status": status, **fields})
            self._runs[run_id] = updated
            return updated

    def _settle(
        self,
        session_id: str,
        previous: Optional[asyncio.Future],
        gate: asyncio.Future,
    ) -> None:
        """Resolve a run's gate once its task and every earlier run have settled."""
        if previous is not None and not previous.done():
            previous.add_done_callback(lambda _p: self._settle(session_id, None, gate))
            return
        if not gate.done():
            gate.set_result(None)
        if self._tails.get(session_id) is gate:
            del self._tails[session_id]


def _outcome_of(result: Any) -> tuple[RunStatus, Optional[str]]:
    status = getattr(result, "status", None)
    if isinstance(status, RunStatus) and status.is_terminal:
        return status, getattr(result, "error", None)
    return RunStatus.COMPLETED, None
