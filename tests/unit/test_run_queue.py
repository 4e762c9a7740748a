"""
tests/unit/test_run_queue.py — Per-Session Run Serialisation

Covers:
  - same-session runs execute strictly one after another
  - different sessions run concurrently
  - a failing run is recorded and re-raised, and does not block the next
  - runner-reported terminal status (AgentResult-style) is recorded
  - timeout / abort exceptions map onto their statuses
  - cancellation while running and while queued → aborted
  - duplicate run ids, run id format, list/pending/forget helpers
"""

from __future__ import annotations

import asyncio
import re
from types import SimpleNamespace

import pytest

from pincer.agent.run_queue import RunQueue, create_run_id
from pincer.agent.types import RunStatus
from pincer.exceptions import DuplicateRunError, RunAbortedError, RunTimeoutError


@pytest.fixture
def queue():
    return RunQueue()


class TestOrdering:
    @pytest.mark.asyncio
    async def test_same_session_runs_are_serialised(self, queue):
        trace: list[str] = []
        release_a = asyncio.Event()

        async def run_a(meta):
            trace.append("a:start")
            await release_a.wait()
            trace.append("a:end")
            return "a"

        async def run_b(meta):
            trace.append("b:start")
            return "b"

        first = asyncio.create_task(queue.enqueue("s1", run_a))
        second = asyncio.create_task(queue.enqueue("s1", run_b))
        await asyncio.sleep(0.01)
        assert trace == ["a:start"]
        assert queue.pending_count("s1") == 2

        release_a.set()
        outcome_a, outcome_b = await asyncio.gather(first, second)
        assert trace == ["a:start", "a:end", "b:start"]
        assert outcome_a.result == "a"
        assert outcome_b.result == "b"
        assert outcome_b.meta.status == RunStatus.COMPLETED
        assert outcome_b.meta.started_at >= outcome_a.meta.ended_at

    @pytest.mark.asyncio
    async def test_different_sessions_run_concurrently(self, queue):
        both_started = asyncio.Event()
        started: set[str] = set()

        async def runner(meta):
            started.add(meta.session_id)
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1.0)
            return meta.session_id

        results = await asyncio.gather(queue.enqueue("s1", runner), queue.enqueue("s2", runner))
        assert {r.result for r in results} == {"s1", "s2"}

    @pytest.mark.asyncio
    async def test_failure_does_not_block_the_next_run(self, queue):
        async def broken(meta):
            raise RuntimeError("boom")

        async def fine(meta):
            return "ok"

        failing = asyncio.create_task(queue.enqueue("s1", broken, run_id="r1"))
        following = asyncio.create_task(queue.enqueue("s1", fine, run_id="r2"))

        with pytest.raises(RuntimeError, match="boom"):
            await failing
        assert (await following).result == "ok"

        failed = queue.get_run("r1")
        assert failed.status == RunStatus.ERROR
        assert failed.error == "boom"
        assert queue.get_run("r2").status == RunStatus.COMPLETED


class TestStatuses:
    @pytest.mark.asyncio
    async def test_runner_reported_status_is_recorded(self, queue):
        async def runner(meta):
            return SimpleNamespace(status=RunStatus.ABORTED, error="Run aborted: user_interrupt")

        outcome = await queue.enqueue("s1", runner)
        assert outcome.meta.status == RunStatus.ABORTED
        assert outcome.meta.error == "Run aborted: user_interrupt"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc, status",
        [
            (RunTimeoutError("late"), RunStatus.TIMEOUT),
            (asyncio.TimeoutError(), RunStatus.TIMEOUT),
            (RunAbortedError("stop"), RunStatus.ABORTED),
        ],
    )
    async def test_exception_maps_to_status(self, queue, exc, status):
        async def runner(meta):
            raise exc

        with pytest.raises(type(exc)):
            await queue.enqueue("s1", runner, run_id="r1")
        assert queue.get_run("r1").status == status

    @pytest.mark.asyncio
    async def test_cancel_while_running_is_aborted(self, queue):
        started = asyncio.Event()

        async def runner(meta):
            started.set()
            await asyncio.Event().wait()

        outer = asyncio.create_task(queue.enqueue("s1", runner, run_id="r1"))
        await started.wait()
        outer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await outer
        await asyncio.sleep(0)
        meta = queue.get_run("r1")
        assert meta.status == RunStatus.ABORTED
        assert meta.error == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_while_queued_is_aborted(self, queue):
        release = asyncio.Event()
        ran = []

        async def blocker(meta):
            await release.wait()

        async def never(meta):
            ran.append(meta.run_id)

        first = asyncio.create_task(queue.enqueue("s1", blocker, run_id="r1"))
        second = asyncio.create_task(queue.enqueue("s1", never, run_id="r2"))
        await asyncio.sleep(0.01)
        second.cancel()
        with pytest.raises(asyncio.CancelledError):
            await second
        release.set()
        await first
        await asyncio.sleep(0)

        assert ran == []
        meta = queue.get_run("r2")
        assert meta.status == RunStatus.ABORTED
        assert meta.error == "cancelled while queued"
        assert meta.started_at is None

    @pytest.mark.asyncio
    async def test_cancelled_queued_run_does_not_let_next_overtake(self, queue):
        release = asyncio.Event()
        trace = []

        async def first_run(meta):
            trace.append("a:start")
            await release.wait()
            trace.append("a:end")

        async def skipped(meta):
            trace.append("b:start")

        async def third_run(meta):
            trace.append("c:start")

        a = asyncio.create_task(queue.enqueue("s1", first_run, run_id="a"))
        await asyncio.sleep(0.01)
        b = asyncio.create_task(queue.enqueue("s1", skipped, run_id="b"))
        c = asyncio.create_task(queue.enqueue("s1", third_run, run_id="c"))
        await asyncio.sleep(0.01)

        b.cancel()
        with pytest.raises(asyncio.CancelledError):
            await b
        await asyncio.sleep(0.02)
        assert trace == ["a:start"]
        assert queue.get_run("c").status == RunStatus.QUEUED

        release.set()
        await a
        await c

        assert trace == ["a:start", "a:end", "c:start"]
        assert queue.get_run("b").status == RunStatus.ABORTED
        assert queue.get_run("c").status == RunStatus.COMPLETED


class TestBookkeeping:
    def test_run_id_format(self):
        assert re.fullmatch(r"run_\d+_[0-9a-f]{8}", create_run_id())
        assert create_run_id() != create_run_id()

    @pytest.mark.asyncio
    async def test_duplicate_run_id_rejected(self, queue):
        async def runner(meta):
            return None

        await queue.enqueue("s1", runner, run_id="r1")
        with pytest.raises(DuplicateRunError):
            await queue.enqueue("s2", runner, run_id="r1")

    @pytest.mark.asyncio
    async def test_runner_receives_running_snapshot(self, queue):
        seen = []

        async def runner(meta):
            seen.append(meta)

        outcome = await queue.enqueue("s1", runner, run_id="r1")
        assert seen[0].status == RunStatus.RUNNING
        assert seen[0].run_id == "r1"
        # the snapshot handed to the runner is not updated afterwards
        assert outcome.meta.status == RunStatus.COMPLETED
        assert seen[0].status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_list_and_forget(self, queue):
        async def runner(meta):
            return None

        await queue.enqueue("s1", runner, run_id="r1")
        await queue.enqueue("s2", runner, run_id="r2")
        assert [r.run_id for r in queue.list_runs()] == ["r1", "r2"]
        assert [r.run_id for r in queue.list_runs("s2")] == ["r2"]
        assert queue.pending_count("s1") == 0

        assert queue.forget("r1")
        assert queue.get_run("r1") is None
        assert not queue.forget("missing")
