"""
memory/session_store.py — Session Store

Persists a session's message history and metadata keyed by session id.
The agent core never writes here directly: the memory middleware saves a
conversation after a run, and recall reads prior sessions before one.

Two implementations:
    InMemorySessionStore        dict guarded by an asyncio.Lock
    JsonDirectorySessionStore   one <session_id>-<hash>.json file per session,
                                pruned to max_sessions by last access
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
import time
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field, ValidationError

from pincer.brain.types import Message
from pincer.context.token_estimator import TokenEstimator
from pincer.observability.logger import get_logger

log = get_logger(__name__)

_SAFE_ID_RE = re.compile(r"[^A-Za-z0-9_.\-]")


class SessionSummary(BaseModel):
    """Index entry for a stored session; cheap to list."""
    session_id: str
    name: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    last_accessed: float = Field(default_factory=time.time)
    message_count: int = 0
    total_tokens: int = 0
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionRecord(BaseModel):
    session_id: str
    messages: list[Message] = Field(default_factory=list)
    summary: SessionSummary


@runtime_checkable
class SessionStore(Protocol):
    async def save(
        self,
        session_id: str,
        messages: list[Message],
        name: Optional[str] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SessionSummary:
        ...

    async def load(self, session_id: str) -> Optional[SessionRecord]:
        ...

    async def list_sessions(self) -> list[SessionSummary]:
        ...

    async def delete(self, session_id: str) -> bool:
        ...


def _build_record(
    previous: Optional[SessionRecord],
    session_id: str,
    messages: list[Message],
    name: Optional[str],
    tags: Optional[list[str]],
    metadata: Optional[dict[str, Any]],
) -> SessionRecord:
    now = time.time()
    created_at = previous.summary.created_at if previous else now
    summary = SessionSummary(
        session_id=session_id,
        name=name or (previous.summary.name if previous else None),
        created_at=created_at,
        last_accessed=now,
        message_count=len(messages),
        total_tokens=TokenEstimator().estimate_messages(messages),
        tags=list(tags if tags is not None else (previous.summary.tags if previous else [])),
        metadata={**(previous.summary.metadata if previous else {}), **(metadata or {})},
    )
    return SessionRecord(session_id=session_id, messages=list(messages), summary=summary)


class InMemorySessionStore:
    """Process-local store, used by tests and when no store_dir is configured."""

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()

    async def save(
        self,
        session_id: str,
        messages: list[Message],
        name: Optional[str] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SessionSummary:
        async with self._lock:
            record = _build_record(self._records.get(session_id), session_id, messages, name, tags, metadata)
            self._records[session_id] = record
        log.debug("session_store.saved", session_id=session_id, messages=len(messages))
        return record.summary

    async def load(self, session_id: str) -> Optional[SessionRecord]:
        async with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            record.summary.last_accessed = time.time()
            return record.model_copy(deep=True)

    async def list_sessions(self) -> list[SessionSummary]:
        async with self._lock:
            return [r.summary.model_copy() for r in self._records.values()]

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            return self._records.pop(session_id, None) is not None

    @property
    def count(self) -> int:
        """Synchronous count — use only from non-async contexts (e.g. tests)."""
        return len(self._records)


class JsonDirectorySessionStore:
    """
    File-backed store. Writes go through a temp file and rename so a crash
    mid-write never leaves a truncated session behind. File work runs in
    the default executor so the event loop is never blocked on disk.

    File names are the sanitised session id plus a short hash of the raw
    id, so ids that sanitise alike ("a/b", "a_b") never share a file.
    """

    def __init__(self, directory: str | Path, max_sessions: int = 100):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.max_sessions = max_sessions
        self._lock = asyncio.Lock()

    def _path(self, session_id: str) -> Path:
        digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:8]
        return self.directory / f"{_SAFE_ID_RE.sub('_', session_id)}-{digest}.json"

    def _read(self, path: Path) -> Optional[SessionRecord]:
        try:
            return SessionRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (ValidationError, json.JSONDecodeError, OSError) as e:
            log.warning("session_store.unreadable", path=str(path), error=str(e))
            return None

    def _read_session(self, session_id: str) -> Optional[SessionRecord]:
        record = self._read(self._path(session_id))
        if record is not None and record.session_id != session_id:
            log.warning("session_store.id_mismatch", session_id=session_id, found=record.session_id)
            return None
        return record

    def _write(self, record: SessionRecord) -> None:
        path = self._path(record.session_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)

    async def _in_executor(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        async with self._lock:
            return await loop.run_in_executor(None, fn)

    async def save(
        self,
        session_id: str,
        messages: list[Message],
        name: Optional[str] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SessionSummary:
        def _save() -> SessionRecord:
            previous = self._read_session(session_id)
            record = _build_record(previous, session_id, messages, name, tags, metadata)
            self._write(record)
            self._prune()
            return record

        record = await self._in_executor(_save)
        log.info("session_store.saved", session_id=session_id, messages=len(messages))
        return record.summary

    async def load(self, session_id: str) -> Optional[SessionRecord]:
        def _load() -> Optional[SessionRecord]:
            record = self._read_session(session_id)
            if record is None:
                return None
            record.summary.last_accessed = time.time()
            self._write(record)
            return record

        return await self._in_executor(_load)

    async def list_sessions(self) -> list[SessionSummary]:
        return await self._in_executor(self._summaries)

    async def delete(self, session_id: str) -> bool:
        def _delete() -> bool:
            path = self._path(session_id)
            if not path.exists():
                return False
            path.unlink()
            return True

        return await self._in_executor(_delete)

    def _summaries(self) -> list[SessionSummary]:
        summaries = []
        for path in sorted(self.directory.glob("*.json")):
            record = self._read(path)
            if record is not None:
                summaries.append(record.summary)
        return summaries

    def _prune(self) -> None:
        summaries = self._summaries()
        excess = len(summaries) - self.max_sessions
        if excess <= 0:
            return
        summaries.sort(key=lambda s: s.last_accessed)
        for summary in summaries[:excess]:
            self._path(summary.session_id).unlink(missing_ok=True)
        log.info("session_store.pruned", removed=excess)
