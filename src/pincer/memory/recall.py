"""
memory/recall.py — Conversation Recall

Keyword recall over prior sessions and conversation saving for the memory
middleware.

Relevance is a 0–10 score from keyword overlap between the query and a
session's text:
    - keywords are query words longer than 3 chars that are not common words
    - exact keyword match scores 2, a stem match (prefix of 4+ chars) scores 1
    - the sum is normalised against 2 × keyword count and rounded to 1 decimal
    - a query with no keywords falls back to counting partial word hits
      (words longer than 2 chars), capped at 5

Failures reading or writing the store are logged and degrade to "nothing
recalled" / "not saved"; memory never fails a run.
"""

from __future__ import annotations

import time
from typing import Any, Optional

from pydantic import BaseModel, Field

from pincer.brain.types import Message, Role
from pincer.memory.session_store import SessionRecord, SessionStore
from pincer.observability.logger import get_logger

log = get_logger(__name__)

MAX_SEARCH_LIMIT = 20

_COMMON_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can",
    "had", "her", "was", "one", "our", "out", "day", "get", "has", "him",
    "his", "how", "man", "new", "now", "old", "see", "two", "way", "who",
    "boy", "did", "its", "let", "put", "say", "she", "too", "use", "that",
    "with", "this", "from", "have", "they", "what", "when", "where", "which",
    "will", "your", "about", "could", "would", "should", "there", "their",
})

_TOPIC_TAGS = (
    ("file", "files"),
    ("list", "listing"),
    ("read", "reading"),
    ("write", "writing"),
    ("git", "git"),
    ("search", "search"),
    ("http", "web"),
    ("process", "system"),
    ("workspace", "workspace"),
    ("project", "project"),
    ("code", "code"),
    ("help", "help"),
    ("explain", "explanation"),
)


class RecalledSession(BaseModel):
    session_id: str
    relevance: float
    summary: str


class MemorySearchResult(BaseModel):
    context: str = ""
    sessions: list[RecalledSession] = Field(default_factory=list)


class ToolUsage(BaseModel):
    tool: str
    timestamp: float
    parameters: Optional[dict[str, Any]] = None
    result: Optional[str] = None
    success: bool = True


class MemoryStats(BaseModel):
    enabled: bool
    search_limit: int
    total_sessions: int
    total_messages: int
    total_tokens: int


class MemoryRecall:
    """
    Usage:
        recall = MemoryRecall(JsonDirectorySessionStore("./data/sessions"))
        found = await recall.search("refactor the parser")
        system_prompt = found.context + system_prompt
        await recall.save_conversation(session_id, result.messages)
    """

    def __init__(
        self,
        store: SessionStore,
        enabled: bool = True,
        search_limit: int = 5,
        min_relevance: float = 1.0,
    ):
        self.store = store
        self.enabled = enabled
        self.search_limit = _clamp_limit(search_limit)
        self.min_relevance = min_relevance

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        log.info("memory.enabled" if enabled else "memory.disabled")

    def set_search_limit(self, limit: int) -> None:
        self.search_limit = _clamp_limit(limit)

    # ── Search ────────────────────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        min_relevance: Optional[float] = None,
        exclude_session: Optional[str] = None,
    ) -> MemorySearchResult:
        if not self.enabled:
            return MemorySearchResult()

        limit = _clamp_limit(limit or self.search_limit)
        threshold = self.min_relevance if min_relevance is None else min_relevance

        try:
            summaries = await self.store.list_sessions()
        except Exception as e:
            log.warning("memory.search_failed", error=str(e))
            return MemorySearchResult()

        summaries.sort(key=lambda s: s.last_accessed, reverse=True)
        found: list[RecalledSession] = []
        for summary in summaries[: limit * 2]:
            if summary.session_id == exclude_session:
                continue
            try:
                record = await self.store.load(summary.session_id)
            except Exception as e:
                log.warning("memory.load_failed", session_id=summary.session_id, error=str(e))
                continue
            if record is None or not record.messages:
                continue
            relevance = score_relevance(query, record.messages)
            if relevance >= threshold:
                found.append(RecalledSession(
                    session_id=record.session_id,
                    relevance=relevance,
                    summary=summarize_session(record),
                ))

        found.sort(key=lambda s: s.relevance, reverse=True)
        top = found[:limit]
        log.info("memory.searched", query=query[:100], scanned=min(len(summaries), limit * 2), found=len(top))
        return MemorySearchResult(context=_render_context(top), sessions=top)

    # ── Save ──────────────────────────────────────────────────────────────────

    async def save_conversation(
        self,
        session_id: str,
        messages: list[Message],
        name: Optional[str] = None,
        tags: Optional[list[str]] = None,
        additional: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Save a conversation with auto-extracted tags. Returns True if saved."""
        if not self.enabled or len(messages) < 2:
            return False

        usage = extract_tool_usage(messages)
        try:
            await self.store.save(
                session_id,
                messages,
                name=name or f"Conversation: {_first_user_text(messages)}",
                tags=tags if tags is not None else extract_tags(messages),
                metadata={
                    **(additional or {}),
                    "saved_by": "memory_recall",
                    "timestamp": time.time(),
                    "tool_usage": [u.model_dump() for u in usage],
                    "message_count": len(messages),
                    "has_tools": bool(usage),
                },
            )
        except Exception as e:
            log.warning("memory.save_failed", session_id=session_id, error=str(e))
            return False

        log.info("memory.saved", session_id=session_id, messages=len(messages), tools=len(usage))
        return True

    async def get_stats(self) -> MemoryStats:
        summaries = await self.store.list_sessions()
        return MemoryStats(
            enabled=self.enabled,
            search_limit=self.search_limit,
            total_sessions=len(summaries),
            total_messages=sum(s.message_count for s in summaries),
            total_tokens=sum(s.total_tokens for s in summaries),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Scoring and summarising
# ─────────────────────────────────────────────────────────────────────────────


def score_relevance(query: str, messages: list[Message]) -> float:
    if not messages:
        return 0.0
    text = " ".join(m.content for m in messages).lower()
    words = query.lower().split()
    keywords = [w for w in words if len(w) > 3 and w not in _COMMON_WORDS]

    if not keywords:
        hits = sum(1 for w in words if len(w) > 2 and w in text)
        return float(min(hits, 5))

    score = 0
    for keyword in keywords:
        if keyword in text:
            score += 2
        elif _has_stem_match(keyword, text):
            score += 1
    return round(score / (len(keywords) * 2) * 10, 1)


def _has_stem_match(keyword: str, text: str) -> bool:
    return any(keyword[:i] in text for i in range(4, len(keyword) + 1))


def summarize_session(record: SessionRecord) -> str:
    messages = record.messages
    if not messages:
        return "Empty session"

    users = [m for m in messages if m.role == Role.USER]
    assistants = [m for m in messages if m.role == Role.ASSISTANT]
    tools = [m for m in messages if m.role == Role.TOOL]

    lines = []
    if users:
        lines.append(f'User asked: "{users[0].content[:150]}..."')
    if assistants:
        lines.append(f'Assistant responded: "{assistants[-1].content[:150]}..."')
    if tools:
        lines.append(f"Used {len(tools)} tool(s)")
    if record.summary.tags:
        lines.append(f"Tags: {', '.join(record.summary.tags)}")
    lines.append(f"Total messages: {len(messages)}")
    return "\n".join(lines)


def extract_tags(messages: list[Message]) -> list[str]:
    tags = ["agent-conversation"]
    if any(m.role == Role.TOOL for m in messages):
        tags.append("tool-assisted")
    first_user = next((m for m in messages if m.role == Role.USER), None)
    if first_user is not None:
        text = first_user.content.lower()
        for keyword, tag in _TOPIC_TAGS:
            if keyword in text and tag not in tags:
                tags.append(tag)
    return tags


def extract_tool_usage(messages: list[Message]) -> list[ToolUsage]:
    """One entry per tool-role message, with args recovered from the requesting call."""
    args_by_call: dict[str, dict[str, Any]] = {}
    for message in messages:
        for call in message.tool_calls:
            args_by_call[call.id] = call.arguments

    usage = []
    for message in messages:
        if message.role != Role.TOOL:
            continue
        usage.append(ToolUsage(
            tool=message.name or message.metadata.get("tool", "unknown"),
            timestamp=message.timestamp,
            parameters=args_by_call.get(message.tool_call_id or ""),
            result=message.content[:500],
            success=not message.metadata.get("is_error", False),
        ))
    return usage


def _render_context(sessions: list[RecalledSession]) -> str:
    if not sessions:
        return ""
    parts = ["## Relevant Previous Conversations:\n"]
    for session in sessions:
        parts.append(f"\n--- Session (relevance: {session.relevance}/10) ---\n{session.summary}\n")
    parts.append("\n## Current Task:\n")
    return "".join(parts)


def _first_user_text(messages: list[Message]) -> str:
    first = next((m for m in messages if m.role == Role.USER), None)
    if first is None:
        return "Unknown"
    return first.content[:50] + ("..." if len(first.content) > 50 else "")


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_SEARCH_LIMIT))
