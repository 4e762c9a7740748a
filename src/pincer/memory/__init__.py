"""
memory/ — Session persistence and recall

Usage:
    from pincer.memory import JsonDirectorySessionStore, MemoryRecall

    recall = MemoryRecall(JsonDirectorySessionStore("./data/sessions"))
    found = await recall.search("migrate the config loader")
"""

from pincer.memory.recall import MemoryRecall, MemorySearchResult, RecalledSession
from pincer.memory.session_store import (
    InMemorySessionStore,
    JsonDirectorySessionStore,
    SessionRecord,
    SessionStore,
    SessionSummary,
)

__all__ = [
    "MemoryRecall",
    "MemorySearchResult",
    "RecalledSession",
    "InMemorySessionStore",
    "JsonDirectorySessionStore",
    "SessionRecord",
    "SessionStore",
    "SessionSummary",
]
