"""
memory/short_term.py — Short-Term Memory

In-process memory provider for the engine. Keeps a bounded buffer of
recent entries per session (analysis notes, tool outcomes, answers) and
returns a short digest of the ones most relevant to a new request.

Nothing is persisted; memory is empty after a restart. Eviction is owned here:
each session's buffer drops its oldest entry once max_entries is reached.
"""

from __future__ import annotations

import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from loopsmith.config.settings import MemoryConfig
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)

_WORD_RE = re.compile(r"[a-z0-9_]+")
_GLOBAL = "__global__"


@dataclass
class MemoryEntry:
    type: str
    content: str
    relevance: float = 0.5
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryEntry":
        return cls(
            type=str(data.get("type", "note")),
            content=str(data.get("content", "")),
            relevance=float(data.get("relevance", 0.5)),
            timestamp=float(data.get("timestamp", time.time())),
        )


def _keywords(text: str) -> set[str]:
    return {w for w in _WORD_RE.findall(text.lower()) if len(w) > 2}


class ShortTermMemory:
    """
    Per-session ring buffers behind one lock, so a single instance can be
    shared by every session the controller runs.
    """

    def __init__(
        self,
        max_entries: int = 100,
        relevance_threshold: float = 0.3,
        summary_items: int = 5,
    ):
        self.max_entries = max_entries
        self.relevance_threshold = relevance_threshold
        self.summary_items = summary_items
        self._buffers: dict[str, deque[MemoryEntry]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: MemoryConfig) -> "ShortTermMemory":
        return cls(
            max_entries=config.max_entries,
            relevance_threshold=config.relevance_threshold,
            summary_items=config.summary_items,
        )

    # ── Writes ───────────────────────────────────────────────────────────────

    def add_to_short_term_memory(
        self,
        entry: Union[MemoryEntry, dict[str, Any]],
        session_id: Optional[str] = None,
    ) -> MemoryEntry:
        if isinstance(entry, dict):
            entry = MemoryEntry.from_dict(entry)
        if not entry.content.strip():
            return entry
        with self._lock:
            buf = self._buffers.get(session_id or _GLOBAL)
            if buf is None:
                buf = self._buffers[session_id or _GLOBAL] = deque(maxlen=self.max_entries)
            buf.append(entry)
        log.debug("memory.added", session_id=session_id, type=entry.type,
                  relevance=entry.relevance)
        return entry

    def clear(self, session_id: Optional[str] = None) -> None:
        with self._lock:
            self._buffers.pop(session_id or _GLOBAL, None)

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_entries(self, session_id: Optional[str] = None) -> list[MemoryEntry]:
        with self._lock:
            return list(self._buffers.get(session_id or _GLOBAL, ()))

    def search(self, query: str, session_id: Optional[str] = None) -> list[MemoryEntry]:
        """
        Entries at or above the relevance threshold that share keywords with
        ``query``, best first. Score is keyword overlap × stored relevance.
        """
        words = _keywords(query)
        if not words:
            return []
        scored: list[tuple[float, float, MemoryEntry]] = []
        for e in self.get_entries(session_id):
            if e.relevance < self.relevance_threshold:
                continue
            overlap = len(words & _keywords(e.content)) / len(words)
            if overlap > 0:
                scored.append((overlap * e.relevance, e.timestamp, e))
        scored.sort(key=lambda t: (t[0], t[1]), reverse=True)
        return [e for _, _, e in scored[: self.summary_items]]

    def retrieve_relevant_memory(self, query: str, session_id: Optional[str] = None) -> str:
        """
        Digest of the entries most relevant to ``query``. Falls back to the
        most recent entries when nothing matches; empty string when the
        session has no memory yet.
        """
        entries = self.search(query, session_id)
        if not entries:
            recent = [e for e in self.get_entries(session_id)
                      if e.relevance >= self.relevance_threshold]
            entries = list(reversed(recent[-self.summary_items:]))
        if not entries:
            return ""
        log.debug("memory.retrieved", session_id=session_id, count=len(entries))
        return "\n".join(f"- [{e.type}] {e.content}" for e in entries)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(b) for b in self._buffers.values())

    def __repr__(self) -> str:
        return f"ShortTermMemory(sessions={len(self._buffers)}, entries={len(self)})"
