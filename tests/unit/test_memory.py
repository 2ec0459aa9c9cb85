"""
tests/unit/test_memory.py — Short-Term Memory Unit Tests

Tests the per-session ring buffers, relevance filtering and the digest
returned to the engine at the start of a turn.

Run with:
    pytest tests/unit/test_memory.py -v
"""

from __future__ import annotations

import pytest

from loopsmith.config.settings import MemoryConfig
from loopsmith.memory import MemoryEntry, ShortTermMemory


# ─────────────────────────────────────────────────────────────────────────────
# Writes
# ─────────────────────────────────────────────────────────────────────────────


class TestAdd:

    def test_add_dict(self):
        mem = ShortTermMemory()
        entry = mem.add_to_short_term_memory(
            {"type": "analysis", "content": "user wants files", "relevance": 0.6},
            session_id="s1",
        )
        assert isinstance(entry, MemoryEntry)
        assert entry.relevance == 0.6
        assert mem.get_entries("s1") == [entry]

    def test_add_entry(self):
        mem = ShortTermMemory()
        mem.add_to_short_term_memory(MemoryEntry(type="response", content="done"), "s1")
        assert len(mem) == 1

    def test_dict_defaults(self):
        entry = MemoryEntry.from_dict({"content": "x"})
        assert entry.type == "note"
        assert entry.relevance == 0.5

    def test_blank_content_ignored(self):
        mem = ShortTermMemory()
        mem.add_to_short_term_memory({"type": "note", "content": "   "}, "s1")
        assert mem.get_entries("s1") == []

    def test_oldest_evicted_at_capacity(self):
        mem = ShortTermMemory(max_entries=3)
        for i in range(5):
            mem.add_to_short_term_memory({"type": "note", "content": f"entry {i}"}, "s1")
        assert [e.content for e in mem.get_entries("s1")] == ["entry 2", "entry 3", "entry 4"]

    def test_sessions_are_isolated(self):
        mem = ShortTermMemory()
        mem.add_to_short_term_memory({"content": "alpha files"}, "a")
        mem.add_to_short_term_memory({"content": "beta files"}, "b")
        assert [e.content for e in mem.get_entries("a")] == ["alpha files"]
        assert "beta" not in mem.retrieve_relevant_memory("files", "a")

    def test_no_session_uses_global_buffer(self):
        mem = ShortTermMemory()
        mem.add_to_short_term_memory({"content": "shared note"})
        assert len(mem.get_entries()) == 1
        assert mem.get_entries("s1") == []

    def test_clear(self):
        mem = ShortTermMemory()
        mem.add_to_short_term_memory({"content": "x"}, "s1")
        mem.clear("s1")
        assert mem.get_entries("s1") == []


# ─────────────────────────────────────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────────────────────────────────────


class TestRetrieve:

    @pytest.fixture
    def mem(self) -> ShortTermMemory:
        m = ShortTermMemory(relevance_threshold=0.3, summary_items=2)
        m.add_to_short_term_memory({"type": "tool_result", "content": "list_files returned 10 python files",
                                    "relevance": 0.5}, "s1")
        m.add_to_short_term_memory({"type": "response", "content": "There are 10 python files",
                                    "relevance": 0.7}, "s1")
        m.add_to_short_term_memory({"type": "tool_error", "content": "search failed on python",
                                    "relevance": 0.2}, "s1")
        return m

    def test_search_ranks_by_overlap_and_relevance(self, mem):
        results = mem.search("python files", "s1")
        assert [e.type for e in results] == ["response", "tool_result"]

    def test_search_drops_entries_below_threshold(self, mem):
        assert all(e.relevance >= 0.3 for e in mem.search("search failed python", "s1"))

    def test_search_ignores_short_words(self, mem):
        assert mem.search("a an of", "s1") == []

    def test_digest_format(self, mem):
        digest = mem.retrieve_relevant_memory("python files", "s1")
        assert digest.splitlines()[0] == "- [response] There are 10 python files"

    def test_falls_back_to_recent_when_nothing_matches(self, mem):
        digest = mem.retrieve_relevant_memory("weather tomorrow", "s1")
        lines = digest.splitlines()
        assert lines == [
            "- [response] There are 10 python files",
            "- [tool_result] list_files returned 10 python files",
        ]

    def test_empty_session_returns_empty_string(self):
        assert ShortTermMemory().retrieve_relevant_memory("anything", "nobody") == ""


class TestFromConfig:

    def test_from_config(self):
        mem = ShortTermMemory.from_config(
            MemoryConfig(max_entries=7, relevance_threshold=0.1, summary_items=3)
        )
        assert mem.max_entries == 7
        assert mem.relevance_threshold == 0.1
        assert mem.summary_items == 3
