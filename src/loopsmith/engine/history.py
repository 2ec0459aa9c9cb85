"""
engine/history.py — History Recorder

Append-only audit log of a session. Every phase transition, tool
start/finish/skip and caught error becomes exactly one HistoryEntry.
Entries are frozen pydantic models; nothing here ever edits or removes one.

The digest built by summarize() feeds later reasoning prompts and is purely
informational.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Optional

from loopsmith.engine.context import SessionContext
from loopsmith.engine.types import (
    CompletionStatus,
    EntryKind,
    EntryStatus,
    HistoryEntry,
    HistoryMetadata,
)
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)


class HistoryRecorder:

    def __init__(self, window: int = 8, max_content_chars: int = 300):
        self.window = window
        self.max_content_chars = max_content_chars

    def append(
        self,
        ctx: SessionContext,
        phase: CompletionStatus,
        content: str,
        *,
        kind: EntryKind,
        status: EntryStatus = EntryStatus.SUCCESS,
        tool: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
        error: Optional[BaseException | str] = None,
        duration_ms: Optional[float] = None,
    ) -> HistoryEntry:
        error_text: Optional[str] = None
        error_type: Optional[str] = None
        if isinstance(error, BaseException):
            error_text = str(error) or type(error).__name__
            error_type = type(error).__name__
        elif error is not None:
            error_text = error

        entry = HistoryEntry(
            phase=phase,
            content=content,
            metadata=HistoryMetadata(
                kind=kind,
                status=status,
                iteration=ctx.iteration_count,
                tool=tool,
                parameters=parameters,
                error=error_text,
                error_type=error_type,
                duration_ms=duration_ms,
            ),
        )
        ctx.history.append(entry)
        log.debug(
            "history.append",
            session_id=ctx.session_id,
            phase=phase.value,
            kind=kind.value,
            status=status.value,
            tool=tool,
        )
        return entry

    # ── Reads ─────────────────────────────────────────────────────────────────

    @staticmethod
    def count_by_phase(ctx: SessionContext) -> dict[str, int]:
        return dict(Counter(e.phase.value for e in ctx.history))

    @staticmethod
    def entries(
        ctx: SessionContext,
        kind: Optional[EntryKind] = None,
        status: Optional[EntryStatus] = None,
    ) -> list[HistoryEntry]:
        return [
            e for e in ctx.history
            if (kind is None or e.metadata.kind is kind)
            and (status is None or e.metadata.status is status)
        ]

    def recent(self, ctx: SessionContext) -> list[HistoryEntry]:
        return ctx.history[-self.window:]

    def summarize(self, ctx: SessionContext) -> str:
        """Count-by-phase digest followed by the trailing window of entries."""
        if not ctx.history:
            return "No history yet."

        counts = self.count_by_phase(ctx)
        lines = [
            "Entries by phase: "
            + ", ".join(f"{phase}={n}" for phase, n in sorted(counts.items()))
        ]
        for e in self.recent(ctx):
            content = e.content
            if len(content) > self.max_content_chars:
                content = content[: self.max_content_chars] + "…"
            tag = f"{e.phase.value}/{e.metadata.kind.value}"
            if e.metadata.tool:
                tag += f" {e.metadata.tool}"
            if e.metadata.status is not EntryStatus.SUCCESS:
                tag += f" [{e.metadata.status.value}]"
            lines.append(f"- (iter {e.metadata.iteration}) {tag}: {content}")
        return "\n".join(lines)
