"""
engine/utils.py — Shared Engine Utilities

Small helpers used by more than one engine module.
"""

from __future__ import annotations

import asyncio
import re
import time
import uuid

from loopsmith.observability.logger import get_logger

log = get_logger(__name__)

# ─────────────────────────────────────────────────────────────────────────────
# Fire-and-forget helper
# ─────────────────────────────────────────────────────────────────────────────

# Strong references keep asyncio from garbage-collecting tasks mid-flight.
# Tasks remove themselves in the done-callback.
_BG_TASKS: set[asyncio.Task] = set()


def fire_and_forget(coro, label: str = "bg_task") -> asyncio.Task:
    """
    Schedule a coroutine as a background asyncio task.

    Unlike a bare asyncio.create_task(), this:
      1. Holds a strong reference so the GC cannot cancel the task mid-flight.
      2. Attaches a done-callback that logs any unhandled exception so failures
         are never silently swallowed.
      3. Removes the task from the reference set when complete.
    """
    task = asyncio.create_task(coro)
    _BG_TASKS.add(task)

    def _on_done(t: asyncio.Task) -> None:
        _BG_TASKS.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            log.warning(
                "bg_task.failed",
                label=label,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    task.add_done_callback(_on_done)
    return task


# ─────────────────────────────────────────────────────────────────────────────
# Text helpers
# ─────────────────────────────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)


def strip_fences(text: str) -> str:
    """Remove a surrounding Markdown code fence, if any."""
    text = text.strip()
    m = _FENCE_RE.match(text)
    if m:
        return m.group(1).strip()
    return text


def truncate(text: str, limit: int = 200) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


def new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex[:12]}"


def elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)
