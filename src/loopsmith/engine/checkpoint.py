"""
engine/checkpoint.py — Session Checkpoints

The engine keeps SessionContext in process only. A CheckpointStore is the
external collaborator that loads a session's snapshot when the controller
first sees it and saves it after every turn. Snapshots are plain dicts
(SessionContext.snapshot()); the storage format is the store's business.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Optional, Protocol, runtime_checkable

from loopsmith.observability.logger import get_logger

log = get_logger(__name__)


@runtime_checkable
class CheckpointStore(Protocol):

    async def load(self, session_id: str) -> Optional[dict[str, Any]]: ...

    async def save(self, session_id: str, snapshot: dict[str, Any]) -> None: ...


class InMemoryCheckpointStore:
    """Dict-backed store for tests and the CLI. Lost on exit."""

    def __init__(self) -> None:
        self._snapshots: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def load(self, session_id: str) -> Optional[dict[str, Any]]:
        async with self._lock:
            snap = self._snapshots.get(session_id)
            return copy.deepcopy(snap) if snap is not None else None

    async def save(self, session_id: str, snapshot: dict[str, Any]) -> None:
        async with self._lock:
            self._snapshots[session_id] = copy.deepcopy(snapshot)
        log.debug("checkpoint.saved", session_id=session_id,
                  status=snapshot.get("completion_status"))

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)
