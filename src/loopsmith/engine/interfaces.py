"""
engine/interfaces.py — Collaborator Protocols

The engine never implements tools, memory or persistence itself. It is
handed objects that satisfy these protocols at construction time;
loopsmith.tools.ToolRegistry and loopsmith.memory.ShortTermMemory are the
in-process implementations.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from loopsmith.engine.types import ToolResult
from loopsmith.tools.types import ExecutionContext, ToolDescriptor


@runtime_checkable
class ToolProvider(Protocol):
    """Shared across sessions, so it must be safe under concurrent use."""

    async def execute_tool(
        self,
        name: str,
        params: dict[str, Any],
        exec_context: Optional[ExecutionContext] = None,
    ) -> ToolResult: ...

    def get_all_tools(self) -> list[ToolDescriptor]: ...

    def get_tool(self, name: str) -> Optional[ToolDescriptor]: ...


@runtime_checkable
class MemoryProvider(Protocol):

    def retrieve_relevant_memory(self, query: str, session_id: Optional[str] = None) -> str: ...

    def add_to_short_term_memory(
        self,
        entry: dict[str, Any],
        session_id: Optional[str] = None,
    ) -> None: ...
