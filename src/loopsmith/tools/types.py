"""
tools/types.py — Tool System Data Models

Shared types used by the tool registry, the engine's tool executor and
tool implementations.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────────────
# Tool registration metadata
# ─────────────────────────────────────────────────────────────────────────────


class ToolDescriptor(BaseModel):
    """
    Metadata for a registered tool, as shown to the model.
    ``timeout_seconds`` overrides the engine's default tool timeout.
    """
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str
    parameter_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []},
        alias="parameterSchema",
    )
    timeout_seconds: Optional[float] = Field(default=None, alias="timeoutSeconds")

    def to_llm_schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameter_schema,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Runtime types
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ExecutionContext:
    """
    Passed to handlers that accept an ``exec_context`` keyword. Long-running
    tools should watch ``cancel_event`` and stop early when it is set.
    """
    session_id: str
    operation_id: str
    iteration: int = 0
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class ToolResult(BaseModel):
    """
    Canonical outcome of any tool call, whatever the tool's native return
    shape was. ``data`` is set on success, ``error`` on failure.
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    mapped_output: Optional[str] = None     # short display string for UIs
    duration_ms: float = 0.0

    @classmethod
    def ok(cls, data: Any, mapped_output: Optional[str] = None, duration_ms: float = 0.0) -> "ToolResult":
        return cls(success=True, data=data, mapped_output=mapped_output, duration_ms=duration_ms)

    @classmethod
    def fail(
        cls,
        error: str,
        duration_ms: float = 0.0,
        error_type: Optional[str] = None,
    ) -> "ToolResult":
        return cls(success=False, data=None, error=error, error_type=error_type,
                   mapped_output=f"Error: {error}", duration_ms=duration_ms)

    @property
    def payload(self) -> Any:
        """What the model gets to see: data on success, the error otherwise."""
        if self.success:
            return self.data if self.data is not None else "No data returned by tool"
        return f"Error: {self.error or 'Tool execution failed'}"
