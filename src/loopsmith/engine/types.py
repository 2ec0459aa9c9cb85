"""
engine/types.py — Turn Engine Data Models

Shared types used by the phase controller and every component it drives:
completion states, history entries, the tool results accumulator, and the
structured outputs of each model stage. ToolResult itself lives in
loopsmith.tools.types and is re-exported here.

Stage outputs accept camelCase keys (``nextAction``) as well as snake_case,
because that is what the prompts ask the model to produce.
"""

from __future__ import annotations

import json
import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from loopsmith.tools.types import ToolResult

__all__ = [
    "ActionAnalysis",
    "AnalysisResult",
    "CompletionStatus",
    "EntryKind",
    "EntryStatus",
    "HistoryEntry",
    "HistoryMetadata",
    "Interpretation",
    "NextAction",
    "ReasoningDecision",
    "ResponseOutput",
    "TERMINAL_STATUSES",
    "TaskType",
    "ToolExecution",
    "ToolResult",
    "TurnResult",
]


# ─────────────────────────────────────────────────────────────────────────────
# Status enums
# ─────────────────────────────────────────────────────────────────────────────


class CompletionStatus(str, Enum):
    """Phase of a session's current turn. The last three are terminal."""
    IDLE = "idle"
    ANALYZING = "analyzing"
    REASONING = "reasoning"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    COMPLETE = "complete"
    FAILED = "failed"
    NEEDS_USER_INPUT = "needs_user_input"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    CompletionStatus.COMPLETE,
    CompletionStatus.FAILED,
    CompletionStatus.NEEDS_USER_INPUT,
})


class EntryKind(str, Enum):
    """What a history entry records."""
    TRANSITION = "transition"
    ANALYSIS = "analysis"
    DECISION = "decision"
    TOOL_START = "tool_start"
    TOOL_FINISH = "tool_finish"
    TOOL_SKIPPED = "tool_skipped"
    CORRECTION = "correction"
    INTERPRETATION = "interpretation"
    RESPONSE = "response"
    ERROR = "error"
    CANCELLED = "cancelled"


class EntryStatus(str, Enum):
    SUCCESS = "success"
    STARTED = "started"
    ERROR = "error"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


# ─────────────────────────────────────────────────────────────────────────────
# History
# ─────────────────────────────────────────────────────────────────────────────


class HistoryMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: EntryKind
    status: EntryStatus = EntryStatus.SUCCESS
    iteration: int = 0
    tool: Optional[str] = None
    parameters: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: Optional[float] = None


class HistoryEntry(BaseModel):
    """One immutable line of a session's audit log."""
    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(default_factory=time.time)
    phase: CompletionStatus
    content: str
    metadata: HistoryMetadata


# ─────────────────────────────────────────────────────────────────────────────
# Tool results accumulator
# ─────────────────────────────────────────────────────────────────────────────


class ToolExecution(BaseModel):
    """One entry of the per-turn tool results accumulator."""
    tool: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: ToolResult

    def for_prompt(self, max_chars: int = 2000) -> dict[str, Any]:
        payload = self.result.payload
        text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
        if len(text) > max_chars:
            text = text[:max_chars] + f"…(+{len(text) - max_chars} chars)"
        return {"tool": self.tool, "success": self.result.success, "result": text}


# ─────────────────────────────────────────────────────────────────────────────
# Structured stage outputs
# ─────────────────────────────────────────────────────────────────────────────


class _StageOutput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TaskType(str, Enum):
    CODE_EXPLANATION = "code_explanation"
    CODE_GENERATION = "code_generation"
    CODE_MODIFICATION = "code_modification"
    DEBUGGING = "debugging"
    INFORMATION_REQUEST = "information_request"
    TOOL_EXECUTION = "tool_execution"


class AnalysisResult(_StageOutput):
    understanding: str = "Analysing the request."
    task_type: TaskType = TaskType.INFORMATION_REQUEST
    required_tools: list[str] = Field(default_factory=list)
    required_context: list[str] = Field(default_factory=list)
    initial_plan: list[str] = Field(default_factory=lambda: ["Process the user's request"])


class NextAction(str, Enum):
    USE_TOOL = "use_tool"
    RESPOND = "respond"


class ReasoningDecision(_StageOutput):
    next_action: NextAction
    tool: Optional[str] = None
    parameters: Optional[dict[str, Any]] = None
    response: Optional[str] = None
    reasoning: str = ""


class Interpretation(str, Enum):
    CONTINUE = "continue"
    RESPOND = "respond"


class ActionAnalysis(_StageOutput):
    next_action: Interpretation
    response: Optional[str] = None
    interpretation: str = ""


class ResponseOutput(_StageOutput):
    response: str


# ─────────────────────────────────────────────────────────────────────────────
# Turn outcome
# ─────────────────────────────────────────────────────────────────────────────


class TurnResult(BaseModel):
    """What the host gets back from PhaseController.run_turn()."""
    session_id: str
    status: CompletionStatus
    output: str
    final_output: Optional[str] = None
    requires_user_input_reason: Optional[str] = None
    error: Optional[str] = None
    iterations: int = 0
    tool_calls: int = 0
    cancelled: bool = False
    diagnostics: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is CompletionStatus.COMPLETE
