"""
engine/policy.py — Tool Failure Correction Policy

After a tool call fails, the controller asks a CorrectionPolicy what to do
next. The policy is any callable ``(ToolFailure) -> CorrectionAction``; the
default keeps going and lets the action interpreter look at the error.

    continue  → run the action interpreter as usual
    retry     → make the same call eligible once more, back to reasoning
    skip      → back to reasoning without interpretation
    ask_user  → end the turn in needs_user_input with the failure text
    escalate  → end the turn in failed
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from loopsmith.tools.types import ToolResult


class CorrectionAction(str, Enum):
    CONTINUE = "continue"
    RETRY = "retry"
    SKIP = "skip"
    ASK_USER = "ask_user"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class ToolFailure:
    session_id: str
    tool: str
    parameters: dict[str, Any]
    result: ToolResult
    iteration: int
    consecutive_errors: int
    retried: bool = False       # this call was already a retry


CorrectionPolicy = Callable[[ToolFailure], CorrectionAction]


def continue_policy(failure: ToolFailure) -> CorrectionAction:
    return CorrectionAction.CONTINUE


def retry_once_policy(failure: ToolFailure) -> CorrectionAction:
    """Retry a timed-out call once, otherwise continue."""
    if failure.result.error_type == "ToolTimeoutError" and not failure.retried:
        return CorrectionAction.RETRY
    return CorrectionAction.CONTINUE
