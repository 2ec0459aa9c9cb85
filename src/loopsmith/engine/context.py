"""
engine/context.py — Session Context

One SessionContext exists per conversation. It lives across turns and is
mutated only by the PhaseController and the component it is currently
driving. History survives turn boundaries; everything else listed under
"per-turn state" is reset when a new user message arrives.

The completion status moves through a fixed transition table. Any
non-terminal phase may drop to FAILED (cancellation, escalation, the
consecutive-error guard); terminal values are write-once within a turn.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional

from pydantic import BaseModel, Field

from loopsmith.engine.types import (
    AnalysisResult,
    CompletionStatus,
    HistoryEntry,
    ToolExecution,
)
from loopsmith.exceptions import InternalInvariantError
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)

S = CompletionStatus

ALLOWED_TRANSITIONS: dict[CompletionStatus, frozenset[CompletionStatus]] = {
    S.IDLE: frozenset({S.ANALYZING}),
    S.ANALYZING: frozenset({S.REASONING, S.FAILED}),
    S.REASONING: frozenset({S.EXECUTING, S.COMPLETE, S.FAILED, S.NEEDS_USER_INPUT}),
    S.EXECUTING: frozenset({S.EVALUATING, S.FAILED}),
    S.EVALUATING: frozenset({S.REASONING, S.COMPLETE, S.FAILED, S.NEEDS_USER_INPUT}),
    S.COMPLETE: frozenset(),
    S.FAILED: frozenset(),
    S.NEEDS_USER_INPUT: frozenset(),
}


def _jsonable(value: Any) -> Any:
    """Tool data reduced to JSON types; unknown objects become their str()."""
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return str(value)


def _storable(execution: ToolExecution) -> ToolExecution:
    result = execution.result.model_copy(update={"data": _jsonable(execution.result.data)})
    return execution.model_copy(update={"result": result})


class SessionSnapshot(BaseModel):
    """Plain-data form of a SessionContext, handed to checkpoint stores."""
    session_id: str
    user_message: str = ""
    turn_count: int = 0
    iteration_count: int = 0
    max_iterations: int = 10
    completion_status: CompletionStatus = CompletionStatus.IDLE
    history: list[HistoryEntry] = Field(default_factory=list)
    tool_results: list[ToolExecution] = Field(default_factory=list)
    executed_keys: list[str] = Field(default_factory=list)
    retryable_keys: list[str] = Field(default_factory=list)
    final_output: Optional[str] = None
    error: Optional[str] = None
    requires_user_input_reason: Optional[str] = None
    pending_error: Optional[str] = None
    analysis: Optional[AnalysisResult] = None
    memory_summary: str = ""
    diagnostics: list[str] = Field(default_factory=list)
    consecutive_errors: int = 0
    cancelled: bool = False
    created_at: float = Field(default_factory=time.time)


class SessionContext:
    """All state for one conversation, owned by the PhaseController."""

    def __init__(self, session_id: str, max_iterations: int = 10):
        self.session_id = session_id
        self.max_iterations = max_iterations
        self.created_at = time.time()
        self.turn_count: int = 0

        # Persist across turns
        self.history: list[HistoryEntry] = []

        # Per-turn state
        self.user_message: str = ""
        self.iteration_count: int = 0
        self.completion_status: CompletionStatus = CompletionStatus.IDLE
        self.tool_results: list[ToolExecution] = []
        self.executed_keys: set[str] = set()
        self.retryable_keys: set[str] = set()
        self.final_output: Optional[str] = None
        self.error: Optional[str] = None
        self.requires_user_input_reason: Optional[str] = None
        self.pending_error: Optional[str] = None     # surfaced once to the next reasoning call
        self.analysis: Optional[AnalysisResult] = None
        self.memory_summary: str = ""
        self.diagnostics: list[str] = []
        self.consecutive_errors: int = 0
        self.cancelled: bool = False

        self._cancel_event = asyncio.Event()

    # ── Turn lifecycle ────────────────────────────────────────────────────────

    def begin_turn(self, user_message: str) -> None:
        """Reset per-turn state and enter ANALYZING. History is kept."""
        if not (self.completion_status is CompletionStatus.IDLE or self.is_terminal):
            raise InternalInvariantError(
                f"Cannot start a new turn while session {self.session_id} "
                f"is {self.completion_status.value}"
            )
        self.user_message = user_message
        self.turn_count += 1
        self.iteration_count = 0
        self.tool_results = []
        self.executed_keys = set()
        self.retryable_keys = set()
        self.final_output = None
        self.error = None
        self.requires_user_input_reason = None
        self.pending_error = None
        self.analysis = None
        self.memory_summary = ""
        self.diagnostics = []
        self.consecutive_errors = 0
        self.cancelled = False
        self._cancel_event.clear()
        self.completion_status = CompletionStatus.IDLE
        self.transition(CompletionStatus.ANALYZING)

    def discard_unfinished(self) -> bool:
        """
        Drop a turn that was restored mid-flight and will not be resumed.
        Returns True if there was one. Only valid while no turn is running.
        """
        if self.is_terminal or self.completion_status is CompletionStatus.IDLE:
            return False
        log.info("context.unfinished_discarded", session_id=self.session_id,
                 status=self.completion_status.value)
        self.completion_status = CompletionStatus.IDLE
        return True

    def rewind_to_reasoning(self) -> bool:
        """
        Prepare a restored turn for resumption. A snapshot taken while
        executing or evaluating has lost its in-flight call, so the turn
        picks up again at reasoning.
        """
        if self.completion_status in (CompletionStatus.EXECUTING, CompletionStatus.EVALUATING):
            self.completion_status = CompletionStatus.REASONING
            return True
        return False

    @property
    def is_terminal(self) -> bool:
        return self.completion_status.is_terminal

    def transition(self, target: CompletionStatus) -> bool:
        """
        Move to ``target``. Returns False for a self-transition (nothing
        changes), True otherwise. Raises InternalInvariantError for any move
        the table does not allow, including any move out of a terminal state.
        """
        current = self.completion_status
        if target is current and not current.is_terminal:
            return False
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InternalInvariantError(
                f"Illegal transition {current.value} -> {target.value} "
                f"for session {self.session_id}"
            )
        self.completion_status = target
        log.debug("context.transition", session_id=self.session_id,
                  from_status=current.value, to_status=target.value)
        return True

    # ── Terminal outcomes ─────────────────────────────────────────────────────
    # Exactly one of final_output / requires_user_input_reason is set.

    def complete(self, output: str) -> None:
        self.transition(CompletionStatus.COMPLETE)
        self.final_output = output

    def fail(self, message: str, error: Optional[str] = None) -> None:
        self.transition(CompletionStatus.FAILED)
        self.final_output = message
        self.error = error or message

    def request_user_input(self, reason: str) -> None:
        self.transition(CompletionStatus.NEEDS_USER_INPUT)
        self.requires_user_input_reason = reason

    @property
    def output_text(self) -> str:
        """The user-facing text of a finished turn."""
        if self.completion_status is CompletionStatus.NEEDS_USER_INPUT:
            return self.requires_user_input_reason or ""
        return self.final_output or ""

    # ── Tool results ──────────────────────────────────────────────────────────

    def add_tool_result(self, execution: ToolExecution) -> None:
        self.tool_results.append(execution)

    @property
    def previous_tool_results(self) -> list[ToolExecution]:
        """Every accumulated result except the latest one."""
        return self.tool_results[:-1]

    @property
    def last_tool_result(self) -> Optional[ToolExecution]:
        return self.tool_results[-1] if self.tool_results else None

    # ── Cancellation ─────────────────────────────────────────────────────────

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def cancel(self) -> None:
        self._cancel_event.set()
        log.info("context.cancel_requested", session_id=self.session_id)

    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ── Checkpointing ────────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        return SessionSnapshot(
            session_id=self.session_id,
            user_message=self.user_message,
            turn_count=self.turn_count,
            iteration_count=self.iteration_count,
            max_iterations=self.max_iterations,
            completion_status=self.completion_status,
            history=list(self.history),
            tool_results=[_storable(t) for t in self.tool_results],
            executed_keys=sorted(self.executed_keys),
            retryable_keys=sorted(self.retryable_keys),
            final_output=self.final_output,
            error=self.error,
            requires_user_input_reason=self.requires_user_input_reason,
            pending_error=self.pending_error,
            analysis=self.analysis,
            memory_summary=self.memory_summary,
            diagnostics=list(self.diagnostics),
            consecutive_errors=self.consecutive_errors,
            cancelled=self.cancelled,
            created_at=self.created_at,
        ).model_dump(mode="json")

    @classmethod
    def restore(cls, data: dict[str, Any]) -> "SessionContext":
        snap = SessionSnapshot.model_validate(data)
        ctx = cls(snap.session_id, max_iterations=snap.max_iterations)
        ctx.created_at = snap.created_at
        ctx.turn_count = snap.turn_count
        ctx.history = list(snap.history)
        ctx.user_message = snap.user_message
        ctx.iteration_count = snap.iteration_count
        ctx.completion_status = snap.completion_status
        ctx.tool_results = list(snap.tool_results)
        ctx.executed_keys = set(snap.executed_keys)
        ctx.retryable_keys = set(snap.retryable_keys)
        ctx.final_output = snap.final_output
        ctx.error = snap.error
        ctx.requires_user_input_reason = snap.requires_user_input_reason
        ctx.pending_error = snap.pending_error
        ctx.analysis = snap.analysis
        ctx.memory_summary = snap.memory_summary
        ctx.diagnostics = list(snap.diagnostics)
        ctx.consecutive_errors = snap.consecutive_errors
        ctx.cancelled = snap.cancelled
        log.debug("context.restored", session_id=ctx.session_id,
                  status=ctx.completion_status.value, history=len(ctx.history))
        return ctx

    def __repr__(self) -> str:
        return (
            f"SessionContext(id={self.session_id!r}, status={self.completion_status.value}, "
            f"iteration={self.iteration_count}/{self.max_iterations})"
        )
