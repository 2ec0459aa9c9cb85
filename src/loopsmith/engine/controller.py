"""
engine/controller.py — Phase Controller

Top-level state machine of the engine. For every user message it drives one
session through

    analyzing → (reasoning → executing → evaluating)* → terminal

delegating each phase to its component and recording every step in the
session history and on the event dispatcher.

Design points:
  - The loop is flat: a strategy map picks the handler for the current
    status, the handler does one phase and moves the status on. The only
    counter that bounds the loop is the reasoner's iteration cap, checked
    on every entry to reasoning.
  - One SessionContext per session id, owned here. Turns of the same
    session never overlap (a per-session lock; a second concurrent turn
    gets SessionBusyError). Turns of different sessions run freely.
  - Stage errors are caught at the handler that called the stage. Each
    caught error becomes one history entry plus one ``error`` (or
    ``tool.error``) event, and is then either carried into the next
    reasoning call or ends the turn as failed.
  - Cancellation is observed at the top of every loop pass and while a tool
    is running; the turn ends as failed with ``cancelled=True``.

Usage:
    controller = PhaseController(models, registry, settings.engine,
                                 memory=ShortTermMemory(), checkpoints=store)
    result = await controller.run_turn("sess_1", "list the files here")
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from loopsmith.config.settings import EngineConfig
from loopsmith.engine.analyzer import Analyzer
from loopsmith.engine.checkpoint import CheckpointStore
from loopsmith.engine.context import SessionContext
from loopsmith.engine.dedup import DeduplicationGuard
from loopsmith.engine.events import EventDispatcher, EventSink, EventType
from loopsmith.engine.executor import ToolExecutor
from loopsmith.engine.history import HistoryRecorder
from loopsmith.engine.interfaces import MemoryProvider, ToolProvider
from loopsmith.engine.interpreter import ActionInterpreter
from loopsmith.engine.policy import CorrectionAction, CorrectionPolicy, ToolFailure, continue_policy
from loopsmith.engine.reasoner import Reasoner
from loopsmith.engine.stages import StageModels, StageRunner
from loopsmith.engine.synthesizer import ResponseSynthesizer
from loopsmith.engine.types import (
    CompletionStatus,
    EntryKind,
    EntryStatus,
    Interpretation,
    NextAction,
    ToolExecution,
    TurnResult,
)
from loopsmith.engine.utils import new_operation_id, truncate
from loopsmith.exceptions import (
    EngineError,
    InternalInvariantError,
    SessionBusyError,
    SessionNotFoundError,
    TurnCancelledError,
    ValidationError,
)
from loopsmith.observability.logger import bind_iteration, bind_session, clear_session, get_logger
from loopsmith.tools.types import ExecutionContext

log = get_logger(__name__)

S = CompletionStatus

CLARIFY_TOOL = "I tried to use a tool, but I'm unsure which one. Can you clarify?"
CANCELLED_TEXT = "Task cancelled."
_ANALYSIS_FAILED = "I couldn't work out how to approach this request. Please try rephrasing it."
_MALFORMED_OUTPUT = "I couldn't produce a well-formed plan for this request, so I stopped."
_UNEXPECTED = "Something went wrong while processing your request."
_GENERIC_DONE = "I've finished working on your request."


@dataclass
class _PendingCall:
    tool: str
    parameters: dict[str, Any]
    key: str


@dataclass
class _TurnState:
    """Hand-off between consecutive phases of the turn being driven."""
    call: Optional[_PendingCall] = None
    execution: Optional[ToolExecution] = None
    key: str = ""
    retried: bool = False


PhaseHandler = Callable[[SessionContext, _TurnState], Awaitable[None]]


class PhaseController:
    """
    Owns every SessionContext and sequences the engine components.

    All collaborators are injected. The tool provider, stage models and
    memory provider are shared by every session and must tolerate
    concurrent use.
    """

    def __init__(
        self,
        models: StageModels,
        tools: ToolProvider,
        config: Optional[EngineConfig] = None,
        *,
        memory: Optional[MemoryProvider] = None,
        checkpoints: Optional[CheckpointStore] = None,
        sinks: Optional[list[EventSink]] = None,
        correction_policy: CorrectionPolicy = continue_policy,
    ) -> None:
        self.config = config or EngineConfig()
        self._memory = memory
        self._checkpoints = checkpoints
        self._policy = correction_policy

        runner = StageRunner(models, self.config)
        self.history = HistoryRecorder(window=self.config.history_window)
        self.events = EventDispatcher(sinks)
        self.dedup = DeduplicationGuard(self.config.dedup_policy)
        self.analyzer = Analyzer(runner, tools)
        self.reasoner = Reasoner(runner, tools, self.history)
        self.executor = ToolExecutor(tools, default_timeout=self.config.tool_timeout_seconds)
        self.interpreter = ActionInterpreter(runner)
        self.synthesizer = ResponseSynthesizer(runner)

        self._sessions: dict[str, SessionContext] = {}
        self._locks: dict[str, asyncio.Lock] = {}

        self._handlers: dict[CompletionStatus, PhaseHandler] = {
            S.ANALYZING: self._handle_analyzing,
            S.REASONING: self._handle_reasoning,
            S.EXECUTING: self._handle_executing,
            S.EVALUATING: self._handle_evaluating,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    async def run_turn(self, session_id: str, user_message: str) -> TurnResult:
        """
        Process one user message to a terminal status.

        Raises:
            SessionBusyError: a turn is already running for this session.
        """
        lock = self._lock_for(session_id)
        if lock.locked():
            raise SessionBusyError(f"Session {session_id} is already processing a turn")

        async with lock:
            ctx, load_error = await self._load_session(session_id, create=True)
            if ctx.discard_unfinished():
                self.history.append(ctx, ctx.completion_status, "Unfinished turn discarded",
                                    kind=EntryKind.TRANSITION, status=EntryStatus.CANCELLED)
            ctx.max_iterations = self.config.max_iterations
            ctx.begin_turn(user_message)
            bind_session(session_id, turn=ctx.turn_count)
            log.info("controller.turn_start", message=truncate(user_message, 120))
            try:
                if load_error is not None:
                    self._record_load_error(ctx, load_error)
                self.history.append(ctx, S.ANALYZING, f"New request: {truncate(user_message)}",
                                    kind=EntryKind.TRANSITION)
                self._emit(ctx, EventType.TURN_STARTED, message=user_message)
                self._emit(ctx, EventType.PHASE_STARTED, phase=S.ANALYZING.value)
                self._load_memory(ctx)
                await self._drive(ctx)
            finally:
                await self._end_turn(ctx)
            return self._result(ctx)

    async def resume_turn(self, session_id: str) -> TurnResult:
        """
        Continue a turn restored from a checkpoint without resetting its
        counters. A session with no unfinished turn returns its last result;
        a checkpoint that cannot be loaded returns an idle result carrying
        the error in its diagnostics.

        Raises:
            SessionNotFoundError: neither the controller nor the checkpoint
                                  store knows the session.
            SessionBusyError:     a turn is already running for it.
        """
        lock = self._lock_for(session_id)
        if lock.locked():
            raise SessionBusyError(f"Session {session_id} is already processing a turn")

        async with lock:
            ctx, load_error = await self._load_session(session_id, create=False)
            if load_error is not None:
                self._record_load_error(ctx, load_error)
                return self._result(ctx)
            if ctx.is_terminal or ctx.completion_status is S.IDLE:
                log.info("controller.nothing_to_resume", session_id=session_id,
                         status=ctx.completion_status.value)
                return self._result(ctx)

            if ctx.rewind_to_reasoning():
                self.history.append(ctx, S.REASONING, "Resumed; in-flight tool call abandoned",
                                    kind=EntryKind.TRANSITION)
            ctx.cancel_event.clear()
            bind_session(session_id, turn=ctx.turn_count)
            log.info("controller.turn_resume", status=ctx.completion_status.value,
                     iteration=ctx.iteration_count)
            try:
                self._emit(ctx, EventType.TURN_STARTED, message=ctx.user_message, resumed=True)
                if not ctx.memory_summary:
                    self._load_memory(ctx)
                await self._drive(ctx)
            finally:
                await self._end_turn(ctx)
            return self._result(ctx)

    def cancel(self, session_id: str) -> bool:
        """Signal cancellation. Returns False if no turn is running."""
        ctx = self._sessions.get(session_id)
        if ctx is None or ctx.is_terminal or ctx.completion_status is S.IDLE:
            return False
        ctx.cancel()
        return True

    def get_session(self, session_id: str) -> SessionContext:
        ctx = self._sessions.get(session_id)
        if ctx is None:
            raise SessionNotFoundError(f"Unknown session: {session_id}")
        return ctx

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions.keys())

    def subscribe(self, sink: EventSink) -> None:
        self.events.subscribe(sink)

    # ─────────────────────────────────────────────────────────────────────────
    # Loop
    # ─────────────────────────────────────────────────────────────────────────

    async def _drive(self, ctx: SessionContext) -> None:
        turn = _TurnState()
        try:
            while not ctx.is_terminal:
                if ctx.is_cancelled():
                    self._cancel_turn(ctx)
                    break
                handler = self._handlers.get(ctx.completion_status)
                if handler is None:
                    raise InternalInvariantError(
                        f"No handler for status {ctx.completion_status.value}"
                    )
                await handler(ctx, turn)
        except TurnCancelledError:
            self._cancel_turn(ctx)
        except asyncio.CancelledError:
            if not ctx.is_terminal:
                self._cancel_turn(ctx)
            raise
        except Exception as e:
            log.error("controller.unexpected_error", error=str(e),
                      error_type=type(e).__name__, exc_info=True)
            self._record_error(ctx, e)
            if not ctx.is_terminal:
                self._finish(ctx, S.FAILED, _UNEXPECTED, error=e)

    # ── analyzing ────────────────────────────────────────────────────────────

    async def _handle_analyzing(self, ctx: SessionContext, turn: _TurnState) -> None:
        try:
            analysis = await self.analyzer.analyze(ctx)
        except EngineError as e:
            self._record_error(ctx, e)
            self._finish(ctx, S.FAILED, _ANALYSIS_FAILED, error=e)
            return

        ctx.analysis = analysis
        self.history.append(ctx, S.ANALYZING, analysis.understanding, kind=EntryKind.ANALYSIS)
        self._remember(ctx, "analysis", analysis.understanding, relevance=0.6)
        self._move(ctx, S.REASONING)

    # ── reasoning ────────────────────────────────────────────────────────────

    async def _handle_reasoning(self, ctx: SessionContext, turn: _TurnState) -> None:
        ticket = self.reasoner.start_iteration(ctx)
        bind_iteration(ticket.number)
        if not ticket.should_continue:
            self.history.append(
                ctx, S.REASONING,
                f"Iteration limit of {ctx.max_iterations} reached; finalizing",
                kind=EntryKind.DECISION,
            )
            await self._respond(ctx, draft=None, forced=True)
            return

        try:
            decision = await self.reasoner.decide(ctx)
        except InternalInvariantError as e:
            self._record_error(ctx, e)
            self._finish(ctx, S.NEEDS_USER_INPUT, CLARIFY_TOOL, error=e)
            return
        except ValidationError as e:
            self._record_error(ctx, e)
            self._finish(ctx, S.FAILED, _MALFORMED_OUTPUT, error=e)
            return
        except EngineError as e:
            self._recoverable(ctx, e)
            return

        self.history.append(
            ctx, S.REASONING,
            decision.reasoning or f"Next action: {decision.next_action.value}",
            kind=EntryKind.DECISION,
            tool=decision.tool,
            parameters=decision.parameters,
        )

        if decision.next_action is NextAction.RESPOND:
            await self._respond(ctx, draft=decision.response)
            return

        tool = decision.tool.strip()
        params = decision.parameters or {}
        key = self.dedup.key(tool, params, ctx.session_id)
        if self.dedup.is_duplicate(ctx, key):
            log.info("dedup.skipped", tool=tool, key=key)
            self.history.append(ctx, S.REASONING, f"Skipped duplicate call to {tool}",
                                kind=EntryKind.TOOL_SKIPPED, status=EntryStatus.SKIPPED,
                                tool=tool, parameters=params)
            self._emit(ctx, EventType.TOOL_SKIPPED, tool=tool, parameters=params,
                       reason="duplicate")
            return

        turn.call = _PendingCall(tool=tool, parameters=params, key=key)
        self._move(ctx, S.EXECUTING)

    # ── executing ────────────────────────────────────────────────────────────

    async def _handle_executing(self, ctx: SessionContext, turn: _TurnState) -> None:
        call, turn.call = turn.call, None
        if call is None:
            raise InternalInvariantError("Entered executing without a pending tool call")

        retried = self.dedup.mark_executed(ctx, call.key)
        exec_ctx = ExecutionContext(
            session_id=ctx.session_id,
            operation_id=new_operation_id(),
            iteration=ctx.iteration_count,
            cancel_event=ctx.cancel_event,
        )
        self.history.append(ctx, S.EXECUTING, f"Running {call.tool}",
                            kind=EntryKind.TOOL_START, status=EntryStatus.STARTED,
                            tool=call.tool, parameters=call.parameters)
        self._emit(ctx, EventType.TOOL_STARTED, tool=call.tool, parameters=call.parameters,
                   operation_id=exec_ctx.operation_id)

        result = await self.executor.execute(call.tool, call.parameters, exec_ctx)

        execution = ToolExecution(tool=call.tool, parameters=call.parameters, result=result)
        ctx.add_tool_result(execution)
        turn.execution, turn.key, turn.retried = execution, call.key, retried

        if result.success:
            ctx.consecutive_errors = 0
            self.history.append(ctx, S.EXECUTING, f"{call.tool}: {result.mapped_output}",
                                kind=EntryKind.TOOL_FINISH, tool=call.tool,
                                duration_ms=result.duration_ms)
            self._emit(ctx, EventType.TOOL_COMPLETED, tool=call.tool,
                       mapped_output=result.mapped_output, duration_ms=result.duration_ms)
            self._remember(ctx, "tool_result", f"{call.tool} → {result.mapped_output}",
                           relevance=0.5)
        else:
            ctx.consecutive_errors += 1
            self.history.append(ctx, S.EXECUTING, f"{call.tool} failed: {result.error}",
                                kind=EntryKind.TOOL_FINISH, status=EntryStatus.ERROR,
                                tool=call.tool, error=result.error,
                                duration_ms=result.duration_ms)
            self._emit(ctx, EventType.TOOL_ERROR, tool=call.tool, error=result.error,
                       error_type=result.error_type, duration_ms=result.duration_ms)
            self._remember(ctx, "tool_error", f"{call.tool} failed: {result.error}",
                           relevance=0.4)

        self._move(ctx, S.EVALUATING)

    # ── evaluating ───────────────────────────────────────────────────────────

    async def _handle_evaluating(self, ctx: SessionContext, turn: _TurnState) -> None:
        execution, turn.execution = turn.execution, None
        if execution is None:
            raise InternalInvariantError("Entered evaluating without a tool result")

        if not execution.result.success:
            if self._too_many_errors(ctx):
                self._fail_on_errors(ctx, execution.result.error or "tool failure")
                return
            if not await self._apply_correction(ctx, execution, turn):
                return

        try:
            analysis = await self.interpreter.interpret(ctx, execution)
        except ValidationError as e:
            self._record_error(ctx, e)
            self._finish(ctx, S.FAILED, _MALFORMED_OUTPUT, error=e)
            return
        except EngineError as e:
            self._recoverable(ctx, e)
            if not ctx.is_terminal:
                self._move(ctx, S.REASONING)
            return

        if execution.result.success:
            ctx.consecutive_errors = 0
        self.history.append(ctx, S.EVALUATING,
                            analysis.interpretation or f"Decided to {analysis.next_action.value}",
                            kind=EntryKind.INTERPRETATION, tool=execution.tool)

        if analysis.next_action is Interpretation.RESPOND:
            await self._respond(ctx, draft=analysis.response)
        else:
            self._move(ctx, S.REASONING)

    async def _apply_correction(
        self,
        ctx: SessionContext,
        execution: ToolExecution,
        turn: _TurnState,
    ) -> bool:
        """
        Run the correction policy for a failed call. Returns True when the
        action interpreter should still look at the failure.
        """
        self.dedup.mark_failed(ctx, turn.key, retried=turn.retried)
        action = self._policy(ToolFailure(
            session_id=ctx.session_id,
            tool=execution.tool,
            parameters=execution.parameters,
            result=execution.result,
            iteration=ctx.iteration_count,
            consecutive_errors=ctx.consecutive_errors,
            retried=turn.retried,
        ))
        action = CorrectionAction(action)
        if action is CorrectionAction.CONTINUE:
            return True

        log.info("controller.correction", tool=execution.tool, action=action.value)
        self.history.append(ctx, S.EVALUATING, f"Correction for {execution.tool}: {action.value}",
                            kind=EntryKind.CORRECTION, tool=execution.tool)
        if action is CorrectionAction.RETRY:
            self.dedup.allow_retry(ctx, turn.key)
            self._move(ctx, S.REASONING)
        elif action is CorrectionAction.SKIP:
            self._move(ctx, S.REASONING)
        elif action is CorrectionAction.ASK_USER:
            self._finish(
                ctx, S.NEEDS_USER_INPUT,
                f"The tool '{execution.tool}' failed: {execution.result.error}. "
                f"How would you like me to proceed?",
            )
        else:
            self._finish(
                ctx, S.FAILED,
                f"I had to stop because the tool '{execution.tool}' failed: "
                f"{execution.result.error}",
                error=execution.result.error,
            )
        return False

    # ─────────────────────────────────────────────────────────────────────────
    # Outcomes
    # ─────────────────────────────────────────────────────────────────────────

    async def _respond(self, ctx: SessionContext, draft: Optional[str], forced: bool = False) -> None:
        synthesis = await self.synthesizer.synthesize(ctx, draft=draft, forced=forced)
        if synthesis.failed:
            self._record_error(ctx, synthesis.error)
        self._finish(ctx, S.COMPLETE, synthesis.text)

    def _recoverable(self, ctx: SessionContext, error: Exception) -> None:
        """Record a stage error and carry it into the next reasoning call."""
        self._record_error(ctx, error)
        ctx.pending_error = f"{type(error).__name__}: {error}"
        ctx.diagnostics.append(ctx.pending_error)
        ctx.consecutive_errors += 1
        if self._too_many_errors(ctx):
            self._fail_on_errors(ctx, str(error))

    def _too_many_errors(self, ctx: SessionContext) -> bool:
        return ctx.consecutive_errors >= self.config.max_consecutive_errors

    def _fail_on_errors(self, ctx: SessionContext, last_error: str) -> None:
        log.warning("controller.consecutive_errors", count=ctx.consecutive_errors)
        self._finish(
            ctx, S.FAILED,
            f"I ran into {ctx.consecutive_errors} errors in a row and stopped. "
            f"The last error was: {truncate(last_error, 200)}",
            error=last_error,
        )

    def _cancel_turn(self, ctx: SessionContext) -> None:
        if ctx.is_terminal:
            return
        ctx.cancelled = True
        log.info("controller.turn_cancelled", status=ctx.completion_status.value)
        self.history.append(ctx, ctx.completion_status, "Turn cancelled",
                            kind=EntryKind.CANCELLED, status=EntryStatus.CANCELLED,
                            error=TurnCancelledError.__name__)
        self._emit(ctx, EventType.ERROR, error="Turn cancelled",
                   error_type=TurnCancelledError.__name__, phase=ctx.completion_status.value)
        self._finish(ctx, S.FAILED, CANCELLED_TEXT, error=TurnCancelledError.__name__)

    def _finish(
        self,
        ctx: SessionContext,
        status: CompletionStatus,
        text: str,
        error: Optional[BaseException | str] = None,
    ) -> None:
        text = (text or "").strip() or _GENERIC_DONE
        previous = ctx.completion_status
        error_text = None
        if error is not None:
            error_text = f"{type(error).__name__}: {error}" if isinstance(error, BaseException) else error

        if status is S.COMPLETE:
            ctx.complete(text)
        elif status is S.NEEDS_USER_INPUT:
            ctx.request_user_input(text)
        else:
            ctx.fail(text, error_text)

        self._emit(ctx, EventType.PHASE_COMPLETED, phase=previous.value)
        self.history.append(
            ctx, status, text,
            kind=EntryKind.RESPONSE,
            status=EntryStatus.ERROR if status is S.FAILED else EntryStatus.SUCCESS,
            error=error_text if status is S.FAILED else None,
        )
        self._emit(ctx, EventType.RESPONSE_GENERATED, status=status.value, text=text)
        if status is S.COMPLETE:
            self._remember(ctx, "response", text, relevance=0.7)
        log.info("controller.turn_outcome", status=status.value, iteration=ctx.iteration_count)

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _move(self, ctx: SessionContext, target: CompletionStatus) -> None:
        previous = ctx.completion_status
        if not ctx.transition(target):
            return
        self._emit(ctx, EventType.PHASE_COMPLETED, phase=previous.value)
        self.history.append(ctx, target, f"{previous.value} -> {target.value}",
                            kind=EntryKind.TRANSITION)
        self._emit(ctx, EventType.PHASE_STARTED, phase=target.value)

    def _record_error(self, ctx: SessionContext, error: BaseException) -> None:
        log.warning("controller.stage_error", error=str(error), error_type=type(error).__name__,
                    phase=ctx.completion_status.value)
        self.history.append(ctx, ctx.completion_status, f"Error: {error}",
                            kind=EntryKind.ERROR, status=EntryStatus.ERROR, error=error)
        self._emit(ctx, EventType.ERROR, error=str(error), error_type=type(error).__name__,
                   phase=ctx.completion_status.value)

    def _emit(self, ctx: SessionContext, event_type: EventType, **data: Any) -> None:
        self.events.publish(event_type, ctx.session_id, ctx.iteration_count, **data)

    def _load_memory(self, ctx: SessionContext) -> None:
        if self._memory is None:
            return
        try:
            ctx.memory_summary = self._memory.retrieve_relevant_memory(
                ctx.user_message, session_id=ctx.session_id
            ) or ""
        except Exception as e:
            ctx.diagnostics.append(f"memory: {type(e).__name__}: {e}")
            self._record_error(ctx, e)

    def _remember(self, ctx: SessionContext, kind: str, content: str, relevance: float) -> None:
        if self._memory is None:
            return
        try:
            self._memory.add_to_short_term_memory(
                {"type": kind, "content": content, "relevance": relevance},
                session_id=ctx.session_id,
            )
        except Exception as e:
            ctx.diagnostics.append(f"memory: {type(e).__name__}: {e}")
            self._record_error(ctx, e)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def _load_session(
        self, session_id: str, create: bool
    ) -> tuple[SessionContext, Optional[Exception]]:
        """
        Cached context, else the checkpointed one, else a new one.

        A store that fails to load, or a snapshot that does not validate,
        yields a fresh context together with the error so the caller can
        record it once the turn has begun.
        """
        ctx = self._sessions.get(session_id)
        if ctx is not None:
            return ctx, None

        try:
            snapshot = (
                await self._checkpoints.load(session_id)
                if self._checkpoints is not None else None
            )
            restored = SessionContext.restore(snapshot) if snapshot is not None else None
        except Exception as e:
            log.error("controller.checkpoint_load_failed", session_id=session_id,
                      error=str(e), error_type=type(e).__name__)
            ctx = SessionContext(session_id, max_iterations=self.config.max_iterations)
            if create:
                self._sessions[session_id] = ctx
            return ctx, e

        if restored is not None:
            ctx = restored
            log.info("controller.session_restored", session_id=session_id,
                     status=ctx.completion_status.value)
        elif create:
            ctx = SessionContext(session_id, max_iterations=self.config.max_iterations)
            log.info("controller.session_created", session_id=session_id)
        else:
            raise SessionNotFoundError(f"Unknown session: {session_id}")

        self._sessions[session_id] = ctx
        return ctx, None

    def _record_load_error(self, ctx: SessionContext, error: Exception) -> None:
        ctx.diagnostics.append(f"checkpoint: {type(error).__name__}: {error}")
        self._record_error(ctx, error)

    async def _end_turn(self, ctx: SessionContext) -> None:
        self._emit(ctx, EventType.TURN_FINISHED, status=ctx.completion_status.value,
                   output=ctx.output_text, cancelled=ctx.cancelled)
        if self._checkpoints is not None:
            try:
                await self._checkpoints.save(ctx.session_id, ctx.snapshot())
            except Exception as e:
                ctx.diagnostics.append(f"checkpoint: {type(e).__name__}: {e}")
                self._record_error(ctx, e)
        log.info("controller.turn_end", status=ctx.completion_status.value,
                 iterations=ctx.iteration_count, tool_calls=len(ctx.tool_results))
        clear_session()

    @staticmethod
    def _result(ctx: SessionContext) -> TurnResult:
        return TurnResult(
            session_id=ctx.session_id,
            status=ctx.completion_status,
            output=ctx.output_text,
            final_output=ctx.final_output,
            requires_user_input_reason=ctx.requires_user_input_reason,
            error=ctx.error,
            iterations=ctx.iteration_count,
            tool_calls=len(ctx.tool_results),
            cancelled=ctx.cancelled,
            diagnostics=list(ctx.diagnostics),
        )
