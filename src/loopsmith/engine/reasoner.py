"""
engine/reasoner.py — Reasoner

Iteration bookkeeping plus the per-iteration "what next?" model call.

start_iteration() is the only place the iteration counter moves. It
increments first and then reports whether the new number is still within
the cap, so the counter tops out at max_iterations + 1: the iteration that
trips the guard is counted but never reaches the model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loopsmith.engine.context import SessionContext
from loopsmith.engine.history import HistoryRecorder
from loopsmith.engine.interfaces import ToolProvider
from loopsmith.engine.stages import Stage, StageRunner
from loopsmith.engine.types import NextAction, ReasoningDecision
from loopsmith.exceptions import InternalInvariantError
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class IterationTicket:
    number: int
    should_continue: bool


class Reasoner:

    def __init__(self, runner: StageRunner, tools: ToolProvider, history: HistoryRecorder):
        self._runner = runner
        self._tools = tools
        self._history = history

    def start_iteration(self, ctx: SessionContext) -> IterationTicket:
        ctx.iteration_count += 1
        ticket = IterationTicket(
            number=ctx.iteration_count,
            should_continue=ctx.iteration_count <= ctx.max_iterations,
        )
        if not ticket.should_continue:
            log.info("reasoner.iteration_cap", iteration=ticket.number,
                     max_iterations=ctx.max_iterations)
        return ticket

    async def decide(self, ctx: SessionContext) -> ReasoningDecision:
        """
        One reasoning model call.

        Raises:
            ReasoningError / ValidationError from the stage runner.
            InternalInvariantError if the model chose use_tool without a tool.
        """
        variables = self.build_variables(ctx)
        # The pending error is shown exactly once.
        ctx.pending_error = None

        decision: ReasoningDecision = await self._runner.run(Stage.REASONING, variables)
        log.info(
            "reasoner.decision",
            next_action=decision.next_action.value,
            tool=decision.tool,
            iteration=ctx.iteration_count,
        )
        if decision.next_action is NextAction.USE_TOOL and not (decision.tool or "").strip():
            raise InternalInvariantError("Reasoning chose use_tool without naming a tool")
        return decision

    def build_variables(self, ctx: SessionContext) -> dict[str, Any]:
        last = ctx.last_tool_result
        analysis = ctx.analysis
        return {
            "user_message": ctx.user_message,
            "understanding": analysis.understanding if analysis else "",
            "plan": analysis.initial_plan if analysis else [],
            "tools": [t.to_llm_schema() for t in self._tools.get_all_tools()],
            "previous_results": [r.for_prompt() for r in ctx.previous_tool_results],
            "last_result": last.for_prompt() if last else None,
            "last_error": ctx.pending_error,
            "memory_summary": ctx.memory_summary,
            "history_summary": self._history.summarize(ctx),
            "iteration": ctx.iteration_count,
            "max_iterations": ctx.max_iterations,
        }
