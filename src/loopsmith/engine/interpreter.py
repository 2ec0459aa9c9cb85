"""
engine/interpreter.py — Action Interpreter

Runs after every tool call that actually happened and decides whether the
turn should keep going (back to reasoning) or answer now.
"""

from __future__ import annotations

from loopsmith.engine.context import SessionContext
from loopsmith.engine.stages import Stage, StageRunner
from loopsmith.engine.types import ActionAnalysis, ToolExecution
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)


class ActionInterpreter:

    def __init__(self, runner: StageRunner):
        self._runner = runner

    async def interpret(self, ctx: SessionContext, execution: ToolExecution) -> ActionAnalysis:
        """
        ``execution`` is the result just produced. Prior results are passed
        separately and exclude it.
        """
        prior = [r.for_prompt() for r in ctx.tool_results if r is not execution]
        analysis: ActionAnalysis = await self._runner.run(Stage.ACTION, {
            "user_message": ctx.user_message,
            "tool": execution.tool,
            "parameters": execution.parameters,
            "result": execution.for_prompt(),
            "previous_results": prior,
            "memory_summary": ctx.memory_summary,
            "iteration": ctx.iteration_count,
        })
        log.info("interpreter.done", tool=execution.tool,
                 next_action=analysis.next_action.value)
        return analysis
