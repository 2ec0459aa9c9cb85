"""
engine/analyzer.py — Request Analysis

First stage of every turn: turn the raw user message into an
AnalysisResult (what is being asked, which tools look relevant, a rough
plan). Failure here ends the turn.
"""

from __future__ import annotations

from loopsmith.engine.context import SessionContext
from loopsmith.engine.interfaces import ToolProvider
from loopsmith.engine.stages import Stage, StageRunner
from loopsmith.engine.types import AnalysisResult
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)


class Analyzer:

    def __init__(self, runner: StageRunner, tools: ToolProvider):
        self._runner = runner
        self._tools = tools

    async def analyze(self, ctx: SessionContext) -> AnalysisResult:
        result: AnalysisResult = await self._runner.run(Stage.ANALYSIS, {
            "user_message": ctx.user_message,
            "tools": [t.to_llm_schema() for t in self._tools.get_all_tools()],
            "memory_summary": ctx.memory_summary,
        })
        known = {t.name for t in self._tools.get_all_tools()}
        unknown = [t for t in result.required_tools if t not in known]
        if unknown:
            log.debug("analyzer.unknown_tools", tools=unknown)
        log.info("analyzer.done", task_type=result.task_type.value,
                 required_tools=result.required_tools, plan_steps=len(result.initial_plan))
        return result
