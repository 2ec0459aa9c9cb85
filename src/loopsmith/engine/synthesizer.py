"""
engine/synthesizer.py — Response Synthesizer

Produces the final natural-language answer of a turn. Called when reasoning
chooses to respond, when the action interpreter chooses to respond without
giving text, and when the iteration cap forces the turn to finish.

synthesize() never raises and never returns an empty string. When the
response stage fails, a templated apology that summarises whatever the
tools produced is returned instead and the error travels back in the
Synthesis so the controller can record it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loopsmith.engine.context import SessionContext
from loopsmith.engine.stages import Stage, StageRunner
from loopsmith.engine.types import ResponseOutput
from loopsmith.engine.utils import truncate
from loopsmith.exceptions import EngineError
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)

_APOLOGY = "I apologize, but I encountered an error while generating the final response."
_NOTHING_FOUND = "I wasn't able to gather any results for this request."


@dataclass
class Synthesis:
    text: str
    error: Optional[EngineError] = None
    used_model: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None


class ResponseSynthesizer:

    def __init__(self, runner: StageRunner):
        self._runner = runner

    async def synthesize(
        self,
        ctx: SessionContext,
        draft: Optional[str] = None,
        forced: bool = False,
    ) -> Synthesis:
        """
        Args:
            draft:  Answer text already proposed by an earlier stage. Used
                    as-is unless the turn is being force-finalized.
            forced: True when the iteration cap ended the loop.
        """
        if draft and draft.strip() and not forced:
            return Synthesis(text=draft.strip())

        try:
            output: ResponseOutput = await self._runner.run(Stage.RESPONSE, {
                "user_message": ctx.user_message,
                "understanding": ctx.analysis.understanding if ctx.analysis else "",
                "tool_results": [r.for_prompt() for r in ctx.tool_results],
                "draft": draft,
                "forced": forced,
                "memory_summary": ctx.memory_summary,
            })
            return Synthesis(text=output.response.strip(), used_model=True)
        except EngineError as e:
            log.warning("synthesizer.failed", error=str(e), error_type=type(e).__name__,
                        forced=forced)
            ctx.diagnostics.append(f"{type(e).__name__}: {e}")
            return Synthesis(text=self.fallback(ctx, draft), error=e)

    @staticmethod
    def fallback(ctx: SessionContext, draft: Optional[str] = None) -> str:
        lines = [_APOLOGY]
        if draft and draft.strip():
            lines += ["", draft.strip()]
        successes = [r for r in ctx.tool_results if r.result.success]
        if successes:
            lines += ["", "Here is what I found before the error:"]
            for r in successes[-5:]:
                lines.append(f"- {r.tool}: {truncate(r.result.mapped_output or str(r.result.data), 160)}")
        elif not draft:
            lines += ["", _NOTHING_FOUND]
        return "\n".join(lines)
