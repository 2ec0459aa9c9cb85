"""
engine/stages.py — Structured Model Stages

The engine talks to its model through four opaque async callables, one per
stage (analysis, reasoning, action interpretation, response). Each receives a
StagePrompt and may return a dict, a JSON string or a fenced JSON string.

StageRunner owns everything around those calls:
  - a timeout per call
  - fence stripping, JSON parsing and pydantic validation
  - normalisation of near-miss payloads (aliases, unknown actions)
  - bounded auto-correction: a payload that fails validation is sent back
    to the model with a CorrectionContext, at most max_correction_attempts
    times, before ValidationError escapes.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from loopsmith.config.settings import EngineConfig
from loopsmith.engine.types import (
    ActionAnalysis,
    AnalysisResult,
    ReasoningDecision,
    ResponseOutput,
    TaskType,
)
from loopsmith.engine.utils import strip_fences, truncate
from loopsmith.exceptions import (
    AnalysisError,
    EngineError,
    ReasoningError,
    ResponseSynthesisError,
    ValidationError,
)
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class Stage(str, Enum):
    ANALYSIS = "analysis"
    REASONING = "reasoning"
    ACTION = "action"
    RESPONSE = "response"


@dataclass
class CorrectionContext:
    previous_output: str
    error: str
    attempt: int


@dataclass
class StagePrompt:
    stage: Stage
    variables: dict[str, Any] = field(default_factory=dict)
    correction: Optional[CorrectionContext] = None


StageModel = Callable[[StagePrompt], Awaitable[Any]]


@dataclass
class StageModels:
    """One async callable per stage. Must be safe to share across sessions."""
    analysis: StageModel
    reasoning: StageModel
    action: StageModel
    response: StageModel

    def for_stage(self, stage: Stage) -> StageModel:
        return getattr(self, stage.value)


# Errors raised when a stage call itself fails (timeout, provider error).
_STAGE_ERRORS: dict[Stage, Type[EngineError]] = {
    Stage.ANALYSIS: AnalysisError,
    Stage.REASONING: ReasoningError,
    Stage.ACTION: ReasoningError,
    Stage.RESPONSE: ResponseSynthesisError,
}

_STAGE_SCHEMAS: dict[Stage, Type[BaseModel]] = {
    Stage.ANALYSIS: AnalysisResult,
    Stage.REASONING: ReasoningDecision,
    Stage.ACTION: ActionAnalysis,
    Stage.RESPONSE: ResponseOutput,
}

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_TASK_TYPES = {t.value for t in TaskType}


# ─────────────────────────────────────────────────────────────────────────────
# Normalisation
# ─────────────────────────────────────────────────────────────────────────────

def _first(data: dict, *keys: str) -> Any:
    for k in keys:
        if data.get(k) is not None:
            return data[k]
    return None


def _normalise_reasoning(data: dict) -> dict:
    out = dict(data)
    action = _first(out, "nextAction", "next_action", "action")
    action = str(action).strip().lower() if action is not None else ""
    tool = _first(out, "tool", "tool_name", "toolName")
    if action not in ("use_tool", "respond"):
        log.debug("stages.unknown_next_action", stage="reasoning", value=action)
        action = "respond"
    out["nextAction"] = action
    out["tool"] = tool
    params = _first(out, "parameters", "params", "arguments", "args")
    if isinstance(params, str):
        try:
            params = json.loads(params)
        except json.JSONDecodeError:
            params = None
    out["parameters"] = params if isinstance(params, dict) else ({} if action == "use_tool" else None)
    for k in ("next_action", "action", "tool_name", "toolName", "params", "arguments", "args"):
        out.pop(k, None)
    return out


def _normalise_action(data: dict) -> dict:
    out = dict(data)
    action = _first(out, "nextAction", "next_action", "action")
    action = str(action).strip().lower() if action is not None else ""
    if action in ("use_tool", "continue"):
        action = "continue"
    elif action != "respond":
        action = "respond"
    out["nextAction"] = action
    out.pop("next_action", None)
    out.pop("action", None)
    return out


def _normalise_analysis(data: dict) -> dict:
    out = dict(data)
    task_type = _first(out, "taskType", "task_type")
    out.pop("task_type", None)
    out["taskType"] = task_type if task_type in _TASK_TYPES else TaskType.INFORMATION_REQUEST.value
    for key in ("requiredTools", "requiredContext", "initialPlan"):
        val = out.get(key)
        if isinstance(val, str):
            out[key] = [val]
        elif val is None:
            out.pop(key, None)
    return out


def _normalise_response(data: dict) -> dict:
    text = _first(data, "response", "answer", "text", "content", "finalOutput")
    return {"response": text.strip() if isinstance(text, str) else text}


_NORMALISERS: dict[Stage, Callable[[dict], dict]] = {
    Stage.ANALYSIS: _normalise_analysis,
    Stage.REASONING: _normalise_reasoning,
    Stage.ACTION: _normalise_action,
    Stage.RESPONSE: _normalise_response,
}


# ─────────────────────────────────────────────────────────────────────────────
# Runner
# ─────────────────────────────────────────────────────────────────────────────

class StageRunner:

    def __init__(self, models: StageModels, config: EngineConfig):
        self._models = models
        self._timeout = config.model_timeout_seconds
        self._max_corrections = config.max_correction_attempts

    async def run(self, stage: Stage, variables: dict[str, Any]) -> BaseModel:
        """
        Call the stage model and return its validated output.

        Raises the stage's error type (AnalysisError, ReasoningError,
        ResponseSynthesisError) when the call fails or times out, and
        ValidationError once every correction attempt is exhausted.
        """
        prompt = StagePrompt(stage=stage, variables=variables)
        attempt = 0
        while True:
            raw = await self._call(stage, prompt)
            try:
                return self.parse(stage, raw)
            except ValidationError as e:
                if attempt >= self._max_corrections:
                    log.warning("stages.validation_exhausted", stage=stage.value,
                                attempts=attempt + 1, error=str(e))
                    raise
                attempt += 1
                log.info("stages.correction_retry", stage=stage.value,
                         attempt=attempt, error=truncate(str(e)))
                prompt = StagePrompt(
                    stage=stage,
                    variables=variables,
                    correction=CorrectionContext(
                        previous_output=e.raw_output,
                        error=str(e),
                        attempt=attempt,
                    ),
                )

    async def _call(self, stage: Stage, prompt: StagePrompt) -> Any:
        error_cls = _STAGE_ERRORS[stage]
        model = self._models.for_stage(stage)
        try:
            return await asyncio.wait_for(model(prompt), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise error_cls(f"{stage.value} model call timed out after {self._timeout}s") from e
        except EngineError:
            raise
        except Exception as e:
            raise error_cls(f"{stage.value} model call failed: {e}") from e

    @staticmethod
    def parse(stage: Stage, raw: Any, schema: Optional[Type[M]] = None) -> M:
        schema = schema or _STAGE_SCHEMAS[stage]
        if isinstance(raw, schema):
            return raw
        if isinstance(raw, BaseModel):
            raw = raw.model_dump(by_alias=True)

        raw_text = raw if isinstance(raw, str) else json.dumps(raw, default=str)
        data: Any = raw
        if isinstance(raw, str):
            data = _parse_json(raw)
            if data is None:
                cleaned = strip_fences(raw)
                if stage is Stage.RESPONSE and cleaned:
                    return schema(response=cleaned)
                raise ValidationError(
                    f"{stage.value} output is not valid JSON",
                    stage=stage.value,
                    raw_output=truncate(raw_text, 2000),
                )

        if stage is Stage.RESPONSE and isinstance(data, str) and data.strip():
            return schema(response=data.strip())
        if not isinstance(data, dict):
            raise ValidationError(
                f"{stage.value} output must be a JSON object, got {type(data).__name__}",
                stage=stage.value,
                raw_output=truncate(raw_text, 2000),
            )

        data = _NORMALISERS[stage](data)
        try:
            result = schema.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                f"{stage.value} output failed validation: {e.errors(include_url=False)}",
                stage=stage.value,
                raw_output=truncate(raw_text, 2000),
            ) from e

        if isinstance(result, ResponseOutput) and not result.response.strip():
            raise ValidationError(
                "response output is empty",
                stage=stage.value,
                raw_output=truncate(raw_text, 2000),
            )
        return result


def _parse_json(text: str) -> Any:
    cleaned = strip_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    # Prose around a single JSON object
    m = _JSON_OBJECT_RE.search(cleaned)
    if m:
        try:
            return json.loads(m.group(0))
        except json.JSONDecodeError:
            return None
    return None
