"""
tests/helpers.py — scripted collaborators shared by unit and integration tests

  - ScriptedModels: stage models that replay queued outputs per stage and
    record every StagePrompt they receive.
  - RecordingSink: event sink that keeps (event_type, payload) pairs.
  - payload builders for the reasoning and action stages.
"""

from __future__ import annotations

import inspect
from collections import defaultdict, deque
from typing import Any, Optional

from loopsmith.engine import StageModels, StagePrompt

DEFAULT_ANALYSIS = {
    "understanding": "The user wants information about the project files.",
    "taskType": "information_request",
    "requiredTools": ["list_files"],
    "requiredContext": [],
    "initialPlan": ["List the files", "Answer"],
}

CONTINUE = {"nextAction": "continue", "interpretation": "need more"}


def use_tool(tool: str, **params: Any) -> dict[str, Any]:
    return {"nextAction": "use_tool", "tool": tool, "parameters": params,
            "reasoning": f"need {tool}"}


def respond(text: str) -> dict[str, Any]:
    return {"nextAction": "respond", "response": text, "reasoning": "enough information"}


def interpret_respond(text: Optional[str] = None) -> dict[str, Any]:
    return {"nextAction": "respond", "response": text, "interpretation": "done"}


class ScriptedModels:
    """
    Each stage pops the next queued item. An exception instance is raised,
    a callable is called with the prompt (and awaited if needed), anything
    else is returned as the raw model output. The analysis stage falls back
    to DEFAULT_ANALYSIS when its queue is empty.
    """

    def __init__(self, **scripts: list[Any]):
        self.scripts: dict[str, deque] = {k: deque(v) for k, v in scripts.items()}
        self.prompts: dict[str, list[StagePrompt]] = defaultdict(list)

    def as_stage_models(self) -> StageModels:
        return StageModels(
            analysis=self._model("analysis"),
            reasoning=self._model("reasoning"),
            action=self._model("action"),
            response=self._model("response"),
        )

    def calls(self, stage: str) -> int:
        return len(self.prompts[stage])

    def _model(self, stage: str):
        async def call(prompt: StagePrompt) -> Any:
            self.prompts[stage].append(prompt)
            queue = self.scripts.get(stage)
            if not queue:
                if stage == "analysis":
                    return DEFAULT_ANALYSIS
                raise AssertionError(f"no scripted output left for stage {stage!r}")
            item = queue.popleft()
            if isinstance(item, BaseException):
                raise item
            if callable(item):
                item = item(prompt)
                if inspect.isawaitable(item):
                    item = await item
            return item
        return call


class RecordingSink:
    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [p for t, p in self.events if t == event_type]

    @property
    def types(self) -> list[str]:
        return [t for t, _ in self.events]


class ToolCalls:
    """Counts executions per tool name."""

    def __init__(self):
        self.counts: dict[str, int] = defaultdict(int)
        self.params: list[tuple[str, dict[str, Any]]] = []

    def record(self, name: str, **params: Any) -> None:
        self.counts[name] += 1
        self.params.append((name, params))

    @property
    def total(self) -> int:
        return sum(self.counts.values())
