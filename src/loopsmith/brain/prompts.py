"""
brain/prompts.py — Stage Prompt Templates

System prompts and user-message renderers for the four engine stages.
Every stage except the response asks for a single JSON object so the
StageRunner can validate it.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from loopsmith.engine.stages import CorrectionContext, Stage

_ANALYSIS_SYSTEM = """\
You are the analysis step of a coding assistant. Read the user's request and
work out what is being asked before anything is executed.
Return ONLY valid JSON — no fences, no prose.

Format:
{{"understanding": "one or two sentences",
  "taskType": "code_explanation | code_generation | code_modification | debugging | information_request | tool_execution",
  "requiredTools": ["tool names from the list below that will probably be needed"],
  "requiredContext": ["files, symbols or facts that need to be looked up"],
  "initialPlan": ["short step", "..."]}}

Available tools:
{tools}"""

_REASONING_SYSTEM = """\
You are the reasoning step of a coding assistant. Decide the single next
action: call one tool, or respond to the user.
Rules:
  - Call a tool only when its result is needed to answer.
  - Never repeat a call with the same parameters; repeated calls are skipped.
  - If the last result is an error, either fix the parameters or respond.
  - Respond as soon as you have enough information.
Return ONLY valid JSON — no fences, no prose.

Format:
{{"reasoning": "one sentence",
  "nextAction": "use_tool" | "respond",
  "tool": "tool name, required when nextAction is use_tool",
  "parameters": {{}},
  "response": "answer text, only when nextAction is respond"}}

Available tools:
{tools}"""

_ACTION_SYSTEM = """\
You are evaluating the result of a tool call made by a coding assistant.
Decide whether the result is enough to answer the user or more work is needed.
Return ONLY valid JSON — no fences, no prose.

Format:
{"interpretation": "what the result means, one or two sentences",
 "nextAction": "continue" | "respond",
 "response": "final answer for the user, required when nextAction is respond"}"""

_RESPONSE_SYSTEM = """\
You are writing the final answer of a coding assistant to the user.
Base the answer only on the request and the tool results provided. Be direct
and concrete. If the work was cut short, say what was found and what is
still missing.
Return ONLY valid JSON — no fences: {"response": "the answer"}"""

_CORRECTION = """\
Your previous output could not be used (attempt {attempt}).
Error: {error}
Reply again with ONLY the JSON object in the required format."""


def _tools_text(tools: list[dict[str, Any]]) -> str:
    if not tools:
        return "(no tools available)"
    return "\n".join(
        f"- {t['name']}: {t.get('description', '')} "
        f"params={json.dumps(t.get('parameters', {}).get('properties', {}))}"
        for t in tools
    )


def _results_text(results: list[dict[str, Any]]) -> str:
    if not results:
        return "(none)"
    return "\n".join(
        f"- {r['tool']} [{'ok' if r['success'] else 'error'}]: {r['result']}" for r in results
    )


def system_prompt(stage: Stage, variables: dict[str, Any]) -> str:
    tools = _tools_text(variables.get("tools", []))
    if stage is Stage.ANALYSIS:
        return _ANALYSIS_SYSTEM.format(tools=tools)
    if stage is Stage.REASONING:
        return _REASONING_SYSTEM.format(tools=tools)
    if stage is Stage.ACTION:
        return _ACTION_SYSTEM
    return _RESPONSE_SYSTEM


def user_prompt(stage: Stage, v: dict[str, Any]) -> str:
    parts = [f"User request:\n{v.get('user_message', '')}"]

    if v.get("memory_summary"):
        parts.append(f"Relevant memory:\n{v['memory_summary']}")

    if stage is Stage.REASONING:
        if v.get("understanding"):
            parts.append(f"Understanding:\n{v['understanding']}")
        if v.get("plan"):
            parts.append("Plan:\n" + "\n".join(f"{i + 1}. {s}" for i, s in enumerate(v["plan"])))
        parts.append(f"Earlier tool results:\n{_results_text(v.get('previous_results', []))}")
        last = v.get("last_result")
        parts.append(f"Last tool result:\n{_results_text([last]) if last else '(none)'}")
        if v.get("last_error"):
            parts.append(f"Last step failed with:\n{v['last_error']}")
        if v.get("history_summary"):
            parts.append(f"History:\n{v['history_summary']}")
        parts.append(f"Iteration {v.get('iteration')} of {v.get('max_iterations')}.")

    elif stage is Stage.ACTION:
        parts.append(f"Tool called: {v.get('tool')} {json.dumps(v.get('parameters', {}), default=str)}")
        parts.append(f"Result:\n{_results_text([v['result']])}")
        parts.append(f"Earlier tool results:\n{_results_text(v.get('previous_results', []))}")

    elif stage is Stage.RESPONSE:
        if v.get("understanding"):
            parts.append(f"Understanding:\n{v['understanding']}")
        parts.append(f"Tool results:\n{_results_text(v.get('tool_results', []))}")
        if v.get("draft"):
            parts.append(f"Draft answer:\n{v['draft']}")
        if v.get("forced"):
            parts.append("The step limit was reached. Answer with what is known so far.")

    return "\n\n".join(parts)


def correction_prompt(correction: Optional[CorrectionContext]) -> Optional[str]:
    if correction is None:
        return None
    return _CORRECTION.format(attempt=correction.attempt, error=correction.error)
