"""
tests/integration/test_turn_scenarios.py — end-to-end turns

Drives PhaseController with a real ToolRegistry, DeduplicationGuard,
ToolExecutor and HistoryRecorder; only the stage models are scripted.

Coverage:
  - list files → interpret → respond (single tool call)
  - identical call requested twice → one execution, one skip
  - tool raises → recoverable, next reasoning sees the error
  - iteration cap → forced synthesis
  - cancellation during reasoning and during a running tool
  - global invariants: terminal status, non-empty output, bounded
    iteration count, no orphan tool executions

Run:
    pytest tests/integration/test_turn_scenarios.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from helpers import CONTINUE, ScriptedModels, interpret_respond, respond, use_tool
from loopsmith.engine.types import CompletionStatus, EntryKind, EntryStatus

S = CompletionStatus


def _assert_turn_invariants(result, ctx, max_iterations: int) -> None:
    assert result.status.is_terminal
    assert result.output.strip()
    assert result.iterations <= max_iterations + 1
    if result.status is S.NEEDS_USER_INPUT:
        assert ctx.requires_user_input_reason
    else:
        assert ctx.final_output

    iterations = [e.metadata.iteration for e in ctx.history]
    assert iterations == sorted(iterations)

    starts = [e for e in ctx.history if e.metadata.kind is EntryKind.TOOL_START]
    finishes = [e for e in ctx.history if e.metadata.kind is EntryKind.TOOL_FINISH]
    assert len(finishes) == len(ctx.tool_results)
    assert len(starts) >= len(finishes)


# ─────────────────────────────────────────────────────────────────────────────
# Single tool call
# ─────────────────────────────────────────────────────────────────────────────

class TestListFiles:

    @pytest.mark.asyncio
    async def test_one_tool_then_respond(self, make_controller, tool_calls, sink):
        models = ScriptedModels(
            reasoning=[use_tool("list_files", path=".")],
            action=[interpret_respond("There are 10 files in the directory.")],
        )
        controller = make_controller(models)

        result = await controller.run_turn("s1", "list files")

        assert result.status is S.COMPLETE
        assert result.ok
        assert result.tool_calls == 1
        assert tool_calls.counts["list_files"] == 1
        assert "10 files" in result.final_output
        assert models.calls("response") == 0

        ctx = controller.get_session("s1")
        assert ctx.tool_results[0].result.data == [f"file_{i}.py" for i in range(10)]
        assert ctx.tool_results[0].result.mapped_output == "10 item(s)"
        _assert_turn_invariants(result, ctx, max_iterations=10)

    @pytest.mark.asyncio
    async def test_interpreter_respond_without_text_uses_synthesizer(self, make_controller):
        models = ScriptedModels(
            reasoning=[use_tool("list_files", path=".")],
            action=[interpret_respond(None)],
            response=['```json\n{"response": "I found 10 files."}\n```'],
        )
        controller = make_controller(models)

        result = await controller.run_turn("s1", "list files")

        assert result.status is S.COMPLETE
        assert result.output == "I found 10 files."
        assert models.calls("response") == 1
        tool_results = models.prompts["response"][0].variables["tool_results"]
        assert tool_results[0]["tool"] == "list_files"

    @pytest.mark.asyncio
    async def test_events_bracket_the_turn(self, make_controller, sink):
        models = ScriptedModels(
            reasoning=[use_tool("list_files", path=".")],
            action=[interpret_respond("10 files")],
        )
        controller = make_controller(models)

        await controller.run_turn("s1", "list files")

        assert sink.types[0] == "turn.started"
        assert sink.types[-1] == "turn.finished"
        assert "tool.started" in sink.types
        assert "tool.completed" in sink.types
        assert "response.generated" in sink.types
        assert all(p["session_id"] == "s1" for _, p in sink.events)
        started = [p["phase"] for p in sink.of_type("phase.started")]
        assert started[:4] == ["analyzing", "reasoning", "executing", "evaluating"]


# ─────────────────────────────────────────────────────────────────────────────
# Deduplication
# ─────────────────────────────────────────────────────────────────────────────

class TestDuplicateCalls:

    @pytest.mark.asyncio
    async def test_same_call_twice_runs_once(self, make_controller, tool_calls, sink):
        models = ScriptedModels(
            reasoning=[
                use_tool("search", query="x"),
                use_tool("search", query="x"),
                respond("x is used in main.py"),
            ],
            action=[CONTINUE],
        )
        controller = make_controller(models)

        result = await controller.run_turn("s1", "where is x used?")

        assert result.status is S.COMPLETE
        assert tool_calls.counts["search"] == 1
        ctx = controller.get_session("s1")
        skipped = controller.history.entries(ctx, kind=EntryKind.TOOL_SKIPPED)
        assert len(skipped) == 1
        assert skipped[0].metadata.status is EntryStatus.SKIPPED
        assert skipped[0].metadata.iteration == 2
        assert len(sink.of_type("tool.skipped")) == 1
        # the skip does not go through the interpreter
        assert models.calls("action") == 1
        _assert_turn_invariants(result, ctx, max_iterations=10)

    @pytest.mark.asyncio
    async def test_key_order_does_not_matter(self, make_controller, tool_calls):
        models = ScriptedModels(
            reasoning=[
                {"nextAction": "use_tool", "tool": "explode",
                 "parameters": {"query": "x", "scope": {"a": 1, "b": 2}}},
                {"nextAction": "use_tool", "tool": "explode",
                 "parameters": {"scope": {"b": 2, "a": 1}, "query": "x"}},
                respond("done"),
            ],
            action=[CONTINUE],
        )
        controller = make_controller(models)

        result = await controller.run_turn("s1", "search")

        assert result.status is S.COMPLETE
        assert tool_calls.counts["explode"] == 1
        assert len(controller.get_session("s1").tool_results) == 1

    @pytest.mark.asyncio
    async def test_new_turn_resets_executed_keys(self, make_controller, tool_calls):
        models = ScriptedModels(
            reasoning=[use_tool("list_files", path="."), use_tool("list_files", path=".")],
            action=[interpret_respond("10 files"), interpret_respond("still 10 files")],
        )
        controller = make_controller(models)

        first = await controller.run_turn("s1", "list files")
        second = await controller.run_turn("s1", "list them again")

        assert first.ok and second.ok
        assert tool_calls.counts["list_files"] == 2
        ctx = controller.get_session("s1")
        assert ctx.turn_count == 2
        assert len(ctx.tool_results) == 1
        # history survives turns
        assert len(controller.history.entries(ctx, kind=EntryKind.TOOL_FINISH)) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Tool failure
# ─────────────────────────────────────────────────────────────────────────────

class TestToolFailure:

    @pytest.mark.asyncio
    async def test_raising_tool_is_recoverable(self, make_controller, sink):
        observed = {}
        holder = {}

        def second_reasoning(prompt):
            ctx = holder["controller"].get_session("s1")
            observed["status"] = ctx.completion_status
            observed["iteration"] = ctx.iteration_count
            return respond("The disk seems to be on fire.")

        models = ScriptedModels(
            reasoning=[use_tool("explode"), second_reasoning],
            action=[CONTINUE],
        )
        controller = holder["controller"] = make_controller(models)

        result = await controller.run_turn("s1", "do the thing")

        assert result.status is S.COMPLETE
        assert observed["status"] is S.REASONING
        assert observed["iteration"] == 2

        ctx = controller.get_session("s1")
        errors = controller.history.entries(ctx, status=EntryStatus.ERROR)
        assert len(errors) == 1
        assert "disk on fire" in errors[0].metadata.error
        assert len(sink.of_type("tool.error")) == 1

        last = models.prompts["reasoning"][1].variables["last_result"]
        assert last["success"] is False
        assert "disk on fire" in last["result"]
        _assert_turn_invariants(result, ctx, max_iterations=10)

    @pytest.mark.asyncio
    async def test_timeout_becomes_failed_result(self, make_controller, sink):
        models = ScriptedModels(
            reasoning=[use_tool("slow"), respond("It was too slow.")],
            action=[CONTINUE],
        )
        controller = make_controller(models)

        result = await controller.run_turn("s1", "be slow")

        assert result.status is S.COMPLETE
        execution = controller.get_session("s1").tool_results[0]
        assert execution.result.success is False
        assert execution.result.error_type == "ToolTimeoutError"
        assert sink.of_type("tool.error")[0]["error_type"] == "ToolTimeoutError"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_a_tool_failure(self, make_controller):
        models = ScriptedModels(
            reasoning=[use_tool("does_not_exist"), respond("That tool is missing.")],
            action=[CONTINUE],
        )
        controller = make_controller(models)

        result = await controller.run_turn("s1", "use a missing tool")

        assert result.status is S.COMPLETE
        execution = controller.get_session("s1").tool_results[0]
        assert execution.result.error_type == "ToolNotFoundError"


# ─────────────────────────────────────────────────────────────────────────────
# Iteration cap
# ─────────────────────────────────────────────────────────────────────────────

class TestIterationCap:

    @pytest.mark.asyncio
    async def test_cap_forces_synthesis(self, make_controller, tool_calls):
        models = ScriptedModels(
            reasoning=[
                use_tool("read_file", path="a.py"),
                use_tool("read_file", path="b.py"),
                use_tool("read_file", path="c.py"),
            ],
            action=[CONTINUE, CONTINUE, CONTINUE],
            response=[{"response": "Best effort: read a.py, b.py and c.py."}],
        )
        controller = make_controller(models, max_iterations=3)

        result = await controller.run_turn("s1", "read everything")

        assert result.status is S.COMPLETE
        assert result.output == "Best effort: read a.py, b.py and c.py."
        assert result.iterations == 4
        assert models.calls("reasoning") == 3
        assert models.calls("response") == 1
        assert models.prompts["response"][0].variables["forced"] is True
        assert tool_calls.counts["read_file"] == 3
        _assert_turn_invariants(result, controller.get_session("s1"), max_iterations=3)

    @pytest.mark.asyncio
    async def test_failed_forced_synthesis_falls_back(self, make_controller):
        models = ScriptedModels(
            reasoning=[use_tool("list_files", path=".")],
            action=[CONTINUE],
            response=[RuntimeError("model down")],
        )
        controller = make_controller(models, max_iterations=1)

        result = await controller.run_turn("s1", "list files")

        assert result.status is S.COMPLETE
        assert result.output.startswith("I apologize")
        assert "list_files" in result.output
        assert any("ResponseSynthesisError" in d for d in result.diagnostics)


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_during_first_reasoning(self, make_controller, tool_calls):
        holder = {}

        def cancel_then_use_tool(prompt):
            assert holder["controller"].cancel("s1") is True
            return use_tool("read_file", path="a.py")

        models = ScriptedModels(reasoning=[cancel_then_use_tool, respond("unreachable")])
        controller = holder["controller"] = make_controller(models)

        result = await controller.run_turn("s1", "read a.py")

        assert result.status is S.FAILED
        assert result.cancelled is True
        assert result.output == "Task cancelled."
        assert tool_calls.total == 0
        assert models.calls("reasoning") == 1
        ctx = controller.get_session("s1")
        assert len(controller.history.entries(ctx, kind=EntryKind.CANCELLED)) == 1

    @pytest.mark.asyncio
    async def test_cancel_while_tool_runs(self, make_controller, sink, tool_calls):
        models = ScriptedModels(reasoning=[use_tool("hang"), respond("unreachable")])
        controller = make_controller(models)

        task = asyncio.create_task(controller.run_turn("s1", "wait forever"))
        for _ in range(200):
            if tool_calls.counts["hang"]:
                break
            await asyncio.sleep(0.01)
        assert controller.cancel("s1") is True

        result = await asyncio.wait_for(task, timeout=2)

        assert result.status is S.FAILED
        assert result.cancelled is True
        assert models.calls("reasoning") == 1
        assert models.calls("action") == 0
        assert any(p["error_type"] == "TurnCancelledError" for p in sink.of_type("error"))

    @pytest.mark.asyncio
    async def test_cancel_without_running_turn(self, make_controller):
        controller = make_controller(ScriptedModels(reasoning=[respond("hi")]))
        assert controller.cancel("nobody") is False
        await controller.run_turn("s1", "hello")
        assert controller.cancel("s1") is False
