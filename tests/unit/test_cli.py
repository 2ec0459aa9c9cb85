"""
tests/unit/test_cli.py — CLI Entry Point Unit Tests

Tests argument parsing, config bootstrap failures, event and result
rendering, and single-message mode with a mocked controller.

Run with:
    pytest tests/unit/test_cli.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from rich.console import Console

from loopsmith.config.settings import Settings
from loopsmith.engine.types import CompletionStatus, TurnResult
from loopsmith.main import ConsoleEventSink, bootstrap, main, parse_args, render_result


# ── Helpers ───────────────────────────────────────────────────────────────────


def make_console() -> Console:
    return Console(record=True, width=100, force_terminal=False, color_system=None)


def make_result(
    status: CompletionStatus = CompletionStatus.COMPLETE,
    output: str = "There are 10 files.",
    cancelled: bool = False,
) -> TurnResult:
    return TurnResult(session_id="cli", status=status, output=output, cancelled=cancelled)


def make_controller(result: TurnResult) -> MagicMock:
    controller = MagicMock()
    controller.run_turn = AsyncMock(return_value=result)
    controller.events.drain = AsyncMock()
    return controller


# ─────────────────────────────────────────────────────────────────────────────
# parse_args
# ─────────────────────────────────────────────────────────────────────────────


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.message is None
        assert args.session == "cli"
        assert args.config is None
        assert args.log_level is None

    def test_single_message_and_options(self):
        args = parse_args(["list files", "--session", "work", "--log-level", "DEBUG",
                           "--config", "my.yaml"])
        assert args.message == "list files"
        assert args.session == "work"
        assert args.log_level == "DEBUG"
        assert args.config == "my.yaml"

    def test_invalid_log_level_exits(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "LOUD"])


# ─────────────────────────────────────────────────────────────────────────────
# bootstrap
# ─────────────────────────────────────────────────────────────────────────────


class TestBootstrap:
    def test_invalid_yaml_value_exits_1(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"
        path.write_text("llm:\n  provider: carrier_pigeon\n", encoding="utf-8")
        with pytest.raises(SystemExit) as exc_info:
            bootstrap(parse_args(["--config", str(path)]))
        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert "Config validation failed" in err
        assert "llm.provider" in err

    def test_cross_field_problem_exits_1(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"
        path.write_text("llm:\n  provider: openai\n  model: gpt-4o-mini\n", encoding="utf-8")
        with pytest.raises(SystemExit) as exc_info:
            bootstrap(parse_args(["--config", str(path)]))
        assert exc_info.value.code == 1
        assert "OPENAI_API_KEY" in capsys.readouterr().err

    def test_valid_config_sets_up_logging(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(f"logging:\n  log_dir: {tmp_path / 'logs'}\n", encoding="utf-8")
        with patch("loopsmith.observability.logger.setup_logging") as setup:
            settings, log = bootstrap(parse_args(["--config", str(path), "--log-level", "DEBUG"]))
        assert isinstance(settings, Settings)
        assert setup.call_args.kwargs["level"] == "DEBUG"
        assert setup.call_args.kwargs["max_bytes"] == 100 * 1024 * 1024


# ─────────────────────────────────────────────────────────────────────────────
# Rendering
# ─────────────────────────────────────────────────────────────────────────────


class TestConsoleEventSink:
    def test_tool_lines(self):
        console = make_console()
        sink = ConsoleEventSink(console)
        sink("tool.started", {"tool": "list_files"})
        sink("tool.completed", {"tool": "list_files", "duration_ms": 12.5})
        sink("tool.error", {"tool": "search", "error": "boom"})
        sink("tool.skipped", {"tool": "search"})
        sink("phase.started", {"phase": "reasoning"})
        text = console.export_text()
        assert "🔧 list_files" in text
        assert "✓ list_files (12.5 ms)" in text
        assert "⚠ search: boom" in text
        assert "skipped repeated call to search" in text
        assert "reasoning" not in text


class TestRenderResult:
    def test_complete_renders_markdown(self):
        console = make_console()
        render_result(console, make_result(output="**Ten** files."))
        assert "Ten files." in console.export_text()

    def test_cancelled(self):
        console = make_console()
        render_result(console, make_result(status=CompletionStatus.FAILED,
                                           output="Task cancelled.", cancelled=True))
        text = console.export_text()
        assert "🛑 Task cancelled." in text
        assert "Failed" not in text

    def test_needs_user_input_panel(self):
        console = make_console()
        render_result(console, make_result(status=CompletionStatus.NEEDS_USER_INPUT,
                                           output="Which directory?"))
        text = console.export_text()
        assert "Need more info" in text
        assert "Which directory?" in text

    def test_failed_panel(self):
        console = make_console()
        render_result(console, make_result(status=CompletionStatus.FAILED,
                                           output="I ran into 3 errors in a row."))
        text = console.export_text()
        assert "Failed" in text
        assert "3 errors in a row" in text


# ─────────────────────────────────────────────────────────────────────────────
# main()
# ─────────────────────────────────────────────────────────────────────────────


class TestMain:
    def _run(self, result: TurnResult, argv: list[str]) -> tuple[int, MagicMock]:
        controller = make_controller(result)
        with patch("loopsmith.main.bootstrap", return_value=(Settings(), MagicMock())), \
             patch("loopsmith.main.build_controller", return_value=controller):
            code = main(argv)
        return code, controller

    def test_single_message_success(self):
        code, controller = self._run(make_result(), ["how many files?", "--session", "s9"])
        assert code == 0
        controller.run_turn.assert_awaited_once_with("s9", "how many files?")
        controller.events.drain.assert_awaited()

    def test_single_message_failure_exit_code(self):
        code, _ = self._run(make_result(status=CompletionStatus.FAILED, output="x"), ["go"])
        assert code == 1

    def test_llm_init_failure(self):
        from loopsmith.exceptions import LLMConnectionError

        with patch("loopsmith.main.bootstrap", return_value=(Settings(), MagicMock())), \
             patch("loopsmith.main.build_controller",
                   side_effect=LLMConnectionError("no server")):
            assert main(["hi"]) == 1
