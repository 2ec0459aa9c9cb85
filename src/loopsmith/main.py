"""
main.py — Loopsmith Entry Point

Usage:
    loopsmith                                   # interactive REPL
    loopsmith "why does test_parser fail?"      # single turn, then exit
    loopsmith --session work --log-level DEBUG
    loopsmith --config path/to/config.yaml

Ctrl-C while a turn is running cancels that turn; at the prompt it exits.
"""

from __future__ import annotations

# ─────────────────────────────────────────────────────────────────────────────
# Load environment variables before settings are imported
# ─────────────────────────────────────────────────────────────────────────────

from dotenv import load_dotenv

load_dotenv()

# ─────────────────────────────────────────────────────────────────────────────
import argparse
import asyncio
import signal
import sys
from typing import Any, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from loopsmith import __version__
from loopsmith.engine.types import CompletionStatus, TurnResult

_EXIT_COMMANDS = {"/quit", "/exit", "exit", "quit"}


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="loopsmith",
        description="Loopsmith — phase-driven agent loop for coding assistants",
    )
    parser.add_argument(
        "message",
        nargs="?",
        default=None,
        help="Run a single turn with this message and exit. Omit to start the REPL.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $LOOPSMITH_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--session",
        default="cli",
        help="Session id to run turns under (default: cli)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if config.yaml has
    invalid values or cross-field problems.
    """
    from pydantic import ValidationError

    from loopsmith.config.settings import ConfigError, load_settings
    from loopsmith.observability.logger import get_logger, setup_logging

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    return settings, get_logger("loopsmith.main")


# ─────────────────────────────────────────────────────────────────────────────
# Terminal rendering
# ─────────────────────────────────────────────────────────────────────────────

class ConsoleEventSink:
    """Prints tool activity as dim progress lines while a turn runs."""

    def __init__(self, console: Console):
        self.console = console

    def __call__(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type == "tool.started":
            self.console.print(f"[dim]🔧 {payload.get('tool')} …[/]")
        elif event_type == "tool.completed":
            self.console.print(f"[dim]✓ {payload.get('tool')} ({payload.get('duration_ms', 0)} ms)[/]")
        elif event_type == "tool.error":
            self.console.print(f"[yellow]⚠ {payload.get('tool')}: {payload.get('error')}[/]")
        elif event_type == "tool.skipped":
            self.console.print(f"[dim]↷ skipped repeated call to {payload.get('tool')}[/]")


def render_result(console: Console, result: TurnResult) -> None:
    if result.cancelled:
        console.print("[yellow]🛑 Task cancelled.[/]")
        return
    if result.status is CompletionStatus.NEEDS_USER_INPUT:
        console.print(Panel(Text(result.output), title="Need more info", border_style="yellow"))
        return
    if result.status is CompletionStatus.FAILED:
        console.print(Panel(Text(result.output), title="Failed", border_style="red"))
        return
    console.print(Markdown(result.output))


# ─────────────────────────────────────────────────────────────────────────────
# Wiring
# ─────────────────────────────────────────────────────────────────────────────

def build_controller(settings, console: Console):
    from loopsmith.brain import LLMStageModels, create_llm_client
    from loopsmith.engine import InMemoryCheckpointStore, PhaseController
    from loopsmith.memory import ShortTermMemory
    from loopsmith.tools import ToolRegistry

    client = create_llm_client(settings)
    return PhaseController(
        LLMStageModels.from_client(client, settings),
        ToolRegistry(),
        settings.engine,
        memory=ShortTermMemory.from_config(settings.memory),
        checkpoints=InMemoryCheckpointStore(),
        sinks=[ConsoleEventSink(console)],
    )


async def _run_turn(controller, session_id: str, message: str, log) -> TurnResult:
    """Run one turn with SIGINT mapped to cancelling that turn."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel, session_id)
        installed = True
    except (NotImplementedError, RuntimeError):
        log.debug("main.sigint_handler_unavailable")
        installed = False
    try:
        return await controller.run_turn(session_id, message)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def run(args: argparse.Namespace) -> int:
    settings, log = bootstrap(args)
    console = Console()
    log.info(
        "loopsmith.starting",
        version=__version__,
        llm_provider=settings.llm.provider,
        llm_model=settings.llm.model,
        session_id=args.session,
    )

    from loopsmith.exceptions import LLMError

    try:
        controller = build_controller(settings, console)
    except (LLMError, ValueError) as e:
        log.error("loopsmith.llm_init_failed", error=str(e), error_type=type(e).__name__)
        console.print(f"[red]❌ Failed to create LLM client: {e}[/]")
        return 1

    if args.message:
        result = await _run_turn(controller, args.session, args.message, log)
        render_result(console, result)
        await controller.events.drain()
        return 0 if result.ok else 1

    console.print(
        Panel(
            f"Loopsmith {__version__} · {settings.llm.provider}/{settings.llm.model}\n"
            "Type a request, or /quit to exit. Ctrl-C cancels a running turn.",
            border_style="cyan",
        )
    )
    while True:
        try:
            message = (await asyncio.to_thread(console.input, "[bold cyan]›[/] ")).strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye.[/]")
            break
        if not message:
            continue
        if message.lower() in _EXIT_COMMANDS:
            console.print("[dim]Goodbye.[/]")
            break
        result = await _run_turn(controller, args.session, message, log)
        render_result(console, result)
        console.print()

    await controller.events.drain()
    log.info("loopsmith.stopped")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
