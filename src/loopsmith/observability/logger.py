"""
observability/logger.py — Loopsmith Structured Logger

structlog routed through stdlib logging:
  - the rotating file always receives JSON lines
  - stderr optionally receives either JSON or coloured dev output, so stdout
    stays free for the host's own rendering

Several sessions may run turns on one event loop, so per-turn fields
(session_id, iteration) live in structlog contextvars. Each asyncio task has
its own copy and concurrent turns never see each other's bindings.

Usage:
    from loopsmith.observability.logger import get_logger, setup_logging
    setup_logging(level="INFO", log_dir="./data/logs", console_output=False)
    log = get_logger(__name__)
    log.info("executor.tool_start", tool="list_files", iteration=2)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

LOG_FILE_NAME = "loopsmith.log"

# Client libraries that log every request at INFO.
_NOISY_LIBRARIES = ("httpx", "httpcore", "openai", "openai._base_client")


def _pre_chain() -> list[Any]:
    """Processors applied to structlog and foreign (stdlib) records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: Optional[bool] = None,
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure structlog and the root stdlib logger. Safe to call again;
    previous handlers are replaced.

    Args:
        level:          DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for the rotating ``loopsmith.log``.
        json_format:    Console renderer. None picks coloured output when
                        stderr is a TTY and JSON otherwise.
        console_output: Mirror log lines to stderr.
        max_bytes:      Rotation threshold of the log file.
        backup_count:   Rotated files kept.
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    file_handler = logging.handlers.RotatingFileHandler(
        directory / LOG_FILE_NAME,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    handlers: list[logging.Handler] = [file_handler]

    if console_output:
        pretty = sys.stderr.isatty() if json_format is None else not json_format
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(_formatter(
            structlog.dev.ConsoleRenderer(colors=True) if pretty
            else structlog.processors.JSONRenderer()
        ))
        handlers.append(console)

    for handler in handlers:
        handler.setLevel(numeric_level)
    logging.basicConfig(format="%(message)s", level=numeric_level, handlers=handlers, force=True)
    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=_pre_chain() + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "loopsmith", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Module logger, optionally with values bound for its whole lifetime:

        log = get_logger(__name__, component="executor")
        log.info("executor.tool_done", tool="list_files")
    """
    logger = structlog.get_logger(name)
    return logger.bind(**initial_values) if initial_values else logger


# ── Per-turn context ──────────────────────────────────────────────────────────


def bind_session(session_id: str, **extra: Any) -> None:
    """Attach session_id (and any extra fields) to every log line of this task."""
    structlog.contextvars.bind_contextvars(session_id=session_id, **extra)


def bind_iteration(iteration: int) -> None:
    structlog.contextvars.bind_contextvars(iteration=iteration)


def clear_session() -> None:
    structlog.contextvars.clear_contextvars()
