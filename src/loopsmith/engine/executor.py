"""
engine/executor.py — Tool Executor

Runs one named tool through the injected ToolProvider and always hands back
a ToolResult. A tool that raises, reports failure, is unknown or runs past
its timeout becomes ``ToolResult(success=False)``; a tool failure is a
recoverable turn event, never an engine error.

The only exception that escapes is TurnCancelledError: the call races the
session's cancel event, and when the event wins the in-flight task is
cancelled and the controller is told to stop.

Usage:
    executor = ToolExecutor(registry, default_timeout=15.0)
    result = await executor.execute("list_files", {"path": "."}, exec_context)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from loopsmith.engine.interfaces import ToolProvider
from loopsmith.engine.utils import elapsed_ms
from loopsmith.exceptions import LoopsmithError, ToolTimeoutError, TurnCancelledError
from loopsmith.observability.logger import get_logger
from loopsmith.tools.registry import normalise_result
from loopsmith.tools.types import ExecutionContext, ToolResult

log = get_logger(__name__)


class ToolExecutor:
    """
    Stateless between calls, so one instance is shared by every session.
    """

    def __init__(self, tools: ToolProvider, default_timeout: float = 15.0) -> None:
        self._tools = tools
        self._default_timeout = default_timeout

    def timeout_for(self, tool: str) -> float:
        descriptor = self._tools.get_tool(tool)
        if descriptor is not None and descriptor.timeout_seconds:
            return descriptor.timeout_seconds
        return self._default_timeout

    async def execute(
        self,
        tool: str,
        parameters: dict[str, Any],
        exec_context: ExecutionContext,
    ) -> ToolResult:
        """
        Returns:
            ToolResult with ``duration_ms`` filled in. Never raises except
            TurnCancelledError.
        """
        if exec_context.cancelled:
            raise TurnCancelledError(f"Cancelled before running '{tool}'")

        start = time.monotonic()
        timeout = self.timeout_for(tool)
        log.info("executor.tool_start", tool=tool, timeout=timeout,
                 operation_id=exec_context.operation_id)

        call = asyncio.ensure_future(self._tools.execute_tool(tool, parameters, exec_context))
        cancel_wait = asyncio.ensure_future(exec_context.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if call not in done:
            call.cancel()
            duration = elapsed_ms(start)
            if exec_context.cancelled:
                log.info("executor.tool_cancelled", tool=tool, duration_ms=duration)
                raise TurnCancelledError(f"Cancelled while running '{tool}'")
            err = ToolTimeoutError(f"Tool '{tool}' timed out after {timeout}s", tool_name=tool)
            log.warning("executor.tool_timeout", tool=tool, timeout=timeout, duration_ms=duration)
            return ToolResult.fail(str(err), duration_ms=duration, error_type=type(err).__name__)

        duration = elapsed_ms(start)
        try:
            result = normalise_result(call.result())
        except asyncio.CancelledError:
            # The tool cancelled itself; our own task is still running.
            log.warning("executor.tool_self_cancelled", tool=tool, duration_ms=duration)
            return ToolResult.fail(f"Tool '{tool}' was cancelled", duration_ms=duration,
                                   error_type="CancelledError")
        except LoopsmithError as e:
            log.warning("executor.tool_failed", tool=tool, error=str(e),
                        error_type=type(e).__name__, duration_ms=duration)
            return ToolResult.fail(str(e), duration_ms=duration, error_type=type(e).__name__)
        except Exception as e:
            log.error("executor.tool_unexpected_error", tool=tool, error=str(e),
                      error_type=type(e).__name__, duration_ms=duration, exc_info=True)
            return ToolResult.fail(f"{type(e).__name__}: {e}", duration_ms=duration,
                                   error_type=type(e).__name__)

        if not result.success:
            log.warning("executor.tool_reported_failure", tool=tool, error=result.error,
                        duration_ms=duration)
            return result.model_copy(update={
                "duration_ms": duration,
                "error_type": result.error_type or "ToolExecutionError",
            })

        log.info("executor.tool_done", tool=tool, duration_ms=duration)
        return result.model_copy(update={"duration_ms": duration})
