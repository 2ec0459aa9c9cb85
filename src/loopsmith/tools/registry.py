"""
tools/registry.py — Tool Registry

Maps tool names to their descriptors and handlers. There is no module-level
instance: a registry is built by the host and injected into the
PhaseController, so every session group and every test can use its own.

Usage:
    registry = ToolRegistry()

    @registry.register(
        name="list_files",
        description="List the entries of a directory",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    )
    async def list_files(path: str) -> list[str]:
        ...

    result = await registry.execute_tool("list_files", {"path": "."})

Handlers may be sync or async and may return anything: a ToolResult is
passed through, a ``{"success": ..., "data": ..., "error": ...}`` mapping is
unpacked, and any other value becomes ``data``. A handler that declares an
``exec_context`` keyword receives the ExecutionContext.
"""

from __future__ import annotations

import functools
import inspect
import json
from typing import Any, Callable, Optional

from loopsmith.exceptions import ToolNotFoundError, ToolRegistrationError
from loopsmith.observability.logger import get_logger
from loopsmith.tools.types import ExecutionContext, ToolDescriptor, ToolResult

log = get_logger(__name__)

_MAPPED_OUTPUT_CHARS = 200


class ToolRegistry:
    """
    Registry that maps tool names to their descriptors and handlers.

    Safe for concurrent reads and executions. Not designed for concurrent
    registration.
    """

    def __init__(self):
        self._descriptors: dict[str, ToolDescriptor] = {}
        self._handlers: dict[str, Callable] = {}
        self._wants_context: dict[str, bool] = {}

    # ── Registration ─────────────────────────────────────────────────────────

    def register(
        self,
        name: str,
        description: str,
        parameters: Optional[dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Callable:
        """Decorator to register a tool handler."""
        def decorator(fn: Callable) -> Callable:
            descriptor = ToolDescriptor(
                name=name,
                description=description,
                parameter_schema=parameters or {
                    "type": "object",
                    "properties": {},
                    "required": [],
                },
                timeout_seconds=timeout_seconds,
            )
            self.register_tool(descriptor, fn)

            @functools.wraps(fn)
            async def wrapper(*args, **kwargs):
                result = fn(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
                return result

            return wrapper

        return decorator

    def register_tool(self, descriptor: ToolDescriptor, handler: Callable) -> None:
        """Programmatic registration (alternative to the decorator)."""
        if not descriptor.name.strip():
            raise ToolRegistrationError("Tool name must not be empty")
        if descriptor.name in self._descriptors:
            raise ToolRegistrationError(f"Tool '{descriptor.name}' is already registered")
        if not callable(handler):
            raise ToolRegistrationError(f"Handler for '{descriptor.name}' is not callable")

        self._descriptors[descriptor.name] = descriptor
        self._handlers[descriptor.name] = handler
        self._wants_context[descriptor.name] = _accepts_exec_context(handler)
        log.debug("tool.registered", tool=descriptor.name,
                  timeout=descriptor.timeout_seconds)

    def unregister(self, name: str) -> None:
        self._descriptors.pop(name, None)
        self._handlers.pop(name, None)
        self._wants_context.pop(name, None)

    # ── Lookup ───────────────────────────────────────────────────────────────

    def get_tool(self, name: str) -> Optional[ToolDescriptor]:
        return self._descriptors.get(name)

    def get_all_tools(self) -> list[ToolDescriptor]:
        return list(self._descriptors.values())

    def list_names(self) -> list[str]:
        return list(self._descriptors.keys())

    def to_llm_schemas(self) -> list[dict[str, Any]]:
        return [d.to_llm_schema() for d in self._descriptors.values()]

    # ── Execution ────────────────────────────────────────────────────────────

    async def execute_tool(
        self,
        name: str,
        params: dict[str, Any],
        exec_context: Optional[ExecutionContext] = None,
    ) -> ToolResult:
        """
        Run a tool and normalise its return value.

        Raises ToolNotFoundError for unknown names. Exceptions raised by the
        handler propagate unchanged; the engine's ToolExecutor turns them
        into failed ToolResults.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise ToolNotFoundError(
                f"Tool '{name}' is not registered. "
                f"Available: {self.list_names()}"
            )

        kwargs = dict(params or {})
        if self._wants_context.get(name) and exec_context is not None:
            kwargs["exec_context"] = exec_context

        result = handler(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return normalise_result(result)

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, name: str) -> bool:
        return name in self._descriptors

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={self.list_names()}>"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _accepts_exec_context(handler: Callable) -> bool:
    try:
        sig = inspect.signature(handler)
    except (TypeError, ValueError):
        return False
    return "exec_context" in sig.parameters


def normalise_result(raw: Any) -> ToolResult:
    """Convert any native tool return shape into a ToolResult."""
    if isinstance(raw, ToolResult):
        if raw.mapped_output is None:
            raw = raw.model_copy(update={"mapped_output": map_output(raw)})
        return raw

    if isinstance(raw, dict) and isinstance(raw.get("success"), bool):
        if raw["success"]:
            data = raw.get("data")
            return ToolResult.ok(data, mapped_output=_summarise(data))
        return ToolResult.fail(str(raw.get("error") or "Tool reported failure"))

    return ToolResult.ok(raw, mapped_output=_summarise(raw))


def map_output(result: ToolResult) -> str:
    if not result.success:
        return f"Error: {result.error}"
    return _summarise(result.data)


def _summarise(data: Any) -> str:
    if data is None:
        return "(no output)"
    if isinstance(data, (list, tuple)):
        return f"{len(data)} item(s)"
    if isinstance(data, dict):
        text = json.dumps(data, default=str)
    else:
        text = str(data)
    if len(text) > _MAPPED_OUTPUT_CHARS:
        return text[:_MAPPED_OUTPUT_CHARS] + "…"
    return text
