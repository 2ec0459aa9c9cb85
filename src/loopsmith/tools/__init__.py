from loopsmith.tools.registry import ToolRegistry, normalise_result
from loopsmith.tools.types import ExecutionContext, ToolDescriptor, ToolResult

__all__ = ["ExecutionContext", "ToolDescriptor", "ToolRegistry", "ToolResult", "normalise_result"]
