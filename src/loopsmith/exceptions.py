"""
exceptions.py — Loopsmith Unified Error Hierarchy

All Loopsmith-specific exceptions live here. Every layer of the stack
raises typed subclasses of LoopsmithError.

Import from here, not from individual modules:
    from loopsmith.exceptions import ToolTimeoutError, ValidationError

Hierarchy:
    LoopsmithError
    ├── EngineError
    │   ├── AnalysisError
    │   ├── ReasoningError
    │   ├── ToolExecutionError
    │   │   └── ToolTimeoutError
    │   ├── ResponseSynthesisError
    │   ├── ValidationError
    │   ├── InternalInvariantError
    │   └── TurnCancelledError
    ├── ToolError
    │   ├── ToolNotFoundError
    │   └── ToolRegistrationError
    ├── SessionError
    │   ├── SessionNotFoundError
    │   └── SessionBusyError
    └── LLMError
        ├── LLMConnectionError
        ├── LLMRateLimitError
        ├── LLMContextError
        └── LLMInvalidRequestError

Note: ValidationError here means "the model returned structured output that
does not match the stage schema". Modules that also need pydantic's class
import it as PydanticValidationError.
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class LoopsmithError(Exception):
    """Base class for all Loopsmith exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Engine layer
# ─────────────────────────────────────────────────────────────────────────────

class EngineError(LoopsmithError):
    """Base for turn-execution errors raised inside the engine."""


class AnalysisError(EngineError):
    """The initial analysis stage failed; the turn cannot proceed."""


class ReasoningError(EngineError):
    """A reasoning model call failed or timed out (recoverable)."""


class ToolExecutionError(EngineError):
    """A tool raised or reported failure while executing."""

    def __init__(self, message: str, tool_name: str = ""):
        super().__init__(message)
        self.tool_name = tool_name


class ToolTimeoutError(ToolExecutionError):
    """A tool invocation exceeded its timeout."""


class ResponseSynthesisError(EngineError):
    """The response stage could not produce a final answer."""


class ValidationError(EngineError):
    """Structured model output failed to parse or validate against its schema."""

    def __init__(self, message: str, stage: str = "", raw_output: str = ""):
        super().__init__(message)
        self.stage = stage
        self.raw_output = raw_output


class InternalInvariantError(EngineError):
    """An engine invariant was violated (e.g. use_tool without a tool name)."""


class TurnCancelledError(EngineError):
    """The session's cancellation signal was observed mid-turn."""


# ─────────────────────────────────────────────────────────────────────────────
# Tool layer
# ─────────────────────────────────────────────────────────────────────────────

class ToolError(LoopsmithError):
    """Base for tool registry errors."""


class ToolNotFoundError(ToolError):
    """Requested tool is not registered in the ToolRegistry."""


class ToolRegistrationError(ToolError):
    """A tool could not be registered (duplicate name, bad descriptor)."""


# ─────────────────────────────────────────────────────────────────────────────
# Session layer
# ─────────────────────────────────────────────────────────────────────────────

class SessionError(LoopsmithError):
    """Base for session bookkeeping errors."""


class SessionNotFoundError(SessionError):
    """No session with the given id is known to the controller."""


class SessionBusyError(SessionError):
    """A turn is already running for this session."""


# ─────────────────────────────────────────────────────────────────────────────
# LLM layer
# ─────────────────────────────────────────────────────────────────────────────

class LLMError(LoopsmithError):
    """Base exception for all LLM client errors."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class LLMConnectionError(LLMError):
    """Provider unreachable or authentication failed."""


class LLMRateLimitError(LLMError):
    """Rate limit hit — retry with exponential backoff."""

    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class LLMContextError(LLMError):
    """Input exceeds model context window."""


class LLMInvalidRequestError(LLMError):
    """Bad request parameters or an unsupported feature for this provider."""
