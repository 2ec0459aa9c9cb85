"""
brain/types.py — Loopsmith Brain Data Models

Shared types used by the LLM clients and the LLM-backed stage models.
Providers map their native response shapes into these types.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Provider(str, Enum):
    OPENAI = "openai"
    OLLAMA = "ollama"


class FinishReason(str, Enum):
    STOP = "stop"               # normal completion
    LENGTH = "length"           # hit max_tokens
    ERROR = "error"             # something went wrong


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """A single chat message."""
    role: Role
    content: str = ""

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)


# ─────────────────────────────────────────────────────────────────────────────
# LLM config
# ─────────────────────────────────────────────────────────────────────────────


class LLMConfig(BaseModel):
    """
    Per-request LLM configuration.
    Overrides the provider defaults for a single generate() call.
    """
    model: str
    temperature: float = 0.2
    max_tokens: int = 2048
    top_p: float = 1.0
    timeout_seconds: float = 60.0
    json_mode: bool = False             # ask the provider for a JSON object


# ─────────────────────────────────────────────────────────────────────────────
# LLM response
# ─────────────────────────────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMResponse(BaseModel):
    """
    Normalised response from any LLM provider.
    Clients translate provider-specific responses into this shape.
    """
    content: Optional[str] = None
    finish_reason: FinishReason = FinishReason.STOP
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""                             # actual model used (may differ from requested)
    provider: Provider = Provider.OPENAI

    @property
    def is_complete(self) -> bool:
        return self.finish_reason == FinishReason.STOP
