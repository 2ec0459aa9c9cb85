"""
brain — LLM clients and the LLM-backed stage models.
"""

from loopsmith.brain.llm_client import BaseLLMClient, ResilientLLMClient, call_with_retry, create_llm_client
from loopsmith.brain.stage_models import LLMStageModels
from loopsmith.brain.types import LLMConfig, LLMResponse, Message, Provider, Role, TokenUsage

__all__ = [
    "BaseLLMClient",
    "LLMConfig",
    "LLMResponse",
    "LLMStageModels",
    "Message",
    "Provider",
    "ResilientLLMClient",
    "Role",
    "TokenUsage",
    "call_with_retry",
    "create_llm_client",
]
