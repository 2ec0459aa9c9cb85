"""
brain/openai_client.py — OpenAI LLM Client

Talks to the OpenAI API or any OpenAI-compatible endpoint (LiteLLM proxy,
vLLM, Ollama's /v1). Stage prompts are plain chat messages; JSON mode is
requested through ``response_format`` when the caller asks for it.
"""

from __future__ import annotations

from typing import Any, Optional

import openai
from openai import AsyncOpenAI

from loopsmith.brain.llm_client import (
    BaseLLMClient,
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)
from loopsmith.brain.types import (
    FinishReason,
    LLMConfig,
    LLMResponse,
    Message,
    Provider,
    TokenUsage,
)
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)

_CONTEXT_HINTS = ("context", "too long", "maximum length")


def translate_error(e: openai.APIError, provider: str) -> LLMError:
    """Map an SDK exception onto the loopsmith LLMError hierarchy."""
    text = str(e)
    if isinstance(e, openai.AuthenticationError):
        return LLMConnectionError(text, provider=provider, status_code=401)
    if isinstance(e, openai.RateLimitError):
        return LLMRateLimitError(text, provider=provider)
    if isinstance(e, openai.BadRequestError):
        if any(hint in text.lower() for hint in _CONTEXT_HINTS):
            return LLMContextError(text, provider=provider)
        return LLMInvalidRequestError(text, provider=provider)
    if isinstance(e, openai.APIConnectionError):
        return LLMConnectionError(text, provider=provider)
    return LLMError(text, provider=provider, status_code=getattr(e, "status_code", None))


class OpenAIClient(BaseLLMClient):

    provider = Provider.OPENAI

    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
    ):
        super().__init__(api_key=api_key, base_url=base_url)
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, organization=organization)

    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        request: dict[str, Any] = {
            "model": config.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in messages],
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "top_p": config.top_p,
            "timeout": config.timeout_seconds,
        }
        if config.json_mode:
            request["response_format"] = {"type": "json_object"}

        log.debug("openai.generate.start", model=config.model,
                  message_count=len(messages), json_mode=config.json_mode)
        try:
            completion = await self._client.chat.completions.create(**request)
        except openai.APIError as e:
            raise translate_error(e, self.provider.value) from e

        result = self._to_response(completion)
        log.debug(
            "openai.generate.complete",
            model=result.model,
            total_tokens=result.usage.total_tokens,
            finish_reason=result.finish_reason.value,
        )
        return result

    async def health_check(self) -> bool:
        try:
            await self._client.models.list()
        except (openai.APIError, OSError) as e:
            log.warning("openai.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False
        return True

    def _to_response(self, completion: Any) -> LLMResponse:
        choice = completion.choices[0]
        usage = completion.usage
        return LLMResponse(
            content=choice.message.content,
            finish_reason=FinishReason.LENGTH if choice.finish_reason == "length" else FinishReason.STOP,
            usage=TokenUsage(
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
            ),
            model=completion.model,
            provider=self.provider,
        )
