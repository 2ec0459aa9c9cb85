"""
brain/llm_client.py — LLM Client Base, Backoff and Failover

The engine never talks to a provider SDK directly. Stage models (see
brain/stage_models.py) hold a BaseLLMClient, which in production is a
ResilientLLMClient around the configured provider:

    create_llm_client(settings)
      └── ResilientLLMClient
            ├── primary   OpenAIClient | OllamaClient
            └── fallbacks (optional, tried in order)

Transient failures (connection, rate limit) are retried with jittered
exponential backoff; permanent ones (context overflow, invalid request)
propagate at once.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

from loopsmith.brain.types import LLMConfig, LLMResponse, Message, Provider
from loopsmith.exceptions import (
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)
from loopsmith.observability.logger import get_logger

if TYPE_CHECKING:
    from loopsmith.config.settings import Settings

log = get_logger(__name__)

__all__ = [
    "BaseLLMClient",
    "LLMConnectionError",
    "LLMContextError",
    "LLMError",
    "LLMInvalidRequestError",
    "LLMRateLimitError",
    "ResilientLLMClient",
    "call_with_retry",
    "create_llm_client",
]

_TRANSIENT = (LLMConnectionError, LLMRateLimitError)
_PERMANENT = (LLMContextError, LLMInvalidRequestError)


class BaseLLMClient(ABC):
    """
    One provider connection. A single instance serves every session, so
    generate() must tolerate concurrent calls.
    """

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url

    @abstractmethod
    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


# ─────────────────────────────────────────────────────────────────────────────
# Backoff
# ─────────────────────────────────────────────────────────────────────────────


def _backoff(attempt: int, error: Exception, base_delay: float, max_delay: float) -> float:
    """Seconds to wait before attempt ``attempt + 1``. A server-sent Retry-After wins."""
    retry_after = getattr(error, "retry_after", None)
    if retry_after:
        return min(retry_after, max_delay)
    return min(base_delay * 2 ** attempt + random.uniform(0, 0.5), max_delay)


async def call_with_retry(
    client: BaseLLMClient,
    messages: list[Message],
    config: LLMConfig,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> LLMResponse:
    """
    client.generate() with up to ``max_attempts`` tries. Only
    LLMConnectionError and LLMRateLimitError are retried; the last one is
    re-raised when every attempt fails.
    """
    attempt = 0
    while True:
        try:
            return await client.generate(messages=messages, config=config)
        except _TRANSIENT as e:
            attempt += 1
            if attempt >= max_attempts:
                raise
            delay = _backoff(attempt - 1, e, base_delay, max_delay)
            log.warning(
                "llm.retrying",
                client=repr(client),
                attempt=attempt,
                max_attempts=max_attempts,
                delay_s=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)


# ─────────────────────────────────────────────────────────────────────────────
# ResilientLLMClient
# ─────────────────────────────────────────────────────────────────────────────


class ResilientLLMClient(BaseLLMClient):
    """
    Retry on the primary, then on each fallback in turn. A permanent error
    from any client ends the call immediately since another provider would
    reject the same request.
    """

    def __init__(
        self,
        primary: BaseLLMClient,
        fallbacks: Optional[list[BaseLLMClient]] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        super().__init__()
        self._chain: list[BaseLLMClient] = [primary, *(fallbacks or [])]
        self._retry = {"max_attempts": max_attempts, "base_delay": base_delay,
                       "max_delay": max_delay}
        self._active: BaseLLMClient = primary

    @property
    def primary(self) -> BaseLLMClient:
        return self._chain[0]

    @property
    def active(self) -> BaseLLMClient:
        """The client that produced the most recent successful response."""
        return self._active

    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        failures: list[str] = []
        for position, client in enumerate(self._chain):
            if failures:
                log.warning("llm.failing_over", to_client=repr(client), reason=failures[-1])
            try:
                response = await call_with_retry(client, messages, config, **self._retry)
            except _PERMANENT:
                raise
            except LLMError as e:
                failures.append(f"{client!r}: {e}")
                log.error(
                    "llm.client_exhausted",
                    client=repr(client),
                    error=str(e),
                    will_try_fallback=position + 1 < len(self._chain),
                )
                continue
            self._active = client
            return response

        raise LLMError(f"All LLM clients failed. Last error: {failures[-1]}", provider="all")

    async def health_check(self) -> bool:
        return await self._active.health_check()

    def __repr__(self) -> str:
        extra = len(self._chain) - 1
        return f"<ResilientLLMClient primary={self.primary!r}" + (
            f" + {extra} fallback(s)>" if extra else ">"
        )


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────


def _provider_client(
    settings: "Settings", name: str, base_url: Optional[str] = None
) -> BaseLLMClient:
    provider = Provider(name)
    if provider is Provider.OPENAI:
        from loopsmith.brain.openai_client import OpenAIClient
        return OpenAIClient(api_key=settings.openai_api_key, base_url=base_url)
    if provider is Provider.OLLAMA:
        from loopsmith.brain.ollama_client import OllamaClient
        return OllamaClient(base_url=base_url) if base_url else OllamaClient()
    raise ValueError(f"Unsupported LLM provider: {provider}")


def create_llm_client(settings: "Settings") -> ResilientLLMClient:
    """
    The configured provider wrapped with the configured retry policy.
    ``llm.base_url`` applies to the primary only; each entry of
    ``llm.fallback_providers`` uses its provider's default endpoint.
    """
    llm = settings.llm
    fallbacks = [
        _provider_client(settings, name)
        for name in dict.fromkeys(llm.fallback_providers)
        if name != llm.provider
    ]
    client = ResilientLLMClient(
        _provider_client(settings, llm.provider, llm.base_url),
        fallbacks=fallbacks,
        max_attempts=llm.retry.max_attempts,
        base_delay=llm.retry.base_delay,
        max_delay=llm.retry.max_delay,
    )
    log.info("llm.client_created", provider=llm.provider, model=llm.model,
             fallbacks=[repr(c) for c in fallbacks])
    return client
