"""
brain/ollama_client.py — Ollama Local LLM Client

Supports any model running in Ollama (llama3, mistral, qwen, etc.).
Generation goes through the OpenAI-compatible endpoint Ollama exposes at
/v1/, so the OpenAI SDK is reused. The health check and model listing hit
Ollama's native /api/tags with httpx.
"""

from __future__ import annotations

import httpx

from loopsmith.brain.llm_client import BaseLLMClient, LLMConnectionError
from loopsmith.brain.openai_client import OpenAIClient
from loopsmith.brain.types import LLMConfig, LLMResponse, Message, Provider
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)

_DEFAULT_BASE_URL = "http://localhost:11434/v1"


class _OllamaCompat(OpenAIClient):
    provider = Provider.OLLAMA


class OllamaClient(BaseLLMClient):
    """
    Ollama client — runs local models via Ollama's OpenAI-compatible API.

    No API key required. Requires Ollama to be running.
    Set base_url if Ollama is on a non-standard host/port.
    """

    def __init__(self, base_url: str = _DEFAULT_BASE_URL, health_timeout: float = 5.0):
        super().__init__(api_key="ollama", base_url=base_url)
        self._inner = _OllamaCompat(api_key="ollama", base_url=base_url)
        self._native_url = base_url.rstrip("/").removesuffix("/v1")
        self._health_timeout = health_timeout

    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        log.debug("ollama.generate.start", model=config.model)
        try:
            return await self._inner.generate(messages, config)
        except LLMConnectionError as e:
            raise LLMConnectionError(
                f"Cannot reach Ollama at {self.base_url}. Is `ollama serve` running?",
                provider="ollama",
            ) from e

    async def list_models(self) -> list[str]:
        """Return names of all models pulled into Ollama."""
        async with httpx.AsyncClient(timeout=self._health_timeout) as client:
            resp = await client.get(f"{self._native_url}/api/tags")
            resp.raise_for_status()
            return [m.get("name", "") for m in resp.json().get("models", [])]

    async def health_check(self) -> bool:
        """Check if Ollama is running and reachable."""
        try:
            models = await self.list_models()
            log.debug("ollama.health_check.ok", available_models=models)
            return True
        except (httpx.HTTPError, ValueError) as e:
            log.warning("ollama.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False
