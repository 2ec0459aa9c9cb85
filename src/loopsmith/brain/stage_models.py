"""
brain/stage_models.py — LLM-backed Stage Models

Adapts a BaseLLMClient to the engine's StageModels contract: one async
callable per stage that renders the stage prompt, calls the model and
returns the raw text. Parsing, validation and correction retries stay in
the engine's StageRunner.

Usage:
    client = create_llm_client(settings)
    models = LLMStageModels.from_client(client, settings)
    controller = PhaseController(models, registry, settings.engine)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loopsmith.brain.llm_client import BaseLLMClient
from loopsmith.brain.prompts import correction_prompt, system_prompt, user_prompt
from loopsmith.brain.types import LLMConfig, Message
from loopsmith.engine.stages import Stage, StageModels, StagePrompt
from loopsmith.observability.logger import get_logger

if TYPE_CHECKING:
    from loopsmith.config.settings import Settings

log = get_logger(__name__)


class LLMStageModels:
    """Stateless; one instance serves every session."""

    def __init__(self, client: BaseLLMClient, config: LLMConfig):
        self._llm = client
        self._config = config
        # The answer is prose wrapped in JSON, so give it more room.
        self._response_config = config.model_copy(update={
            "temperature": min(config.temperature + 0.2, 1.0),
        })

    @classmethod
    def from_client(cls, client: BaseLLMClient, settings: "Settings") -> StageModels:
        config = LLMConfig(
            model=settings.llm.model,
            temperature=settings.llm.temperature,
            max_tokens=settings.llm.max_tokens,
            timeout_seconds=settings.engine.model_timeout_seconds,
            json_mode=True,
        )
        return cls(client, config).as_stage_models()

    def as_stage_models(self) -> StageModels:
        return StageModels(
            analysis=self.call,
            reasoning=self.call,
            action=self.call,
            response=self.call,
        )

    def build_messages(self, prompt: StagePrompt) -> list[Message]:
        messages = [
            Message.system(system_prompt(prompt.stage, prompt.variables)),
            Message.user(user_prompt(prompt.stage, prompt.variables)),
        ]
        correction = correction_prompt(prompt.correction)
        if correction:
            messages.append(Message.assistant(prompt.correction.previous_output))
            messages.append(Message.user(correction))
        return messages

    async def call(self, prompt: StagePrompt) -> str:
        config = self._response_config if prompt.stage is Stage.RESPONSE else self._config
        response = await self._llm.generate(messages=self.build_messages(prompt), config=config)
        log.debug(
            "stage_models.generated",
            stage=prompt.stage.value,
            correction=prompt.correction is not None,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return response.content or ""
