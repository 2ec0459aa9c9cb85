"""
config/settings.py — Loopsmith Runtime Settings

Merges config.yaml (defaults/structure) with .env / environment (secrets and
overrides). Every field is validated and typed by pydantic.

  - EngineConfig is the only section the turn engine consumes; it is passed
    to PhaseController at construction, never read from a global inside the
    engine.
  - validate_all() performs cross-field validation and raises ConfigError
    with a human-readable message listing every problem found.
  - load_settings() respects LOOPSMITH_CONFIG as a fallback when no explicit
    config_path argument is given.
"""

from __future__ import annotations

import os
import threading as _threading
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_KNOWN_PROVIDERS = {"openai", "ollama"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class DedupPolicy(str, Enum):
    """What happens when the same (tool, params) is requested twice in a turn."""
    BLOCK = "block"                 # every repeat is skipped, even after failure
    RETRY_FAILED = "retry_failed"   # a failed first attempt may run once more


class EngineConfig(BaseModel):
    max_iterations: int = 10
    model_timeout_seconds: float = 30.0
    tool_timeout_seconds: float = 15.0
    max_correction_attempts: int = 1
    max_consecutive_errors: int = 3
    dedup_policy: DedupPolicy = DedupPolicy.BLOCK
    history_window: int = 8

    @field_validator("max_iterations")
    @classmethod
    def _positive_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("engine.max_iterations must be >= 1")
        return v

    @field_validator("model_timeout_seconds", "tool_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("engine timeouts must be > 0 seconds")
        return v

    @field_validator("max_correction_attempts")
    @classmethod
    def _non_negative_corrections(cls, v: int) -> int:
        if v < 0:
            raise ValueError("engine.max_correction_attempts must be >= 0")
        return v

    @field_validator("max_consecutive_errors", "history_window")
    @classmethod
    def _positive_counts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("engine.max_consecutive_errors and engine.history_window must be >= 1")
        return v


class LLMRetryConfig(BaseModel):
    """Exponential backoff config for transient LLM errors."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0


class LLMConfig(BaseModel):
    provider: str = "ollama"
    model: str = "llama3.1"
    base_url: Optional[str] = None
    temperature: float = 0.2
    max_tokens: int = 2048
    retry: LLMRetryConfig = Field(default_factory=LLMRetryConfig)
    fallback_providers: list[str] = Field(default_factory=list)

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        if v not in _KNOWN_PROVIDERS:
            raise ValueError(
                f"llm.provider '{v}' is not supported. "
                f"Supported: {sorted(_KNOWN_PROVIDERS)}"
            )
        return v

    @field_validator("fallback_providers")
    @classmethod
    def _known_fallbacks(cls, v: list[str]) -> list[str]:
        unknown = [p for p in v if p not in _KNOWN_PROVIDERS]
        if unknown:
            raise ValueError(
                f"llm.fallback_providers contains unsupported provider(s) {unknown}. "
                f"Supported: {sorted(_KNOWN_PROVIDERS)}"
            )
        return v

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("llm.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("llm.max_tokens must be >= 1")
        return v


class MemoryConfig(BaseModel):
    max_entries: int = 100
    relevance_threshold: float = 0.3
    summary_items: int = 5

    @field_validator("relevance_threshold")
    @classmethod
    def _valid_threshold(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("memory.relevance_threshold must be between 0.0 and 1.0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Loopsmith runtime settings.

    Priority (highest to lowest):
      1. config.yaml sections (passed as init kwargs)
      2. Environment variables
      3. .env file
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")

    # -- Structured config (from config.yaml) --------------------------------
    engine: EngineConfig = Field(default_factory=EngineConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("engine", mode="before")
    @classmethod
    def _coerce_engine(cls, v: Any) -> Any:
        return EngineConfig(**v) if isinstance(v, dict) else v

    @field_validator("llm", mode="before")
    @classmethod
    def _coerce_llm(cls, v: Any) -> Any:
        return LLMConfig(**v) if isinstance(v, dict) else v

    @field_validator("memory", mode="before")
    @classmethod
    def _coerce_memory(cls, v: Any) -> Any:
        return MemoryConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems Pydantic can't see.
        """
        errors: list[str] = []

        if self.llm.provider == "openai" and not self.openai_api_key and not self.llm.base_url:
            errors.append(
                "LLM provider 'openai' requires OPENAI_API_KEY to be set "
                "(or llm.base_url pointing at a compatible endpoint)."
            )

        if (self.llm.provider != "openai" and "openai" in self.llm.fallback_providers
                and not self.openai_api_key):
            errors.append(
                "Fallback provider 'openai' requires OPENAI_API_KEY but it is not set. "
                "Remove 'openai' from llm.fallback_providers or add the key to .env."
            )

        if not self.llm.model.strip():
            errors.append("llm.model must not be empty.")

        if self.engine.tool_timeout_seconds > self.engine.model_timeout_seconds * 20:
            errors.append(
                "engine.tool_timeout_seconds is more than 20x the model timeout; "
                "a stuck tool would hold the session far longer than any model call."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nLoopsmith startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"engine", "llm", "memory", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. LOOPSMITH_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("LOOPSMITH_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the process-wide Settings instance, loading the default config
    path on first use.
    """
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is not None:
            return _singleton
    return load_settings()
