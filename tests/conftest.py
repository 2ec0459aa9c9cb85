"""
tests/conftest.py — shared fixtures

Isolates secrets and .env loading for every test, and provides a fresh
ToolRegistry of fake coding tools plus a PhaseController factory wired to
scripted stage models (see tests/helpers.py).
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from helpers import RecordingSink, ScriptedModels, ToolCalls
from loopsmith.config.settings import EngineConfig
from loopsmith.engine import InMemoryCheckpointStore, PhaseController
from loopsmith.tools import ToolRegistry

_SECRET_ENV_VARS = [
    "OPENAI_API_KEY",
    "LOOPSMITH_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_secrets_from_env(monkeypatch):
    """Remove secret env vars and disable .env loading so a developer's
    local .env never leaks real credentials into tests."""
    for var in _SECRET_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import loopsmith.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)


@pytest.fixture
def tool_calls() -> ToolCalls:
    return ToolCalls()


@pytest.fixture
def registry(tool_calls: ToolCalls) -> ToolRegistry:
    reg = ToolRegistry()

    @reg.register(
        name="list_files",
        description="List the entries of a directory",
        parameters={"type": "object", "properties": {"path": {"type": "string"}},
                    "required": ["path"]},
    )
    async def list_files(path: str) -> list[str]:
        tool_calls.record("list_files", path=path)
        return [f"file_{i}.py" for i in range(10)]

    @reg.register(name="search", description="Search the code base")
    def search(query: str) -> dict[str, Any]:
        tool_calls.record("search", query=query)
        return {"success": True, "data": {"matches": [f"{query} in main.py"]}}

    @reg.register(name="read_file", description="Read a file")
    async def read_file(path: str) -> str:
        tool_calls.record("read_file", path=path)
        return f"contents of {path}"

    @reg.register(name="explode", description="Always raises")
    async def explode(**kwargs: Any) -> None:
        tool_calls.record("explode", **kwargs)
        raise RuntimeError("disk on fire")

    @reg.register(name="slow", description="Sleeps past its timeout", timeout_seconds=0.05)
    async def slow(**kwargs: Any) -> str:
        tool_calls.record("slow", **kwargs)
        await asyncio.sleep(5)
        return "too late"

    @reg.register(name="hang", description="Runs until cancelled")
    async def hang(exec_context=None, **kwargs: Any) -> str:
        tool_calls.record("hang", **kwargs)
        await asyncio.sleep(30)
        return "never"

    return reg


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_controller(registry: ToolRegistry, sink: RecordingSink):
    """make_controller(models, max_iterations=3, memory=..., ...)"""
    def _make(models: ScriptedModels, **kwargs: Any) -> PhaseController:
        overrides = {k: kwargs.pop(k) for k in list(kwargs) if k in EngineConfig.model_fields}
        kwargs.setdefault("sinks", [sink])
        kwargs.setdefault("checkpoints", InMemoryCheckpointStore())
        tools = kwargs.pop("tools", registry)
        return PhaseController(models.as_stage_models(), tools, EngineConfig(**overrides), **kwargs)
    return _make
