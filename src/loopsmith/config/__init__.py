from loopsmith.config.settings import (
    ConfigError,
    DedupPolicy,
    EngineConfig,
    Settings,
    get_settings,
    load_settings,
)

__all__ = [
    "ConfigError",
    "DedupPolicy",
    "EngineConfig",
    "Settings",
    "get_settings",
    "load_settings",
]
