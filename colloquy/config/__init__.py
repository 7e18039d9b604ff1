"""Configuration models and TOML loader."""

from colloquy.config.loader import find_config_file, load_config
from colloquy.config.models import (
    ChatConfig,
    ContextConfig,
    Provider,
    ProvidersConfig,
    RetryConfig,
    SessionConfig,
    ToolsConfig,
)

__all__ = [
    "ChatConfig",
    "ContextConfig",
    "Provider",
    "ProvidersConfig",
    "RetryConfig",
    "SessionConfig",
    "ToolsConfig",
    "find_config_file",
    "load_config",
]
