"""Configuration loader for colloquy."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from colloquy.config.models import ChatConfig

SECTIONS = ("retry", "context", "tools", "providers", "session", "paths")


def _set_dotted(target: dict[str, Any], key: str, value: Any) -> None:
    parts = key.split(".")
    current = target
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
) -> ChatConfig:
    """Load configuration with optional overrides.

    The TOML file holds model settings under ``[chat]`` and one table
    per sub-configuration (``[retry]``, ``[context]``, ...).  Override
    keys may be dotted, e.g. ``"retry.max_attempts"``.

    Args:
        config_path: Optional path to a TOML config file.
        overrides: Optional dictionary of configuration overrides.

    Returns:
        ChatConfig instance.
    """
    config_dict: dict[str, Any] = {}

    if config_path and config_path.exists():
        with open(config_path, "rb") as f:
            raw_config = tomllib.load(f)

        for key, value in raw_config.get("chat", {}).items():
            config_dict[key] = value

        for section in SECTIONS:
            if section in raw_config:
                config_dict[section] = dict(raw_config[section])

    for key, value in (overrides or {}).items():
        _set_dotted(config_dict, key, value)

    return ChatConfig(**config_dict)


def find_config_file() -> Optional[Path]:
    """Find the configuration file in standard locations.

    Searches in order:
    1. ./colloquy.toml
    2. ~/.config/colloquy/config.toml

    Returns:
        Path to the config file if found, None otherwise.
    """
    search_paths = [
        Path.cwd() / "colloquy.toml",
        Path.home() / ".config" / "colloquy" / "config.toml",
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None
