from pathlib import Path

import pytest
from pydantic import ValidationError

from colloquy.config.loader import find_config_file, load_config
from colloquy.config.models import ChatConfig, Provider


def test_defaults():
    config = ChatConfig()

    assert config.retry.max_attempts == 5
    assert config.context.turns_to_keep == 5
    assert config.context.token_threshold == 250_000
    assert config.tools.enabled is True
    assert config.provider == Provider.CHUTES
    assert config.working_directory == Path.cwd()


def test_load_toml_with_sections_and_overrides(tmp_path):
    config_file = tmp_path / "colloquy.toml"
    config_file.write_text(
        """
[chat]
model = "some/model"
provider = "openai"

[retry]
max_attempts = 2

[context]
turns_to_keep = 3

[providers]
disabled = ["environment"]
"""
    )

    config = load_config(config_file, {"context.token_threshold": 1000, "paths.cwd": str(tmp_path)})

    assert config.model == "some/model"
    assert config.provider == Provider.OPENAI
    assert config.retry.max_attempts == 2
    assert config.context.turns_to_keep == 3
    assert config.context.token_threshold == 1000
    assert config.providers.disabled == ["environment"]
    assert config.working_directory == tmp_path.resolve()
    assert config.session_directory == tmp_path.resolve() / ".colloquy" / "sessions"


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(tmp_path / "nope.toml")

    assert config.model == ChatConfig().model


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        ChatConfig(retry={"max_attempts": 0})


def test_find_config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    assert find_config_file() is None

    (tmp_path / "colloquy.toml").write_text("[chat]\n")
    assert find_config_file() == Path.cwd() / "colloquy.toml"


def test_api_key_lookup(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config = ChatConfig(provider=Provider.OPENAI)

    with pytest.raises(ValueError, match="OPENAI_API_KEY"):
        config.get_api_key()

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert config.get_api_key() == "sk-test"
    assert config.get_base_url() == "https://api.openai.com/v1"
    assert ChatConfig(base_url="http://localhost:8000/v1").get_base_url() == "http://localhost:8000/v1"
