"""Pydantic models for colloquy configuration."""

from __future__ import annotations

import os
import uuid
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class Provider(str, Enum):
    """LLM provider (all OpenAI-compatible)."""

    CHUTES = "chutes"
    OPENAI = "openai"


class RetryConfig(BaseModel):
    """Configuration for model-call retries."""

    max_attempts: int = Field(default=5, ge=1, description="Total attempts per model call")
    base_delay: float = Field(default=1.0, description="Base delay in seconds")
    max_delay: float = Field(default=30.0, description="Maximum delay in seconds")
    retry_on_status: list[int] = Field(
        default=[429, 500, 502, 503, 504], description="HTTP status codes to retry on"
    )


class ContextConfig(BaseModel):
    """Configuration for context size management."""

    turns_to_keep: int = Field(
        default=5, ge=0, description="User turns after which ephemeral tool output ages out"
    )
    token_threshold: int = Field(default=250_000, description="Token budget of the context")


class ToolsConfig(BaseModel):
    """Configuration for tool execution."""

    enabled: bool = Field(default=True, description="Execute tool calls proposed by the model")
    max_failures: int = Field(default=3, description="Failures before a call is blocked")
    failure_window_seconds: float = Field(default=300.0, description="Failure counting window")
    shell_timeout: int = Field(default=60, description="Shell timeout in seconds")
    max_file_size: int = Field(default=1048576, description="Maximum file size to read")
    preferences_file: Optional[str] = Field(
        default=None, description="JSON file remembering ALWAYS/NEVER approvals"
    )


class ProvidersConfig(BaseModel):
    """Configuration for just-in-time context providers."""

    parallel: bool = Field(default=True, description="Run providers concurrently")
    timeout: float = Field(default=10.0, description="Seconds to wait for all providers")
    disabled: list[str] = Field(default=[], description="Provider ids to disable")


class SessionConfig(BaseModel):
    """Configuration for session persistence."""

    directory: str = Field(default=".colloquy/sessions", description="Session directory")
    autobackup: bool = Field(default=True, description="Back up the context after each change")


class PathsConfig(BaseModel):
    """Configuration for file paths."""

    cwd: str = Field(default="", description="Working directory")

    @field_validator("cwd", mode="before")
    @classmethod
    def resolve_cwd(cls, v: str) -> str:
        """Resolve empty cwd to current directory."""
        if not v:
            return os.getcwd()
        return str(Path(v).resolve())


class ChatConfig(BaseModel):
    """Main configuration for a chat session."""

    # Model settings
    model: str = Field(default="zai-org/GLM-4.7-TEE", description="Model to use")
    provider: Provider = Field(default=Provider.CHUTES, description="LLM provider")
    base_url: Optional[str] = Field(default=None, description="Override the provider URL")
    timeout: int = Field(default=120, description="Timeout per LLM call in seconds")
    temperature: float = Field(default=0.7, description="Generation temperature")
    max_tokens: int = Field(default=16384, description="Maximum tokens for response")
    system_instructions_file: Optional[str] = Field(
        default=None, description="Markdown file appended to the system instruction"
    )
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])

    # Sub-configurations
    retry: RetryConfig = Field(default_factory=RetryConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @property
    def working_directory(self) -> Path:
        """Get the working directory as a Path object."""
        return Path(self.paths.cwd or os.getcwd())

    @property
    def session_directory(self) -> Path:
        path = Path(self.session.directory).expanduser()
        if path.is_absolute():
            return path
        return self.working_directory / path

    def get_api_key(self) -> str:
        """Get the API key for the configured provider."""
        env_vars = {
            Provider.CHUTES: ["CHUTES_API_TOKEN", "CHUTES_API_KEY"],
            Provider.OPENAI: ["OPENAI_API_KEY"],
        }

        for var in env_vars.get(self.provider, []):
            key = os.environ.get(var)
            if key:
                return key

        raise ValueError(
            f"No API key found for provider {self.provider}. "
            f"Set one of: {env_vars.get(self.provider, [])}"
        )

    def get_base_url(self) -> str:
        """Get the base URL for the configured provider."""
        if self.base_url:
            return self.base_url
        urls = {
            Provider.CHUTES: "https://llm.chutes.ai/v1",
            Provider.OPENAI: "https://api.openai.com/v1",
        }
        return urls[self.provider]
