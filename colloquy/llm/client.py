"""Model client using httpx for OpenAI-compatible APIs (Chutes, OpenAI)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from colloquy.config.models import ChatConfig
from colloquy.context.message import Message, Usage
from colloquy.context.parts import Part
from colloquy.llm.adapter import parse_choice, to_wire

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """LLM API error."""

    def __init__(
        self,
        message: str,
        code: str = "unknown",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


@dataclass
class GenerationConfig:
    """Per-request settings assembled by the turn loop."""

    system_instruction: str = ""
    tools: List[Dict[str, Any]] = field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class ModelResponse:
    parts: List[Part]
    usage: Optional[Usage] = None
    model_id: Optional[str] = None


class ModelClient(Protocol):
    model: str
    api_key_suffix: str

    def send(self, messages: Sequence[Message], config: GenerationConfig) -> ModelResponse: ...


class LLMClient:
    """Blocking ``/chat/completions`` client."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str,
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
        max_tokens: int = 16384,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.model = model
        self.base_url = base_url
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key_suffix = api_key[-5:]
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout=timeout, connect=30.0),
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: ChatConfig) -> "LLMClient":
        return cls(
            model=config.model,
            base_url=config.get_base_url(),
            api_key=config.get_api_key(),
            timeout=config.timeout,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )

    def _build_tools(self, tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Build tools in OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("parameters", {"type": "object", "properties": {}}),
                },
            }
            for tool in tools
        ]

    def send(self, messages: Sequence[Message], config: GenerationConfig) -> ModelResponse:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": to_wire(messages, config.system_instruction),
            "max_tokens": config.max_tokens or self.max_tokens,
        }
        temperature = config.temperature if config.temperature is not None else self.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        if config.tools:
            payload["tools"] = self._build_tools(config.tools)
            payload["tool_choice"] = "auto"

        try:
            response = self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as e:
            raise LLMError(f"Request timed out: {e}", code="timeout") from e
        except httpx.ConnectError as e:
            raise LLMError(f"Connection error: {e}", code="connection_error") from e
        except httpx.HTTPError as e:
            raise LLMError(f"HTTP error: {e}", code="api_error") from e

        if response.status_code != 200:
            error_body = response.text
            try:
                error_msg = response.json().get("error", {}).get("message", error_body)
            except (json.JSONDecodeError, AttributeError):
                error_msg = error_body
            code = "rate_limit" if response.status_code == 429 else "api_error"
            if response.status_code >= 500:
                code = "server_error"
            raise LLMError(
                f"HTTP {response.status_code}: {error_msg}",
                code=code,
                status_code=response.status_code,
            )

        try:
            parts, usage, model_id = parse_choice(response.json())
        except (ValueError, AttributeError, TypeError) as e:
            raise LLMError(
                f"Invalid response body: {response.text[:200]}",
                code="invalid_response",
                status_code=response.status_code,
            ) from e
        logger.debug(f"Model returned {len(parts)} part(s), usage={usage}")
        return ModelResponse(parts=parts, usage=usage, model_id=model_id or self.model)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
