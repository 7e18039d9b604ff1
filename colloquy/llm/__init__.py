"""LLM module using httpx for OpenAI-compatible APIs."""

from .client import GenerationConfig, LLMClient, LLMError, ModelClient, ModelResponse

__all__ = [
    "GenerationConfig",
    "LLMClient",
    "LLMError",
    "ModelClient",
    "ModelResponse",
]
