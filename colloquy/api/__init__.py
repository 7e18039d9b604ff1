"""API module - retry and backoff for model calls."""

from colloquy.api.retry import RetryHandler, RetryState

__all__ = ["RetryHandler", "RetryState"]
