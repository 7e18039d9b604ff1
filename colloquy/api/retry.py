"""Retry logic with exponential backoff for model calls."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

import httpx

from colloquy.config.models import RetryConfig
from colloquy.llm.client import LLMError

T = TypeVar("T")

TRANSIENT_CODES = frozenset({"timeout", "connection_error"})


@dataclass
class RetryState:
    """State of a retry operation."""

    attempt: int
    last_error: Optional[Exception]
    last_status_code: Optional[int]
    total_delay: float
    next_delay: float = 0.0


class RetryHandler:
    """Handles retry logic with exponential backoff.

    ``max_attempts`` bounds the total number of calls, so a handler with
    ``max_attempts=3`` never makes a fourth attempt.
    """

    def __init__(self, config: RetryConfig, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self._sleep = sleep

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number (1-indexed)

        Returns:
            Delay in seconds with jitter
        """
        exp_delay = self.config.base_delay * (2 ** (attempt - 1))
        delay = min(exp_delay, self.config.max_delay)
        jitter = random.uniform(0.9, 1.1)
        return delay * jitter

    @staticmethod
    def status_code_of(error: Exception) -> Optional[int]:
        if isinstance(error, LLMError):
            return error.status_code
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code
        return None

    def is_retryable(self, error: Exception) -> bool:
        """Whether ``error`` is transient, ignoring the attempt budget."""
        status = self.status_code_of(error)
        if status is not None:
            return status in self.config.retry_on_status

        if isinstance(error, LLMError):
            return error.code in TRANSIENT_CODES

        if isinstance(error, (httpx.ConnectError, httpx.TimeoutException)):
            return True

        if isinstance(error, (ConnectionError, TimeoutError)):
            return True

        return False

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if we should retry based on the error.

        Args:
            error: The exception that occurred
            attempt: Current attempt number

        Returns:
            True if we should retry
        """
        if attempt >= self.config.max_attempts:
            return False
        return self.is_retryable(error)

    def execute(
        self,
        func: Callable[..., T],
        *args: Any,
        on_retry: Optional[Callable[[RetryState], None]] = None,
        **kwargs: Any,
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for func
            on_retry: Optional callback called before each backoff sleep
            **kwargs: Keyword arguments for func

        Returns:
            Result of func

        Raises:
            The last exception if all retries fail
        """
        state = RetryState(attempt=0, last_error=None, last_status_code=None, total_delay=0)

        while True:
            state.attempt += 1

            try:
                return func(*args, **kwargs)
            except Exception as e:
                state.last_error = e
                state.last_status_code = self.status_code_of(e)

                if not self.should_retry(e, state.attempt):
                    raise

                delay = self.calculate_delay(state.attempt)
                state.next_delay = delay
                state.total_delay += delay

                if on_retry:
                    on_retry(state)

                self._sleep(delay)
