"""Chat status tracking for observability."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, List, Optional

from colloquy.context.message import Usage

logger = logging.getLogger(__name__)

MAX_API_ERRORS = 20


class ChatStatus(str, Enum):
    IDLE_WAITING_FOR_USER = "IDLE_WAITING_FOR_USER"
    AUGMENTING_CONTEXT = "AUGMENTING_CONTEXT"
    API_CALL_IN_PROGRESS = "API_CALL_IN_PROGRESS"
    WAITING_WITH_BACKOFF = "WAITING_WITH_BACKOFF"
    TOOL_EXECUTION_IN_PROGRESS = "TOOL_EXECUTION_IN_PROGRESS"
    MAX_RETRIES_REACHED = "MAX_RETRIES_REACHED"
    API_CALL_FAILED = "API_CALL_FAILED"

    @property
    def is_terminal_failure(self) -> bool:
        return self in (ChatStatus.MAX_RETRIES_REACHED, ChatStatus.API_CALL_FAILED)


@dataclass
class ApiErrorRecord:
    model_id: str
    api_key_suffix: str
    timestamp: float
    attempt: int
    backoff_seconds: float
    error: str
    status_code: Optional[int] = None


@dataclass
class StatusSnapshot:
    current_phase: ChatStatus
    last_error_summary: Optional[str]
    token_usage_ratio: float
    executing_tool_name: Optional[str]
    api_error_count: int = 0
    last_usage: Optional[Usage] = None

    @property
    def token_usage_display(self) -> str:
        if self.token_usage_ratio <= 0:
            return "N/A"
        return f"{self.token_usage_ratio:.1%}"


StatusListener = Callable[[ChatStatus], None]


@dataclass
class StatusManager:
    """Thread-safe holder of the chat's current phase and recent API errors."""

    token_ratio: Callable[[], float] = lambda: 0.0
    current: ChatStatus = ChatStatus.IDLE_WAITING_FOR_USER
    executing_tool_name: Optional[str] = None
    last_usage: Optional[Usage] = None
    api_errors: Deque[ApiErrorRecord] = field(default_factory=lambda: deque(maxlen=MAX_API_ERRORS))
    _listeners: List[StatusListener] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def set_status(self, status: ChatStatus) -> None:
        with self._lock:
            if status == self.current:
                return
            self.current = status
        logger.debug(f"Chat status -> {status.value}")
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener failed")

    def set_executing_tool(self, name: Optional[str]) -> None:
        with self._lock:
            self.executing_tool_name = name

    def record_api_error(
        self,
        model_id: str,
        api_key_suffix: str,
        attempt: int,
        backoff_seconds: float,
        error: BaseException,
        status_code: Optional[int] = None,
    ) -> ApiErrorRecord:
        record = ApiErrorRecord(
            model_id=model_id,
            api_key_suffix=api_key_suffix,
            timestamp=time.time(),
            attempt=attempt,
            backoff_seconds=backoff_seconds,
            error=f"{type(error).__name__}: {error}",
            status_code=status_code,
        )
        with self._lock:
            self.api_errors.append(record)
        return record

    def clear_api_errors(self) -> None:
        with self._lock:
            self.api_errors.clear()

    def snapshot(self) -> StatusSnapshot:
        with self._lock:
            last = self.api_errors[-1] if self.api_errors else None
            current = self.current
            tool = self.executing_tool_name
            count = len(self.api_errors)
            usage = self.last_usage
        try:
            ratio = self.token_ratio()
        except Exception:
            logger.exception("Token ratio unavailable")
            ratio = 0.0
        return StatusSnapshot(
            current_phase=current,
            last_error_summary=(
                f"attempt {last.attempt}: {last.error}" if last is not None else None
            ),
            token_usage_ratio=ratio,
            executing_tool_name=tool,
            api_error_count=count,
            last_usage=usage,
        )
