"""Circuit breaker for tool calls that keep failing with the same arguments."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List


@dataclass
class FailureRecord:
    timestamps: List[float] = field(default_factory=list)
    last_error: str = ""


class FailureTracker:
    """Blocks a (tool, args) pair after ``max_failures`` within ``window_seconds``."""

    def __init__(
        self,
        max_failures: int = 3,
        window_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self._clock = clock
        self._records: Dict[str, FailureRecord] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(tool_name: str, args: Dict[str, Any]) -> str:
        return f"{tool_name}:{json.dumps(args, sort_keys=True, default=str)}"

    def record_failure(self, tool_name: str, args: Dict[str, Any], error: BaseException | str) -> None:
        key = self.key(tool_name, args)
        with self._lock:
            record = self._records.setdefault(key, FailureRecord())
            record.timestamps.append(self._clock())
            record.last_error = str(error)

    def is_blocked(self, tool_name: str, args: Dict[str, Any]) -> bool:
        key = self.key(tool_name, args)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return False
            cutoff = self._clock() - self.window_seconds
            record.timestamps = [t for t in record.timestamps if t >= cutoff]
            if not record.timestamps:
                del self._records[key]
                return False
            return len(record.timestamps) >= self.max_failures

    def last_error(self, tool_name: str, args: Dict[str, Any]) -> str:
        with self._lock:
            record = self._records.get(self.key(tool_name, args))
            return record.last_error if record else ""

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
