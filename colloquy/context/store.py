"""The ordered message list: single source of truth for the conversation.

All structural mutation (``add``, ``replace_all``, ``clear``) runs behind
one re-entrant lock.  The lock is re-entrant because ``add`` prunes
superseded resources and aged-out tool calls, which calls back into
``replace_all`` on the same thread.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Sequence, Tuple

from colloquy.context.message import Message, Role, Usage
from colloquy.context.parts import Part
from colloquy.context.pruner import ContextPruner
from colloquy.context.resources import LiveProbe, ResourceTracker, file_probe

if TYPE_CHECKING:
    from colloquy.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ContextListener:
    """Observer of context changes. Override what you need."""

    def context_changed(self, messages: Sequence[Message]) -> None:
        pass

    def context_cleared(self) -> None:
        pass


def _drop_dangling_edges(messages: List[Message]) -> List[Message]:
    """Rebuild messages whose dependency edges point at parts not in ``messages``."""
    present = {p.handle for m in messages for p in m.parts}
    cleaned: List[Message] = []
    for message in messages:
        referenced = set(message.dependencies)
        for values in message.dependencies.values():
            referenced.update(values)
        dangling = referenced - present
        if dangling:
            message = message.without(dangling) or message
        cleaned.append(message)
    return cleaned


class ContextStore:
    """Thread-safe ordered list of :class:`Message`."""

    def __init__(
        self,
        registry: Optional["ToolRegistry"] = None,
        *,
        turns_to_keep: int = 5,
        token_threshold: int = 250_000,
        probe: LiveProbe = file_probe,
        backup: Optional[Callable[[], object]] = None,
    ):
        self.registry = registry
        self.token_threshold = token_threshold
        self.resources = ResourceTracker(self, probe=probe)
        self.pruner = ContextPruner(self, turns_to_keep=turns_to_keep)
        self._backup = backup
        self._lock = threading.RLock()
        self._messages: List[Message] = []
        self._listeners: List[ContextListener] = []
        self._sequence = itertools.count(1)
        self._total_tokens = 0
        self._last_usage: Optional[Usage] = None
        self._batch_depth = 0

    # -- sequence ids -----------------------------------------------------

    def next_sequence_id(self) -> int:
        with self._lock:
            return next(self._sequence)

    def reset_sequence(self, start: int) -> None:
        with self._lock:
            self._sequence = itertools.count(start)

    # -- listeners --------------------------------------------------------

    def add_listener(self, listener: ContextListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ContextListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def set_backup(self, backup: Optional[Callable[[], object]]) -> None:
        self._backup = backup

    def _notify(self, cleared: bool = False) -> None:
        if self._batch_depth:
            return
        snapshot = tuple(self._messages)
        for listener in list(self._listeners):
            try:
                if cleared:
                    listener.context_cleared()
                else:
                    listener.context_changed(snapshot)
            except Exception:
                logger.exception(f"Context listener {listener!r} failed")
        if self._backup is not None:
            try:
                self._backup()
            except Exception:
                logger.exception("Failed to schedule context backup")

    # -- mutation ---------------------------------------------------------

    def add(self, message: Message) -> None:
        """Append ``message`` and run the pruning policies it triggers."""
        with self._lock:
            self._batch_depth += 1
            try:
                if self._messages:
                    delta = message.created_at - self._messages[-1].created_at
                    message.elapsed_ms = max(0, int(delta.total_seconds() * 1000))
                superseded = self.resources.handle_stateful_replace(message)
                self._messages.append(message)
                if message.usage is not None:
                    self._last_usage = message.usage
                    self._total_tokens = message.usage.total_tokens
                if superseded:
                    self.pruner.prune_by_reference(
                        superseded, f"superseded by message {message.sequence_id}"
                    )
                if message.role == Role.USER:
                    self.pruner.prune_ephemeral_tool_calls()
                logger.debug(
                    f"Added message {message.sequence_id} ({message.role.value}, "
                    f"{len(message.parts)} parts)"
                )
            finally:
                self._batch_depth -= 1
            self._notify()

    def replace_all(self, messages: Iterable[Message]) -> None:
        """Swap the whole list and recompute derived fields in one pass."""
        with self._lock:
            new_messages = _drop_dangling_edges(list(messages))
            previous = None
            for message in new_messages:
                if previous is not None:
                    delta = message.created_at - previous.created_at
                    message.elapsed_ms = max(0, int(delta.total_seconds() * 1000))
                else:
                    message.elapsed_ms = 0
                previous = message
            self._last_usage = None
            self._total_tokens = 0
            for message in reversed(new_messages):
                if message.usage is not None:
                    self._last_usage = message.usage
                    self._total_tokens = message.usage.total_tokens
                    break
            self._messages = new_messages
            self._notify()

    def clear(self) -> None:
        with self._lock:
            self._messages = []
            self._total_tokens = 0
            self._last_usage = None
            self._notify(cleared=True)

    def link_dependency(self, sequence_id: int, source: Part, dependent: Part) -> bool:
        """Add ``source -> dependent`` to the stored message owning ``source``.

        Returns False (and records nothing) if the message or the part is
        no longer in the context.
        """
        with self._lock:
            message = self.find(sequence_id)
            if message is None or message.index_of(source.handle) < 0:
                logger.debug(f"Cannot link {source.handle}: not in message {sequence_id}")
                return False
            message.link_dependency(source, dependent)
            return True

    # -- queries ----------------------------------------------------------

    def snapshot(self) -> Tuple[Message, ...]:
        with self._lock:
            return tuple(self._messages)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def find(self, sequence_id: int) -> Optional[Message]:
        with self._lock:
            for message in self._messages:
                if message.sequence_id == sequence_id:
                    return message
            return None

    def locate(self, handle: str) -> Optional[Tuple[Message, int]]:
        with self._lock:
            for message in self._messages:
                idx = message.index_of(handle)
                if idx >= 0:
                    return message, idx
            return None

    def contains_part(self, handle: str) -> bool:
        return self.locate(handle) is not None

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def last_usage(self) -> Optional[Usage]:
        return self._last_usage

    def token_usage_ratio(self) -> float:
        """``total_tokens / token_threshold``; 0.0 when no threshold is set."""
        threshold = self.token_threshold
        if not threshold or threshold <= 0:
            return 0.0
        return self._total_tokens / threshold
