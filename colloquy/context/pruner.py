"""Dependency-graph pruning.

Every entry point reduces to :meth:`ContextPruner.prune_by_reference`:
compute the symmetric closure of the seed parts over all dependency maps,
rebuild the affected messages without them, and swap the list in one
``replace_all`` call.  Tool calls and their results are linked both ways,
so removing either end always removes the other.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Set, Union

from colloquy.context.message import Message, iter_parts
from colloquy.context.parts import Part, ToolCallPart, ToolResultPart
from colloquy.tools.base import ContextBehavior

if TYPE_CHECKING:
    from colloquy.context.store import ContextStore

logger = logging.getLogger(__name__)

PartRef = Union[Part, str]


def compute_closure(messages: Sequence[Message], seeds: Iterable[str]) -> Set[str]:
    """Transitive, direction-agnostic closure of ``seeds`` over all dependency maps."""
    closure = set(seeds)
    edges = [
        (key, values)
        for message in messages
        for key, values in message.dependencies.items()
    ]
    grew = True
    while grew:
        grew = False
        for key, values in edges:
            if key in closure:
                missing = [v for v in values if v not in closure]
                if missing:
                    closure.update(missing)
                    grew = True
            elif any(v in closure for v in values):
                closure.add(key)
                grew = True
    return closure


def apply_prune(messages: Sequence[Message], closure: Set[str]) -> Optional[List[Message]]:
    """Rebuild ``messages`` without ``closure``. Returns None if nothing changes."""
    changed = False
    result: List[Message] = []
    for message in messages:
        if not message.references(closure):
            result.append(message)
            continue
        changed = True
        rebuilt = message.without(closure)
        if rebuilt is not None:
            result.append(rebuilt)
    return result if changed else None


class ContextPruner:
    """Removes parts and messages from a :class:`ContextStore`."""

    def __init__(self, store: "ContextStore", turns_to_keep: int = 5):
        self._store = store
        self.turns_to_keep = turns_to_keep

    @staticmethod
    def _handle(ref: PartRef) -> str:
        return ref if isinstance(ref, str) else ref.handle

    def prune_by_reference(self, initial: Iterable[PartRef], reason: str) -> Set[str]:
        """Prune ``initial`` plus everything linked to it.

        Returns the handles actually removed; an empty set means nothing
        in the context matched and no notification was sent.
        """
        seeds = {self._handle(ref) for ref in initial}
        if not seeds:
            return set()
        with self._store._lock:
            messages = self._store.snapshot()
            closure = compute_closure(messages, seeds)
            rebuilt = apply_prune(messages, closure)
            if rebuilt is None:
                logger.info(f"Prune ({reason}) matched nothing in context")
                return set()
            present = {p.handle for _, _, p in iter_parts(messages)}
            removed = closure & present
            logger.info(
                f"Pruned {len(removed)} part(s), "
                f"{len(messages) - len(rebuilt)} message(s): {reason}"
            )
            self._store.replace_all(rebuilt)
            return removed

    def prune_messages(self, sequence_ids: Iterable[int], reason: str) -> Set[str]:
        wanted = set(sequence_ids)
        parts = [
            part
            for message in self._store.snapshot()
            if message.sequence_id in wanted
            for part in message.parts
        ]
        return self.prune_by_reference(parts, reason)

    def prune_parts(self, sequence_id: int, part_indices: Iterable[int], reason: str) -> Set[str]:
        message = self._store.find(sequence_id)
        if message is None:
            logger.info(f"Prune ({reason}): message {sequence_id} not in context")
            return set()
        parts = [message.parts[i] for i in part_indices if 0 <= i < len(message.parts)]
        return self.prune_by_reference(parts, reason)

    def _parts_for_call(self, call_id: str) -> List[Part]:
        return [
            part
            for _, _, part in iter_parts(self._store.snapshot())
            if isinstance(part, (ToolCallPart, ToolResultPart)) and part.call_id == call_id
        ]

    def prune_tool_call(self, call_id: str, reason: str) -> Set[str]:
        return self.prune_by_reference(self._parts_for_call(call_id), reason)

    def prune_ephemeral_tool_call(self, call_ids: Iterable[str], reason: str) -> Set[str]:
        """Prune tool calls by id; refuses calls of stateful tools."""
        parts: List[Part] = []
        for call_id in call_ids:
            found = self._parts_for_call(call_id)
            for part in found:
                if self._behavior(part) == ContextBehavior.STATEFUL_REPLACE:
                    raise ValueError(
                        f"Tool call {call_id} ({part.name}) is stateful; "
                        "prune it through its resource id instead"
                    )
            parts.extend(found)
        return self.prune_by_reference(parts, reason)

    def prune_other(self, refs: Iterable[PartRef], reason: str) -> Set[str]:
        """Prune non-tool parts (text, blobs, code)."""
        handles = [self._handle(ref) for ref in refs]
        for handle in handles:
            located = self._store.locate(handle)
            if located is None:
                continue
            message, idx = located
            if isinstance(message.parts[idx], (ToolCallPart, ToolResultPart)):
                raise ValueError(
                    f"Part {message.sequence_id}/{idx} is a tool part; "
                    "use the tool-call pruning operations instead"
                )
        return self.prune_by_reference(handles, reason)

    def _behavior(self, part: Part) -> ContextBehavior:
        registry = self._store.registry
        name = getattr(part, "name", "")
        if registry is None:
            return ContextBehavior.EPHEMERAL
        return registry.behavior_of(name)

    @staticmethod
    def _cutoff(messages: Sequence[Message], turns_to_keep: int) -> Optional[int]:
        """Index of the ``turns_to_keep``-th most recent user turn, or None."""
        if turns_to_keep <= 0:
            return None
        seen = 0
        for idx in range(len(messages) - 1, -1, -1):
            if messages[idx].is_user_turn:
                seen += 1
                if seen == turns_to_keep:
                    return idx
        return None

    def prune_ephemeral_tool_calls(self) -> Set[str]:
        """Age out tool traffic older than the last ``turns_to_keep`` user turns.

        Before the cutoff, prunes parts of ephemeral tools, tool calls
        that never got a result, and stateful results that do not parse
        into a resource.
        """
        with self._store._lock:
            messages = self._store.snapshot()
            cutoff = self._cutoff(messages, self.turns_to_keep)
            if cutoff is None:
                return set()

            call_to_result: Dict[str, str] = {}
            handle_kind: Dict[str, type] = {
                p.handle: type(p) for _, _, p in iter_parts(messages)
            }
            for message in messages:
                for key, values in message.dependencies.items():
                    for value in values:
                        if handle_kind.get(key) is ToolCallPart and handle_kind.get(value) is ToolResultPart:
                            call_to_result[key] = value
                        elif handle_kind.get(key) is ToolResultPart and handle_kind.get(value) is ToolCallPart:
                            call_to_result[value] = key

            tracker = self._store.resources
            candidates: List[Part] = []
            for message in messages[:cutoff]:
                for part in message.parts:
                    if not isinstance(part, (ToolCallPart, ToolResultPart)):
                        continue
                    behavior = self._behavior(part)
                    if behavior == ContextBehavior.EPHEMERAL:
                        candidates.append(part)
                    elif isinstance(part, ToolCallPart) and part.handle not in call_to_result:
                        candidates.append(part)
                    elif isinstance(part, ToolResultPart) and tracker.resource_of(part) is None:
                        candidates.append(part)

            if not candidates:
                return set()
            return self.prune_by_reference(
                candidates, f"aged out (older than {self.turns_to_keep} user turns)"
            )
