"""Staleness detection for external resources mirrored into the context.

A tool declared ``STATEFUL_REPLACE`` returns a :class:`StatefulResource`
(for example a file snapshot).  The tracker compares that snapshot with
the live state reported by an injected probe and keeps at most one
result per resource id in the context.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ValidationError

from colloquy.context.message import Message, iter_parts
from colloquy.context.parts import Part, ToolResultPart
from colloquy.tools.base import ContextBehavior

if TYPE_CHECKING:
    from colloquy.context.store import ContextStore

logger = logging.getLogger(__name__)


class StatefulResource(BaseModel, ABC):
    """Snapshot of an external resource at the time it was read into context.

    Subclasses add their own fields and say which one identifies the resource.
    """

    last_modified: int
    size_bytes: int

    @property
    @abstractmethod
    def resource_id(self) -> str:
        """Stable id of the resource (for files, the absolute path)."""


class ResourceStatus(str, Enum):
    """How a context snapshot relates to the live resource."""

    NOT_IN_CONTEXT = "NOT_IN_CONTEXT"
    VALID = "VALID"
    STALE = "STALE"
    OLDER = "OLDER"
    DELETED = "DELETED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class LiveState:
    last_modified: int
    size_bytes: int


# Returns None when the resource no longer exists; raises on probe failure.
LiveProbe = Callable[[str], Optional[LiveState]]


def file_probe(resource_id: str) -> Optional[LiveState]:
    """Live probe backed by ``os.stat`` (millisecond mtime)."""
    path = Path(resource_id)
    if not path.exists():
        return None
    st = os.stat(path)
    return LiveState(last_modified=int(st.st_mtime * 1000), size_bytes=st.st_size)


def resolve_status(
    context_last_modified: int,
    context_size: int,
    live: Optional[LiveState],
) -> ResourceStatus:
    if live is None:
        return ResourceStatus.DELETED
    if live.last_modified > context_last_modified:
        return ResourceStatus.STALE
    if live.last_modified < context_last_modified:
        return ResourceStatus.OLDER
    # Timestamp resolution can be coarser than content changes.
    if live.size_bytes != context_size:
        return ResourceStatus.STALE
    return ResourceStatus.VALID


@dataclass
class StatefulResourceStatus:
    """One row of the resource overview."""

    resource_id: str
    status: ResourceStatus
    context_last_modified: Optional[int] = None
    context_size: Optional[int] = None
    live_last_modified: Optional[int] = None
    live_size: Optional[int] = None
    part_ref: Optional[str] = None
    call_id: Optional[str] = None
    resource: Optional[StatefulResource] = None


class ResourceTracker:
    """Parses stateful tool results and reports their live status."""

    def __init__(self, store: "ContextStore", probe: LiveProbe = file_probe):
        self._store = store
        self.probe = probe

    def resource_type_of(self, tool_name: str) -> Optional[Type[StatefulResource]]:
        registry = self._store.registry
        if registry is None:
            return None
        descriptor = registry.get(tool_name)
        if descriptor is None or descriptor.behavior != ContextBehavior.STATEFUL_REPLACE:
            return None
        return descriptor.resource_type

    def is_stateful_tool(self, tool_name: str) -> bool:
        registry = self._store.registry
        if registry is None:
            return False
        return registry.behavior_of(tool_name) == ContextBehavior.STATEFUL_REPLACE

    def resource_of(self, part: Part) -> Optional[StatefulResource]:
        """The resource a stateful result carries, or None.

        Wrapped primitives (a payload holding only ``output``), error
        payloads, payloads the declared resource type rejects, and empty
        resource ids are all "not stateful".
        """
        if not isinstance(part, ToolResultPart):
            return None
        resource_type = self.resource_type_of(part.name)
        if resource_type is None:
            return None
        payload = part.payload
        if not payload or "error" in payload or set(payload) == {"output"}:
            return None
        try:
            resource = resource_type.model_validate(payload)
        except ValidationError:
            return None
        if not resource.resource_id:
            return None
        return resource

    def status(self, resource: StatefulResource, probe: Optional[LiveProbe] = None) -> StatefulResourceStatus:
        probe = probe or self.probe
        row = StatefulResourceStatus(
            resource_id=resource.resource_id,
            status=ResourceStatus.ERROR,
            context_last_modified=resource.last_modified,
            context_size=resource.size_bytes,
            resource=resource,
        )
        try:
            live = probe(resource.resource_id)
        except Exception as e:
            logger.warning(f"Live probe failed for {resource.resource_id}: {e}")
            return row
        if live is not None:
            row.live_last_modified = live.last_modified
            row.live_size = live.size_bytes
        row.status = resolve_status(resource.last_modified, resource.size_bytes, live)
        return row

    def _entries(self, messages: Iterable[Message]):
        for message, idx, part in iter_parts(messages):
            resource = self.resource_of(part)
            if resource is not None:
                yield message, idx, part, resource

    def overview(self) -> List[StatefulResourceStatus]:
        """One row per distinct resource id; later occurrences shadow earlier ones."""
        latest: Dict[str, tuple] = {}
        for message, idx, part, resource in self._entries(self._store.snapshot()):
            latest.pop(resource.resource_id, None)
            latest[resource.resource_id] = (message, idx, part, resource)
        rows = []
        for message, idx, part, resource in latest.values():
            row = self.status(resource)
            row.part_ref = f"{message.sequence_id}/{idx}"
            row.call_id = part.call_id
            rows.append(row)
        return rows

    def lookup(self, resource_id: str) -> StatefulResourceStatus:
        """Status of the most recent context entry for ``resource_id``."""
        for row in self.overview():
            if row.resource_id == resource_id:
                return row
        return StatefulResourceStatus(resource_id=resource_id, status=ResourceStatus.NOT_IN_CONTEXT)

    def superseded_parts(self, message: Message, messages: Iterable[Message]) -> List[Part]:
        """Results in ``messages`` (and earlier in ``message``) replaced by ``message``.

        Only the last result per resource id inside ``message`` survives.
        """
        incoming: Dict[str, Part] = {}
        superseded: List[Part] = []
        for part in message.parts:
            resource = self.resource_of(part)
            if resource is None:
                continue
            previous = incoming.get(resource.resource_id)
            if previous is not None:
                superseded.append(previous)
            incoming[resource.resource_id] = part
        if not incoming:
            return superseded
        for _, _, part, resource in self._entries(messages):
            if resource.resource_id in incoming:
                superseded.append(part)
        return superseded

    def handle_stateful_replace(self, message: Message) -> List[Part]:
        """Parts of the current context that ``message`` supersedes."""
        return self.superseded_parts(message, self._store.snapshot())

    def prune_stateful_resources(self, resource_ids: Iterable[str], reason: str) -> int:
        """Prune every result for the given resource ids, with their closures."""
        wanted = set(resource_ids)
        parts = [
            part
            for _, _, part, resource in self._entries(self._store.snapshot())
            if resource.resource_id in wanted
        ]
        if not parts:
            logger.info(f"No stateful resources matched {sorted(wanted)}; nothing pruned")
            return 0
        return len(self._store.pruner.prune_by_reference(parts, reason))
