"""Messages and the per-message dependency map."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from colloquy.context.parts import Part, part_from_dict


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    MODEL = "model"
    TOOL = "tool"


@dataclass
class Usage:
    """Token usage reported by the model for one response."""

    prompt_tokens: int = 0
    candidate_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "candidate_tokens": self.candidate_tokens,
            "total_tokens": self.total_tokens,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Message:
    """An ordered list of Parts plus metadata.

    ``dependencies`` maps the handle of a Part owned by this message to
    the handles of Parts (in this or any other message) that must be
    pruned together with it.  It starts empty and is only extended via
    :meth:`link_dependency`.
    """

    sequence_id: int
    role: Role
    parts: List[Part]
    created_at: datetime = field(default_factory=_utcnow)
    elapsed_ms: int = 0
    usage: Optional[Usage] = None
    model_id: Optional[str] = None
    tool_feedback: bool = False
    dependencies: Dict[str, List[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.parts:
            raise ValueError("A message must contain at least one part")
        self.role = Role(self.role)

    @property
    def is_user_turn(self) -> bool:
        """True for messages typed by the user, not synthesized tool feedback."""
        return self.role == Role.USER and not self.tool_feedback

    def handles(self) -> set[str]:
        return {p.handle for p in self.parts}

    def index_of(self, handle: str) -> int:
        for idx, part in enumerate(self.parts):
            if part.handle == handle:
                return idx
        return -1

    def link_dependency(self, source: Part, dependent: Part) -> None:
        """Record that ``dependent`` must be pruned together with ``source``.

        ``source`` must be one of this message's parts; ``dependent`` may
        live anywhere in the context.  Adding an existing edge is a no-op.
        """
        if self.index_of(source.handle) < 0:
            raise ValueError(
                f"Part {source.handle} does not belong to message {self.sequence_id}"
            )
        dependents = self.dependencies.setdefault(source.handle, [])
        if dependent.handle not in dependents:
            dependents.append(dependent.handle)

    def without(self, removed: set[str]) -> Optional["Message"]:
        """Copy of this message with ``removed`` handles filtered out.

        Returns ``None`` when no part survives.  Dependency entries keyed
        by a removed part are dropped, removed handles are filtered out of
        the surviving lists, and lists left empty are dropped.
        """
        kept = [p for p in self.parts if p.handle not in removed]
        if not kept:
            return None
        deps: Dict[str, List[str]] = {}
        for key, values in self.dependencies.items():
            if key in removed:
                continue
            remaining = [v for v in values if v not in removed]
            if remaining:
                deps[key] = remaining
        return replace(self, parts=kept, dependencies=deps)

    def references(self, handles: set[str]) -> bool:
        """True if any part or dependency edge of this message is in ``handles``."""
        if self.handles() & handles:
            return True
        for key, values in self.dependencies.items():
            if key in handles or handles.intersection(values):
                return True
        return False

    def text(self) -> str:
        return "\n".join(getattr(p, "text", "") for p in self.parts if getattr(p, "text", ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence_id": self.sequence_id,
            "role": self.role.value,
            "parts": [p.to_dict() for p in self.parts],
            "created_at": self.created_at.isoformat(),
            "elapsed_ms": self.elapsed_ms,
            "usage": self.usage.to_dict() if self.usage else None,
            "model_id": self.model_id,
            "tool_feedback": self.tool_feedback,
            "dependencies": {k: list(v) for k, v in self.dependencies.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        usage = data.get("usage")
        return cls(
            sequence_id=int(data["sequence_id"]),
            role=Role(data["role"]),
            parts=[part_from_dict(p) for p in data["parts"]],
            created_at=datetime.fromisoformat(data["created_at"]),
            elapsed_ms=int(data.get("elapsed_ms", 0)),
            usage=Usage(**usage) if usage else None,
            model_id=data.get("model_id"),
            tool_feedback=bool(data.get("tool_feedback", False)),
            dependencies={k: list(v) for k, v in (data.get("dependencies") or {}).items()},
        )


def link_parts(
    source_message: Message,
    source: Part,
    dependent_message: Message,
    dependent: Part,
) -> None:
    """Bidirectional add: ``source -> dependent`` and ``dependent -> source``.

    Each edge is stored in the message that owns its key, so either end
    can later find the other without a global index.
    """
    source_message.link_dependency(source, dependent)
    dependent_message.link_dependency(dependent, source)


def iter_parts(messages: Iterable[Message]) -> Iterable[tuple[Message, int, Part]]:
    for message in messages:
        for idx, part in enumerate(message.parts):
            yield message, idx, part
