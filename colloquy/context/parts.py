"""Atomic message content.

Every Part carries an opaque ``handle`` minted at construction.  Graph
operations (dependency maps, pruning) key on the handle, never on the
Part's content, so two textually identical tool calls stay distinct.
The handle survives ``clone()`` and a serialization round trip.
"""

from __future__ import annotations

import base64
import json
import mimetypes
import uuid
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, ClassVar, Dict, Optional, Type


def new_handle() -> str:
    return uuid.uuid4().hex


@dataclass(eq=False)
class Part:
    """Base class for all part variants. Compared by identity."""

    kind: ClassVar[str] = "part"

    handle: str = field(default_factory=new_handle, kw_only=True)

    def clone(self) -> "Part":
        """Shallow copy that keeps the same handle."""
        return replace(self)

    @property
    def call_id(self) -> Optional[str]:
        return None

    def summary(self, limit: int = 80) -> str:
        """Single-line human readable description."""
        return self.kind

    def size_bytes(self) -> int:
        return len(self.summary(limit=10_000).encode("utf-8"))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.kind}
        for f in fields(self):
            data[f.name] = getattr(self, f.name)
        return data


def _shorten(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


@dataclass(eq=False)
class TextPart(Part):
    kind: ClassVar[str] = "text"

    text: str = ""
    thought: bool = False

    def summary(self, limit: int = 80) -> str:
        prefix = "(thought) " if self.thought else ""
        return prefix + _shorten(self.text, limit)

    def size_bytes(self) -> int:
        return len(self.text.encode("utf-8"))


@dataclass(eq=False)
class ToolCallPart(Part):
    kind: ClassVar[str] = "tool_call"

    name: str = ""
    args: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    @property
    def call_id(self) -> Optional[str]:
        return self.id

    def clone(self) -> "ToolCallPart":
        return replace(self, args=dict(self.args))

    def summary(self, limit: int = 80) -> str:
        args = json.dumps(self.args, sort_keys=True, default=str)
        return _shorten(f"{self.name}({args})", limit)


@dataclass(eq=False)
class ToolResultPart(Part):
    kind: ClassVar[str] = "tool_result"

    name: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    @property
    def call_id(self) -> Optional[str]:
        return self.id

    @property
    def is_error(self) -> bool:
        return "error" in self.payload

    def clone(self) -> "ToolResultPart":
        return replace(self, payload=dict(self.payload))

    def summary(self, limit: int = 80) -> str:
        body = json.dumps(self.payload, sort_keys=True, default=str)
        return _shorten(f"{self.name} -> {body}", limit)

    def size_bytes(self) -> int:
        return len(json.dumps(self.payload, default=str).encode("utf-8"))


@dataclass(eq=False)
class BlobPart(Part):
    kind: ClassVar[str] = "blob"

    mime_type: str = "application/octet-stream"
    data: bytes = b""
    source: Optional[str] = None

    @classmethod
    def from_file(cls, path: Path) -> "BlobPart":
        mime_type, _ = mimetypes.guess_type(str(path))
        return cls(
            mime_type=mime_type or "application/octet-stream",
            data=Path(path).read_bytes(),
            source=str(path),
        )

    def summary(self, limit: int = 80) -> str:
        label = self.source or "blob"
        return _shorten(f"{label} [{self.mime_type}, {len(self.data)} bytes]", limit)

    def size_bytes(self) -> int:
        return len(self.data)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["data"] = base64.b64encode(self.data).decode("ascii")
        return data


@dataclass(eq=False)
class ExecutableCodePart(Part):
    kind: ClassVar[str] = "executable_code"

    language: str = ""
    code: str = ""

    def summary(self, limit: int = 80) -> str:
        return _shorten(f"[{self.language}] {self.code}", limit)

    def size_bytes(self) -> int:
        return len(self.code.encode("utf-8"))


@dataclass(eq=False)
class ExecutionResultPart(Part):
    kind: ClassVar[str] = "execution_result"

    outcome: str = ""
    output: str = ""

    def summary(self, limit: int = 80) -> str:
        return _shorten(f"{self.outcome}: {self.output}", limit)

    def size_bytes(self) -> int:
        return len(self.output.encode("utf-8"))


PART_TYPES: Dict[str, Type[Part]] = {
    cls.kind: cls
    for cls in (
        TextPart,
        ToolCallPart,
        ToolResultPart,
        BlobPart,
        ExecutableCodePart,
        ExecutionResultPart,
    )
}


def part_from_dict(data: dict[str, Any]) -> Part:
    """Rebuild a Part from ``Part.to_dict()`` output, preserving its handle."""
    data = dict(data)
    kind = data.pop("type", None)
    cls = PART_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown part type: {kind!r}")
    if cls is BlobPart:
        data["data"] = base64.b64decode(data.get("data", ""))
    return cls(**data)
