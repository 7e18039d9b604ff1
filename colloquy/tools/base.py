"""Tool descriptors and the result shapes tools may return."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Type

if TYPE_CHECKING:
    from colloquy.context.resources import StatefulResource
    from colloquy.context.store import ContextStore
    from colloquy.providers.factory import ContentFactory


class ContextBehavior(str, Enum):
    """How a tool's results live in the context."""

    EPHEMERAL = "EPHEMERAL"
    STATEFUL_REPLACE = "STATEFUL_REPLACE"


class ToolError(Exception):
    """Base class for tool invocation failures."""


class ToolNotFoundError(ToolError):
    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolArgumentError(ToolError):
    """Raised when a call is missing required arguments."""


class ToolBlockedError(ToolError):
    """Raised instead of invoking a call that keeps failing."""


@dataclass
class ToolParam:
    """One declared parameter of a tool."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = True
    items: Optional[str] = None

    def to_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.type == "array":
            schema["items"] = {"type": self.items or "string"}
        return schema


@dataclass
class ToolDescriptor:
    """Explicit registration record for a tool.

    ``func`` is called as ``func(ctx, **args)`` where ``ctx`` is the
    :class:`ToolContext` of the active chat.
    """

    name: str
    description: str
    func: Callable[..., Any]
    params: List[ToolParam] = field(default_factory=list)
    behavior: ContextBehavior = ContextBehavior.EPHEMERAL
    requires_approval: bool = True
    resource_type: Optional[Type["StatefulResource"]] = None
    returns: str = ""

    def __post_init__(self) -> None:
        if self.behavior == ContextBehavior.STATEFUL_REPLACE and self.resource_type is None:
            raise ValueError(f"Stateful tool {self.name} must declare a resource_type")

    def get_spec(self) -> dict[str, Any]:
        """Function declaration advertised to the model."""
        properties = {p.name: p.to_schema() for p in self.params}
        properties["asynchronous"] = {
            "type": "boolean",
            "description": "Run in the background and return a job id immediately",
        }
        description = self.description
        if self.returns:
            description = f"{description}\n\nReturns: {self.returns}"
        return {
            "name": self.name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": [p.name for p in self.params if p.required],
            },
        }


@dataclass
class ToolContext:
    """Explicit session handle passed to every tool invocation."""

    store: "ContextStore"
    cwd: Path = field(default_factory=Path.cwd)
    providers: Optional["ContentFactory"] = None
    settings: Dict[str, Any] = field(default_factory=dict)

    def resolve_path(self, path: str) -> Path:
        p = Path(path).expanduser()
        if p.is_absolute():
            return p
        return (self.cwd / p).resolve()


@dataclass
class AttachmentResponse:
    """Result asking for files to be shown to the model as blobs."""

    file_paths: List[str]
    message: str = ""


@dataclass
class FeedbackResult:
    """Result that also carries a note for the tool feedback line."""

    output: Any
    user_feedback: str


class JobStatus(str, Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class JobInfo:
    """Placeholder returned for calls run in the background."""

    job_id: str
    tool_name: str
    status: JobStatus = JobStatus.STARTED
    description: str = ""
    result: Any = None
