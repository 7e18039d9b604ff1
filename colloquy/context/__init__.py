"""Conversation context engine - messages, pruning, resource tracking, persistence.

The store is the entry point; the pruner and resource tracker hang off it::

    from colloquy.context.store import ContextStore
    store = ContextStore(registry)
    store.pruner.prune_tool_call("3", "no longer needed")
"""

from colloquy.context.message import Message, Role, Usage, link_parts
from colloquy.context.parts import (
    BlobPart,
    ExecutableCodePart,
    ExecutionResultPart,
    Part,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from colloquy.context.resources import (
    LiveState,
    ResourceStatus,
    StatefulResource,
    StatefulResourceStatus,
)
from colloquy.context.store import ContextListener, ContextStore

__all__ = [
    "Part",
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    "BlobPart",
    "ExecutableCodePart",
    "ExecutionResultPart",
    "Message",
    "Role",
    "Usage",
    "link_parts",
    "LiveState",
    "ResourceStatus",
    "StatefulResource",
    "StatefulResourceStatus",
    "ContextListener",
    "ContextStore",
]
