"""Tools module - descriptors, registry, and call orchestration.

To avoid circular imports, only leaf-node symbols are re-exported here.
Import heavier modules directly::

    from colloquy.tools.registry import ToolRegistry
    from colloquy.tools.orchestrator import ToolOrchestrator
    from colloquy.tools.builtin import register_builtin_tools
"""

from colloquy.tools.base import (
    AttachmentResponse,
    ContextBehavior,
    FeedbackResult,
    JobInfo,
    JobStatus,
    ToolBlockedError,
    ToolContext,
    ToolDescriptor,
    ToolError,
    ToolParam,
)

__all__ = [
    "AttachmentResponse",
    "ContextBehavior",
    "FeedbackResult",
    "JobInfo",
    "JobStatus",
    "ToolBlockedError",
    "ToolContext",
    "ToolDescriptor",
    "ToolError",
    "ToolParam",
]
