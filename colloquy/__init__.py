"""
colloquy - a conversational model client with a self-managing context.

The context engine keeps tool calls paired with their results, mirrors
files into the conversation without duplicates, and ages out stale
tool output.

Usage:
    colloquy chat --model <model>

Heavy modules (chat, tools.orchestrator) are NOT re-exported here to
avoid circular imports.  Import them directly::

    from colloquy.chat import Chat
    from colloquy.tools.registry import ToolRegistry
"""

__version__ = "1.0.0"

__all__ = [
    "__version__",
]
