"""Built-in tools: local files, shell, and context window management."""

from colloquy.tools.builtin import context_window, files, shell
from colloquy.tools.registry import ToolRegistry


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    files.register(registry)
    shell.register(registry)
    context_window.register(registry)
    return registry


__all__ = ["register_builtin_tools"]
