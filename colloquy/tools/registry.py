"""Tool registry - explicit descriptors built at startup."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

from colloquy.tools.base import (
    ContextBehavior,
    ToolArgumentError,
    ToolContext,
    ToolDescriptor,
    ToolNotFoundError,
    ToolParam,
)

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Maps tool names to descriptors and dispatches calls."""

    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()):
        self._tools: Dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: ToolDescriptor) -> ToolDescriptor:
        if descriptor.name in self._tools:
            logger.debug(f"Replacing tool registration: {descriptor.name}")
        self._tools[descriptor.name] = descriptor
        return descriptor

    def tool(
        self,
        name: str,
        description: str,
        params: Optional[List[ToolParam]] = None,
        *,
        behavior: ContextBehavior = ContextBehavior.EPHEMERAL,
        requires_approval: bool = True,
        resource_type: Optional[Type[Any]] = None,
        returns: str = "",
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator registering ``func(ctx, **args)`` under ``name``."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(
                ToolDescriptor(
                    name=name,
                    description=description,
                    func=func,
                    params=list(params or []),
                    behavior=behavior,
                    requires_approval=requires_approval,
                    resource_type=resource_type,
                    returns=returns,
                )
            )
            return func

        return decorator

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def behavior_of(self, name: str) -> ContextBehavior:
        """Declared behavior; unknown tools age out like ephemeral ones."""
        descriptor = self._tools.get(name)
        if descriptor is None:
            return ContextBehavior.EPHEMERAL
        return descriptor.behavior

    def requires_approval(self, name: str) -> bool:
        descriptor = self._tools.get(name)
        return True if descriptor is None else descriptor.requires_approval

    def get_specs(self) -> List[dict[str, Any]]:
        return [self._tools[name].get_spec() for name in self.names()]

    def invoke(self, name: str, args: Dict[str, Any], ctx: ToolContext) -> Any:
        """Call the tool and return its raw result. Exceptions propagate."""
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise ToolNotFoundError(name)
        missing = [p.name for p in descriptor.params if p.required and p.name not in args]
        if missing:
            raise ToolArgumentError(f"{name}: missing required argument(s): {', '.join(missing)}")
        known = {p.name for p in descriptor.params}
        unknown = [k for k in args if k not in known]
        if unknown:
            logger.debug(f"{name}: ignoring unknown argument(s) {unknown}")
        kwargs = {k: v for k, v in args.items() if k in known}
        return descriptor.func(ctx, **kwargs)
