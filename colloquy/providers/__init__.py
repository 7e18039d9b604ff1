"""Context providers - fresh content injected into every model request."""

from colloquy.providers.base import ContextPosition, ContextProvider
from colloquy.providers.factory import ContentFactory

__all__ = ["ContentFactory", "ContextPosition", "ContextProvider"]
