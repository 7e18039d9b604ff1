"""Just-in-time context providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, List

from colloquy.context.parts import Part

if TYPE_CHECKING:
    from colloquy.chat import Chat


class ContextPosition(str, Enum):
    """Where a provider's output is placed in the outbound request."""

    SYSTEM_INSTRUCTIONS = "SYSTEM_INSTRUCTIONS"
    AUGMENTED_WORKSPACE = "AUGMENTED_WORKSPACE"


class ContextProvider(ABC):
    """Produces fresh parts for every request. Output is never persisted."""

    provider_id: str = ""
    name: str = ""
    description: str = ""
    position: ContextPosition = ContextPosition.AUGMENTED_WORKSPACE

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    @abstractmethod
    def produce(self, chat: "Chat") -> List[Part]:
        """Parts to inject for the next request."""
