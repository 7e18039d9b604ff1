"""User confirmation for proposed tool calls."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, Sequence

from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

if TYPE_CHECKING:
    from colloquy.tools.base import ToolContext
    from colloquy.tools.orchestrator import IdentifiedCall

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """What the user chose for one proposed call."""

    YES = "YES"
    NO = "NO"
    ALWAYS = "ALWAYS"
    NEVER = "NEVER"

    @property
    def approves(self) -> bool:
        return self in (Decision.YES, Decision.ALWAYS)


@dataclass
class PromptResult:
    decisions: Dict[str, Decision] = field(default_factory=dict)
    comment: str = ""
    cancelled: bool = False


class ConfirmationPrompter(Protocol):
    def prompt(self, calls: Sequence["IdentifiedCall"], ctx: "ToolContext") -> PromptResult: ...


class ApprovalPreferences:
    """Remembered ALWAYS/NEVER decisions, keyed by tool name.

    YES and NO are one-off decisions and are never stored.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._prefs: Dict[str, Decision] = {}
        self._lock = threading.Lock()
        if self.path and self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                self._prefs = {k: Decision(v) for k, v in raw.items()}
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable approval preferences {self.path}: {e}")

    def get(self, tool_name: str) -> Optional[Decision]:
        with self._lock:
            return self._prefs.get(tool_name)

    def set(self, tool_name: str, decision: Decision) -> None:
        if decision not in (Decision.ALWAYS, Decision.NEVER):
            return
        with self._lock:
            if self._prefs.get(tool_name) == decision:
                return
            self._prefs[tool_name] = decision
            self._save()

    def clear(self, tool_name: str) -> None:
        with self._lock:
            if self._prefs.pop(tool_name, None) is not None:
                self._save()

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {k: v.value for k, v in self._prefs.items()}
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")


class AutoApprovePrompter:
    """Approves everything once. For non-interactive runs."""

    def prompt(self, calls: Sequence["IdentifiedCall"], ctx: "ToolContext") -> PromptResult:
        return PromptResult(decisions={c.call_id: Decision.YES for c in calls})


_CHOICES = {"y": Decision.YES, "n": Decision.NO, "a": Decision.ALWAYS, "v": Decision.NEVER}


class ConsolePrompter:
    """Terminal confirmation dialog built on rich."""

    def __init__(self, console: Optional[Console] = None, preferences: Optional[ApprovalPreferences] = None):
        self.console = console or Console(stderr=True)
        self.preferences = preferences

    def _default_for(self, call: "IdentifiedCall") -> str:
        pref = self.preferences.get(call.name) if self.preferences else None
        if pref == Decision.NEVER:
            return "v"
        if pref == Decision.ALWAYS:
            return "a"
        return "y"

    def prompt(self, calls: Sequence["IdentifiedCall"], ctx: "ToolContext") -> PromptResult:
        table = Table(title="Proposed tool calls")
        table.add_column("id")
        table.add_column("tool")
        table.add_column("arguments")
        for call in calls:
            table.add_row(call.call_id, call.name, json.dumps(call.args, default=str)[:200])
        self.console.print(table)

        decisions: Dict[str, Decision] = {}
        for call in calls:
            answer = Prompt.ask(
                f"[bold]{call.name}[/bold] id={call.call_id} "
                "([y]es/[n]o/[a]lways/ne[v]er/[c]ancel)",
                choices=["y", "n", "a", "v", "c"],
                default=self._default_for(call),
                console=self.console,
            )
            if answer == "c":
                return PromptResult(decisions=decisions, cancelled=True)
            decisions[call.call_id] = _CHOICES[answer]

        comment = Prompt.ask("Comment for the model (optional)", default="", console=self.console)
        return PromptResult(decisions=decisions, comment=comment.strip())


def describe_decisions(result: PromptResult) -> List[str]:
    return [f"{call_id}={decision.value}" for call_id, decision in result.decisions.items()]
