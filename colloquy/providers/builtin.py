"""Built-in context providers."""

from __future__ import annotations

import os
import platform
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from colloquy.context.parts import Part, TextPart
from colloquy.context.summary import summary_table
from colloquy.providers.base import ContextPosition, ContextProvider

if TYPE_CHECKING:
    from colloquy.chat import Chat

BASE_INSTRUCTIONS = """You are a helpful assistant working in the user's workspace through tools.

Context management:
- Results of stateful tools (such as read_file) always show the latest version of a resource; older versions are removed automatically.
- Results of other tools are removed automatically after a few user turns. Re-run a tool if you need its output again.
- Check the "Stateful resources" table before re-reading a file: VALID means the copy in context matches the file on disk.
- Use the context window tools to prune what you no longer need when token usage gets high."""


def _fmt_ms(value: Optional[int]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


class SystemInstructionsProvider(ContextProvider):
    provider_id = "system-instructions"
    name = "System instructions"
    description = "Core instructions plus an optional user-supplied markdown file"
    position = ContextPosition.SYSTEM_INSTRUCTIONS

    def __init__(self, extra_file: Optional[Path] = None, enabled: bool = True):
        super().__init__(enabled)
        self.extra_file = extra_file

    def produce(self, chat: "Chat") -> List[Part]:
        parts: List[Part] = [TextPart(text=BASE_INSTRUCTIONS)]
        if self.extra_file is not None and self.extra_file.exists():
            parts.append(TextPart(text=self.extra_file.read_text(encoding="utf-8")))
        return parts


class EnvironmentProvider(ContextProvider):
    provider_id = "environment"
    name = "Environment"
    description = "Working directory, platform, and local time"
    position = ContextPosition.SYSTEM_INSTRUCTIONS

    def produce(self, chat: "Chat") -> List[Part]:
        lines = [
            f"Working directory: {chat.ctx.cwd}",
            f"Platform: {platform.system()} {platform.release()}",
            f"User: {os.environ.get('USER', 'unknown')}",
            f"Local time: {datetime.now().isoformat(timespec='seconds')}",
        ]
        return [TextPart(text="\n".join(lines))]


class ChatStatusProvider(ContextProvider):
    provider_id = "chat-status"
    name = "Chat status"
    description = "Token usage and session identifiers"

    def produce(self, chat: "Chat") -> List[Part]:
        snap = chat.status_snapshot()
        lines = [
            f"Session: {chat.config.session_id}",
            f"Messages in context: {len(chat.store)}",
            f"Tokens: {chat.store.total_tokens} / {chat.store.token_threshold} "
            f"({snap.token_usage_display})",
        ]
        return [TextPart(text="\n".join(lines))]


class StatefulResourcesProvider(ContextProvider):
    provider_id = "stateful-resources"
    name = "Stateful resources"
    description = "Live status of every resource mirrored into the context"

    def produce(self, chat: "Chat") -> List[Part]:
        rows = chat.store.resources.overview()
        if not rows:
            return []
        lines = [
            "| Status | Context last modified | Resource | Context size | Part | Call id |",
            "|---|---|---|---|---|---|",
        ]
        for row in rows:
            lines.append(
                f"| {row.status.value} | {_fmt_ms(row.context_last_modified)} | {row.resource_id} "
                f"| {row.context_size} | {row.part_ref} | {row.call_id or ''} |"
            )
        return [TextPart(text="\n".join(lines))]


class ContextSummaryProvider(ContextProvider):
    provider_id = "context-summary"
    name = "Context summary"
    description = "Table of every part in the context with its dependencies"

    def __init__(self, enabled: bool = False):
        super().__init__(enabled)

    def produce(self, chat: "Chat") -> List[Part]:
        messages = chat.store.snapshot()
        if not messages:
            return []
        return [TextPart(text=summary_table(messages))]


def default_providers(system_instructions_file: Optional[Path] = None) -> List[ContextProvider]:
    return [
        SystemInstructionsProvider(system_instructions_file),
        EnvironmentProvider(),
        ChatStatusProvider(),
        StatefulResourcesProvider(),
        ContextSummaryProvider(),
    ]
