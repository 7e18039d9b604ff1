"""Markdown rendering of the context, for the model and for humans."""

from __future__ import annotations

from typing import Dict, Sequence, Tuple

from colloquy.context.message import Message, iter_parts


def _escape(text: str) -> str:
    return text.replace("|", "\\|")


def summary_table(messages: Sequence[Message], limit: int = 60) -> str:
    """One row per part, with dependencies shown as ``<seq>/<index> (<type>)``."""
    locations: Dict[str, Tuple[int, int, str]] = {
        part.handle: (message.sequence_id, idx, part.kind)
        for message, idx, part in iter_parts(messages)
    }
    lines = [
        f"Messages: {len(messages)}, parts: {len(locations)}",
        "",
        "| Part | Role | Type | Call id | Bytes | Content | Dependencies |",
        "|---|---|---|---|---|---|---|",
    ]
    for message, idx, part in iter_parts(messages):
        deps = []
        for handle in message.dependencies.get(part.handle, []):
            loc = locations.get(handle)
            if loc is not None:
                deps.append(f"{loc[0]}/{loc[1]} ({loc[2]})")
        role = message.role.value + (" (feedback)" if message.tool_feedback else "")
        lines.append(
            f"| {message.sequence_id}/{idx} | {role} | {part.kind} | {part.call_id or ''} "
            f"| {part.size_bytes()} | {_escape(part.summary(limit))} | {', '.join(deps)} |"
        )
    return "\n".join(lines)
