"""Conversion between the Part model and OpenAI-style chat messages."""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, List, Optional, Sequence

from colloquy.context.message import Message, Role, Usage
from colloquy.context.parts import (
    BlobPart,
    ExecutableCodePart,
    ExecutionResultPart,
    Part,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)


def _render_text(part: Part) -> Optional[str]:
    if isinstance(part, TextPart):
        return None if part.thought else part.text
    if isinstance(part, ExecutableCodePart):
        return f"```{part.language}\n{part.code}\n```"
    if isinstance(part, ExecutionResultPart):
        return f"Execution {part.outcome}:\n{part.output}"
    if isinstance(part, BlobPart) and not part.mime_type.startswith("image/"):
        return f"[attachment {part.source or ''} ({part.mime_type}, {len(part.data)} bytes)]"
    return None


def _user_content(parts: Sequence[Part]) -> List[Dict[str, Any]]:
    content: List[Dict[str, Any]] = []
    for part in parts:
        if isinstance(part, BlobPart) and part.mime_type.startswith("image/"):
            encoded = base64.b64encode(part.data).decode("ascii")
            content.append(
                {"type": "image_url", "image_url": {"url": f"data:{part.mime_type};base64,{encoded}"}}
            )
            continue
        if isinstance(part, ToolResultPart):
            body = json.dumps(part.payload, default=str)
            content.append({"type": "text", "text": f"[{part.name}] {body}"})
            continue
        text = _render_text(part)
        if text:
            content.append({"type": "text", "text": text})
    return content


# Content of the tool reply sent for a call that has no result in the history
# (denied, cancelled, disabled, killed). The outcome itself is in the
# feedback message that follows.
NOT_EXECUTED = json.dumps({"status": "NOT_EXECUTED", "note": "See the tool feedback that follows."})


def to_wire(messages: Sequence[Message], system_instruction: str = "") -> List[Dict[str, Any]]:
    """Render messages for ``/chat/completions``.

    Every ``tool_calls`` id on an assistant message is answered by a
    ``tool`` message before the next non-tool message, as the endpoint
    requires.
    """
    wire: List[Dict[str, Any]] = []
    if system_instruction:
        wire.append({"role": "system", "content": system_instruction})

    pending: List[str] = []

    def close_pending() -> None:
        for call_id in pending:
            wire.append({"role": "tool", "tool_call_id": call_id, "content": NOT_EXECUTED})
        pending.clear()

    for message in messages:
        if message.role == Role.MODEL:
            close_pending()
            texts = [t for t in (_render_text(p) for p in message.parts) if t]
            calls = [
                {
                    "id": p.id,
                    "type": "function",
                    "function": {"name": p.name, "arguments": json.dumps(p.args, default=str)},
                }
                for p in message.parts
                if isinstance(p, ToolCallPart)
            ]
            msg: Dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) or None}
            if calls:
                msg["tool_calls"] = calls
                pending.extend(c["id"] for c in calls if c["id"])
            wire.append(msg)
        elif message.role == Role.TOOL:
            loose: List[Part] = []
            for part in message.parts:
                if isinstance(part, ToolResultPart) and part.id and part.id in pending:
                    pending.remove(part.id)
                    wire.append(
                        {
                            "role": "tool",
                            "tool_call_id": part.id,
                            "content": json.dumps(part.payload, default=str),
                        }
                    )
                else:
                    loose.append(part)
            close_pending()
            if loose:
                wire.append({"role": "user", "content": _user_content(loose)})
        else:
            close_pending()
            content = _user_content(message.parts)
            if content:
                wire.append({"role": "user", "content": content})
    close_pending()
    return wire


def parse_choice(data: Dict[str, Any]) -> tuple[List[Part], Optional[Usage], Optional[str]]:
    """Parts, usage, and model id from a ``/chat/completions`` response body."""
    parts: List[Part] = []
    choices = data.get("choices") or []
    if choices:
        message = choices[0].get("message") or {}
        reasoning = message.get("reasoning_content") or message.get("reasoning")
        if reasoning:
            parts.append(TextPart(text=reasoning, thought=True))
        text = message.get("content") or ""
        if text:
            parts.append(TextPart(text=text))
        for call in message.get("tool_calls") or []:
            func = call.get("function") or {}
            raw_args = func.get("arguments", "{}")
            try:
                args = json.loads(raw_args) if isinstance(raw_args, str) else raw_args
            except json.JSONDecodeError:
                args = {"raw": raw_args}
            parts.append(
                ToolCallPart(
                    name=func.get("name", "") or "",
                    args=args if isinstance(args, dict) else {},
                    id=call.get("id") or None,
                )
            )

    usage = None
    raw_usage = data.get("usage") or {}
    if raw_usage:
        prompt = raw_usage.get("prompt_tokens", 0) or 0
        completion = raw_usage.get("completion_tokens", 0) or 0
        usage = Usage(
            prompt_tokens=prompt,
            candidate_tokens=completion,
            total_tokens=raw_usage.get("total_tokens") or prompt + completion,
        )
    return parts, usage, data.get("model")
