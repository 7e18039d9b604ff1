"""Tools that let the model inspect and trim its own context."""

from __future__ import annotations

from typing import Any, Dict, List

from colloquy.context.summary import summary_table
from colloquy.tools.base import ToolContext, ToolDescriptor, ToolError, ToolParam
from colloquy.tools.registry import ToolRegistry


def get_context_summary(ctx: ToolContext) -> str:
    return summary_table(ctx.store.snapshot())


def get_token_usage(ctx: ToolContext) -> Dict[str, Any]:
    return {
        "total_tokens": ctx.store.total_tokens,
        "token_threshold": ctx.store.token_threshold,
        "ratio": round(ctx.store.token_usage_ratio(), 4),
    }


def set_token_threshold(ctx: ToolContext, threshold: int) -> Dict[str, Any]:
    if int(threshold) <= 0:
        raise ToolError("threshold must be positive")
    ctx.store.token_threshold = int(threshold)
    return get_token_usage(ctx)


def prune_ephemeral_tool_calls(ctx: ToolContext, call_ids: List[str], reason: str) -> str:
    removed = ctx.store.pruner.prune_ephemeral_tool_call([str(c) for c in call_ids], reason)
    return f"Removed {len(removed)} part(s)"


def prune_stateful_resources(ctx: ToolContext, resource_ids: List[str], reason: str) -> str:
    removed = ctx.store.resources.prune_stateful_resources(resource_ids, reason)
    return f"Removed {removed} part(s)"


def _parse_ref(ref: str) -> tuple[int, int]:
    try:
        seq, idx = ref.split("/", 1)
        return int(seq), int(idx)
    except ValueError as e:
        raise ToolError(f"Invalid part reference {ref!r}; expected '<message>/<index>'") from e


def prune_other(ctx: ToolContext, part_refs: List[str], reason: str) -> str:
    handles = []
    for ref in part_refs:
        seq, idx = _parse_ref(ref)
        message = ctx.store.find(seq)
        if message is None or not 0 <= idx < len(message.parts):
            raise ToolError(f"No part {ref} in context")
        handles.append(message.parts[idx].handle)
    removed = ctx.store.pruner.prune_other(handles, reason)
    return f"Removed {len(removed)} part(s)"


def toggle_context_providers(ctx: ToolContext, provider_ids: List[str], enabled: bool) -> str:
    if ctx.providers is None:
        raise ToolError("No context providers are configured")
    changed = ctx.providers.set_enabled(provider_ids, bool(enabled))
    unknown = sorted(set(provider_ids) - set(changed))
    state = "enabled" if enabled else "disabled"
    message = f"{state}: {', '.join(changed) or 'none'}"
    if unknown:
        message += f"; unknown: {', '.join(unknown)}"
    return message


def register(registry: ToolRegistry) -> None:
    reason = ToolParam("reason", "string", "Why this is no longer needed")
    for descriptor in (
        ToolDescriptor(
            name="get_context_summary",
            description="Table of every part in the context with sizes and dependencies.",
            func=get_context_summary,
        ),
        ToolDescriptor(
            name="get_token_usage",
            description="Current token count, threshold, and usage ratio.",
            func=get_token_usage,
        ),
        ToolDescriptor(
            name="set_token_threshold",
            description="Change the token budget of the context.",
            func=set_token_threshold,
            params=[ToolParam("threshold", "integer", "New token threshold")],
        ),
        ToolDescriptor(
            name="prune_ephemeral_tool_calls",
            description="Remove non-stateful tool calls and their results by call id.",
            func=prune_ephemeral_tool_calls,
            params=[ToolParam("call_ids", "array", "Tool call ids", items="string"), reason],
        ),
        ToolDescriptor(
            name="prune_stateful_resources",
            description="Remove every copy of the given resources (e.g. file paths) from context.",
            func=prune_stateful_resources,
            params=[ToolParam("resource_ids", "array", "Resource ids", items="string"), reason],
        ),
        ToolDescriptor(
            name="prune_other",
            description="Remove text, blob or code parts given as '<message>/<index>' references.",
            func=prune_other,
            params=[ToolParam("part_refs", "array", "Part references", items="string"), reason],
        ),
        ToolDescriptor(
            name="toggle_context_providers",
            description="Enable or disable context providers by id.",
            func=toggle_context_providers,
            params=[
                ToolParam("provider_ids", "array", "Provider ids", items="string"),
                ToolParam("enabled", "boolean", "True to enable, false to disable"),
            ],
        ),
    ):
        descriptor.requires_approval = False
        registry.register(descriptor)
