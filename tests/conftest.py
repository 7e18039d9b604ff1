from __future__ import annotations

from typing import Callable, Dict, List, Optional

import pytest

from colloquy.chat import Chat
from colloquy.config.models import ChatConfig
from colloquy.context.message import Message, Role
from colloquy.context.parts import Part, TextPart, ToolCallPart, ToolResultPart
from colloquy.context.resources import LiveState, StatefulResource
from colloquy.context.store import ContextListener, ContextStore
from colloquy.llm.client import GenerationConfig, ModelResponse
from colloquy.tools.base import ContextBehavior, ToolContext, ToolDescriptor, ToolParam
from colloquy.tools.orchestrator import ToolOrchestrator
from colloquy.tools.prompter import PromptResult
from colloquy.tools.registry import ToolRegistry
from colloquy.workers import BackgroundWorkers


class FakeResource(StatefulResource):
    """Stateful payload keyed by ``rid``."""

    rid: str
    body: str = ""

    @property
    def resource_id(self) -> str:
        return self.rid


class FakeProbe:
    """Live probe backed by a dict; ids in ``failing`` raise."""

    def __init__(self):
        self.states: Dict[str, LiveState] = {}
        self.failing: set[str] = set()

    def set(self, rid: str, last_modified: int, size_bytes: int) -> None:
        self.states[rid] = LiveState(last_modified=last_modified, size_bytes=size_bytes)

    def __call__(self, rid: str) -> Optional[LiveState]:
        if rid in self.failing:
            raise OSError(f"probe failed for {rid}")
        return self.states.get(rid)


def make_registry() -> ToolRegistry:
    """Registry of small fake tools; every invocation is recorded in ``registry.invocations``."""
    registry = ToolRegistry()
    invocations: List[tuple] = []
    registry.invocations = invocations

    def echo(ctx, text):
        invocations.append(("echo", text))
        return text

    def fetch(ctx, rid, last_modified=1000, body="content"):
        invocations.append(("fetch", rid))
        return FakeResource(rid=rid, body=body, last_modified=last_modified, size_bytes=len(body))

    def boom(ctx, value=None):
        invocations.append(("boom", value))
        raise RuntimeError("kaboom")

    def peek(ctx):
        invocations.append(("peek", None))
        return "peeked"

    registry.register(ToolDescriptor(
        name="echo",
        description="Echo text back",
        func=echo,
        params=[ToolParam("text", "string", "Text to echo")],
    ))
    registry.register(ToolDescriptor(
        name="fetch",
        description="Fetch a resource",
        func=fetch,
        params=[
            ToolParam("rid", "string", "Resource id"),
            ToolParam("last_modified", "integer", "Timestamp", required=False),
            ToolParam("body", "string", "Body", required=False),
        ],
        behavior=ContextBehavior.STATEFUL_REPLACE,
        resource_type=FakeResource,
    ))
    registry.register(ToolDescriptor(
        name="boom",
        description="Always fails",
        func=boom,
        params=[ToolParam("value", "string", "Anything", required=False)],
    ))
    registry.register(ToolDescriptor(
        name="peek",
        description="Harmless read-only tool",
        func=peek,
        requires_approval=False,
    ))
    return registry


class RecordingListener(ContextListener):
    def __init__(self):
        self.changes: List[int] = []
        self.cleared = 0

    def context_changed(self, messages):
        self.changes.append(len(messages))

    def context_cleared(self):
        self.cleared += 1


class ContextBuilder:
    """Appends realistic conversation shapes to a store."""

    def __init__(self, store: ContextStore):
        self.store = store

    def user(self, text: str = "hello") -> Message:
        message = Message(
            sequence_id=self.store.next_sequence_id(),
            role=Role.USER,
            parts=[TextPart(text=text)],
        )
        self.store.add(message)
        return message

    def model(self, *parts: Part) -> Message:
        message = Message(sequence_id=self.store.next_sequence_id(), role=Role.MODEL, parts=list(parts))
        self.store.add(message)
        return message

    def call(self, name: str, args: Optional[dict] = None, call_id: Optional[str] = None):
        part = ToolCallPart(name=name, args=args or {}, id=call_id)
        return self.model(part), part

    def result(self, call_message: Message, call: ToolCallPart, payload: dict):
        part = ToolResultPart(name=call.name, payload=payload, id=call.id)
        message = Message(sequence_id=self.store.next_sequence_id(), role=Role.TOOL, parts=[part])
        if self.store.link_dependency(call_message.sequence_id, call, part):
            message.link_dependency(part, call)
        self.store.add(message)
        return message, part

    def exchange(self, name: str, payload: dict, args: Optional[dict] = None, call_id: Optional[str] = None):
        """Model call plus linked tool result; returns (call part, result part)."""
        call_message, call = self.call(name, args, call_id)
        _, result = self.result(call_message, call, payload)
        return call, result

    def resource(self, rid: str, last_modified: int = 1000, body: str = "content", call_id: Optional[str] = None):
        payload = FakeResource(
            rid=rid, body=body, last_modified=last_modified, size_bytes=len(body)
        ).model_dump(mode="json")
        return self.exchange("fetch", payload, {"rid": rid}, call_id)


class ScriptedPrompter:
    """Confirmation prompter answering with a function of the proposed calls."""

    def __init__(self, answer: Callable[[list], PromptResult]):
        self.answer = answer
        self.prompts: List[list] = []

    def prompt(self, calls, ctx):
        self.prompts.append(list(calls))
        return self.answer(list(calls))


class FakeClient:
    """Model client replaying a script of responses and exceptions.

    Once the script is used up, ``default`` is returned (or raised).
    """

    model = "fake-model"
    api_key_suffix = "12345"

    def __init__(self, *script, default=None):
        self.script = list(script)
        self.default = default if default is not None else ModelResponse(parts=[TextPart(text="ok")])
        self.requests: List[tuple[List[Message], GenerationConfig]] = []

    def send(self, messages, config):
        self.requests.append((list(messages), config))
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        return item


def all_handles(store: ContextStore) -> set[str]:
    return {p.handle for m in store.snapshot() for p in m.parts}


def all_parts(store: ContextStore) -> List[Part]:
    return [p for m in store.snapshot() for p in m.parts]


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def store(registry, probe):
    return ContextStore(registry, turns_to_keep=5, probe=probe)


@pytest.fixture
def build(store):
    return ContextBuilder(store)


@pytest.fixture
def workers():
    pool = BackgroundWorkers(max_workers=4)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def tool_ctx(store, tmp_path):
    return ToolContext(store=store, cwd=tmp_path)


@pytest.fixture
def make_orchestrator(registry, workers):
    def _make(prompter, **kwargs):
        kwargs.setdefault("workers", workers)
        return ToolOrchestrator(registry, prompter, **kwargs)

    return _make


@pytest.fixture
def make_chat(tmp_path, registry):
    """Factory for a Chat rooted in tmp_path with no-op backoff sleeps."""
    chats: List[Chat] = []

    def _make(client, prompter=None, providers=None, preferences=None, **config):
        config.setdefault("paths", {"cwd": str(tmp_path)})
        config.setdefault("session", {"autobackup": False})
        chat = Chat(
            ChatConfig(**config),
            client,
            registry,
            prompter or ScriptedPrompter(lambda calls: PromptResult(decisions={})),
            providers=providers,
            preferences=preferences,
            sleep=lambda seconds: None,
        )
        chats.append(chat)
        return chat

    yield _make
    for chat in chats:
        chat.shutdown()
