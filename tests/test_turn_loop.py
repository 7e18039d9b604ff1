import io

from rich.console import Console

from conftest import FakeClient, ScriptedPrompter

from colloquy.chat import NO_RESPONSE_PLACEHOLDER
from colloquy.context.message import Role, Usage
from colloquy.context.parts import TextPart, ToolCallPart, ToolResultPart
from colloquy.llm.client import LLMError, ModelResponse
from colloquy.providers.base import ContextPosition, ContextProvider
from colloquy.status import ChatStatus
from colloquy.tools.base import JobInfo, JobStatus
from colloquy.tools.prompter import (
    ApprovalPreferences,
    AutoApprovePrompter,
    ConsolePrompter,
    Decision,
    PromptResult,
)


def _reply(*parts, tokens=None):
    usage = Usage(prompt_tokens=tokens, total_tokens=tokens) if tokens else None
    return ModelResponse(parts=list(parts), usage=usage, model_id="fake-model")


class WorkspaceNote(ContextProvider):
    provider_id = "note"
    name = "Note"

    def produce(self, chat):
        return [TextPart(text="fresh workspace note")]


class Instructions(ContextProvider):
    provider_id = "instructions"
    name = "Instructions"
    position = ContextPosition.SYSTEM_INSTRUCTIONS

    def produce(self, chat):
        return [TextPart(text="be brief")]


def test_always_429_stops_after_max_attempts(make_chat):
    rate_limited = LLMError("HTTP 429: slow down", code="rate_limit", status_code=429)
    client = FakeClient(default=rate_limited)
    chat = make_chat(client, retry={"max_attempts": 3})

    assert chat.send_text("hello") is False

    assert len(client.requests) == 3
    snapshot = chat.status_snapshot()
    assert snapshot.current_phase == ChatStatus.MAX_RETRIES_REACHED
    assert snapshot.api_error_count == 3
    assert "attempt 3" in snapshot.last_error_summary
    # the user message stays; nothing from the model was added
    assert [m.role for m in chat.store.snapshot()] == [Role.USER]


def test_non_retryable_error_fails_immediately(make_chat):
    client = FakeClient(default=LLMError("HTTP 400: bad request", code="api_error", status_code=400))
    chat = make_chat(client, retry={"max_attempts": 5})

    assert chat.send_text("hello") is False

    assert len(client.requests) == 1
    assert chat.status_snapshot().current_phase == ChatStatus.API_CALL_FAILED


def test_transient_error_then_success(make_chat):
    client = FakeClient(
        LLMError("HTTP 503", code="server_error", status_code=503),
        _reply(TextPart(text="hi there"), tokens=100),
    )
    chat = make_chat(client)

    assert chat.send_text("hello") is True

    assert len(client.requests) == 2
    snapshot = chat.status_snapshot()
    assert snapshot.current_phase == ChatStatus.IDLE_WAITING_FOR_USER
    assert snapshot.api_error_count == 0
    assert chat.store.total_tokens == 100


def test_plain_answer_ends_the_turn(make_chat):
    client = FakeClient(_reply(TextPart(text="4")))
    chat = make_chat(client)

    chat.send_text("2+2?")

    roles = [m.role for m in chat.store.snapshot()]
    assert roles == [Role.USER, Role.MODEL]
    assert chat.store.snapshot()[-1].model_id == "fake-model"


def test_empty_response_gets_placeholder(make_chat):
    client = FakeClient(_reply(TextPart(text="only thinking", thought=True)))
    chat = make_chat(client)

    assert chat.send_text("hello") is True

    last = chat.store.snapshot()[-1]
    assert last.role == Role.MODEL
    assert last.parts[-1].text == NO_RESPONSE_PLACEHOLDER
    assert len(client.requests) == 1


def test_tool_calls_loop_until_plain_answer(make_chat, registry):
    client = FakeClient(
        _reply(ToolCallPart(name="echo", args={"text": "ping"})),
        _reply(TextPart(text="echo said ping")),
    )
    chat = make_chat(client, prompter=AutoApprovePrompter())

    assert chat.send_text("use echo") is True

    messages = chat.store.snapshot()
    assert [m.role for m in messages] == [Role.USER, Role.MODEL, Role.TOOL, Role.USER, Role.MODEL]
    assert messages[3].tool_feedback
    result = messages[2].parts[0]
    assert isinstance(result, ToolResultPart)
    assert result.call_id == messages[1].parts[0].call_id == "1"
    assert registry.invocations == [("echo", "ping")]
    assert len(client.requests) == 2


def test_denied_calls_end_the_turn(make_chat, registry):
    client = FakeClient(_reply(ToolCallPart(name="echo", args={"text": "ping"})))
    prompter = ScriptedPrompter(lambda calls: PromptResult(decisions={calls[0].call_id: Decision.NO}))
    chat = make_chat(client, prompter=prompter)

    assert chat.send_text("use echo") is True

    messages = chat.store.snapshot()
    assert [m.role for m in messages] == [Role.USER, Role.MODEL, Role.USER]
    assert "[echo id=1] NO" in messages[-1].parts[0].text
    assert registry.invocations == []
    assert len(client.requests) == 1


def test_model_supplied_call_ids_are_kept(make_chat):
    client = FakeClient(
        _reply(ToolCallPart(name="peek", id="call_xyz")),
        _reply(TextPart(text="done")),
    )
    chat = make_chat(client)

    chat.send_text("peek please")

    results = [p for m in chat.store.snapshot() for p in m.parts if isinstance(p, ToolResultPart)]
    assert [r.call_id for r in results] == ["call_xyz"]


def test_provider_content_is_injected_but_not_stored(make_chat):
    client = FakeClient(_reply(TextPart(text="ok")))
    chat = make_chat(client, providers=[WorkspaceNote(), Instructions()])

    chat.send_text("hello")

    outbound, generation = client.requests[0]
    assert outbound[-1].parts[0].text == "hello"
    augmented = outbound[-2].parts
    assert any(getattr(p, "text", "") == "fresh workspace note" for p in augmented)
    assert "be brief" in generation.system_instruction
    stored = [p.text for m in chat.store.snapshot() for p in m.parts if isinstance(p, TextPart)]
    assert "fresh workspace note" not in stored


def test_tools_are_not_advertised_when_disabled(make_chat):
    client = FakeClient(_reply(TextPart(text="ok")))
    chat = make_chat(client, providers=[], tools={"enabled": False})

    chat.send_text("hello")

    assert client.requests[0][1].tools == []


def test_busy_chat_rejects_new_input(make_chat):
    chat = make_chat(FakeClient())
    chat._turn_lock.acquire()
    try:
        assert chat.send_text("hello") is False
        assert len(chat.store) == 0
    finally:
        chat._turn_lock.release()


def test_resume_retries_after_failure(make_chat):
    client = FakeClient(
        LLMError("HTTP 400", code="api_error", status_code=400),
        _reply(TextPart(text="back again")),
    )
    chat = make_chat(client)

    assert chat.send_text("hello") is False
    assert chat.resume() is True

    assert chat.store.snapshot()[-1].parts[0].text == "back again"
    assert chat.status_snapshot().current_phase == ChatStatus.IDLE_WAITING_FOR_USER


def test_job_completion_is_added_when_idle(make_chat):
    chat = make_chat(FakeClient())
    job = JobInfo(job_id="j1", tool_name="echo", status=JobStatus.COMPLETED, result="done")

    assert chat.notify_job_completion(job) is True

    part = chat.store.snapshot()[-1].parts[0]
    assert part.name == "async_job_result"
    assert part.payload["output"]["job_id"] == "j1"
    assert part.payload["output"]["status"] == "COMPLETED"


class AnsweringPrompt:
    """Stands in for rich's Prompt: replays answers and records offered defaults."""

    answers: list = []
    defaults: list = []

    @classmethod
    def ask(cls, prompt, choices=None, default=None, console=None):
        cls.defaults.append(default)
        return cls.answers.pop(0) if cls.answers else default


def test_dialog_defaults_follow_remembered_answers(make_chat, registry, monkeypatch):
    monkeypatch.setattr("colloquy.tools.prompter.Prompt", AnsweringPrompt)
    AnsweringPrompt.answers = ["v", ""]
    AnsweringPrompt.defaults = []
    preferences = ApprovalPreferences()
    prompter = ConsolePrompter(Console(file=io.StringIO()), preferences)
    client = FakeClient(
        _reply(ToolCallPart(name="echo", args={"text": "one"})),
        _reply(ToolCallPart(name="echo", args={"text": "two"})),
    )
    chat = make_chat(client, prompter=prompter, preferences=preferences)

    chat.send_text("first")
    assert chat.orchestrator.preferences.get("echo") == Decision.NEVER

    chat.send_text("second")

    assert AnsweringPrompt.defaults[0] == "y"
    assert AnsweringPrompt.defaults[2] == "v"
    assert registry.invocations == []
