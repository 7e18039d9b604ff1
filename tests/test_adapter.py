import json

import httpx
import pytest

from colloquy.context.message import Message, Role
from colloquy.context.parts import BlobPart, TextPart, ToolCallPart, ToolResultPart
from colloquy.llm.adapter import NOT_EXECUTED, parse_choice, to_wire
from colloquy.llm.client import GenerationConfig, LLMClient, LLMError
from colloquy.status import ChatStatus


def _conversation():
    call = ToolCallPart(name="echo", args={"text": "hi"}, id="1")
    return [
        Message(
            sequence_id=1,
            role=Role.USER,
            parts=[TextPart(text="look"), BlobPart(mime_type="image/png", data=b"img")],
        ),
        Message(
            sequence_id=2,
            role=Role.MODEL,
            parts=[TextPart(text="secret plan", thought=True), TextPart(text="calling echo"), call],
        ),
        Message(sequence_id=3, role=Role.TOOL, parts=[ToolResultPart(name="echo", payload={"output": "hi"}, id="1")]),
    ]


def test_to_wire_shapes_roles():
    wire = to_wire(_conversation(), system_instruction="be nice")

    assert wire[0] == {"role": "system", "content": "be nice"}
    user = wire[1]
    assert user["role"] == "user"
    assert user["content"][0] == {"type": "text", "text": "look"}
    assert user["content"][1]["image_url"]["url"].startswith("data:image/png;base64,")

    assistant = wire[2]
    assert assistant["content"] == "calling echo"
    assert assistant["tool_calls"][0]["id"] == "1"
    assert json.loads(assistant["tool_calls"][0]["function"]["arguments"]) == {"text": "hi"}

    assert wire[3] == {"role": "tool", "tool_call_id": "1", "content": json.dumps({"output": "hi"})}


def test_parse_choice_reads_parts_and_usage():
    body = {
        "model": "m-2",
        "choices": [
            {
                "message": {
                    "content": "sure",
                    "reasoning_content": "hmm",
                    "tool_calls": [
                        {"id": "call_1", "function": {"name": "echo", "arguments": '{"text": "a"}'}},
                        {"id": "", "function": {"name": "peek", "arguments": "not json"}},
                    ],
                }
            }
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 4},
    }

    parts, usage, model = parse_choice(body)

    assert parts[0].thought and parts[0].text == "hmm"
    assert parts[1].text == "sure"
    assert parts[2].args == {"text": "a"}
    assert parts[2].id == "call_1"
    assert parts[3].id is None
    assert parts[3].args == {"raw": "not json"}
    assert usage.total_tokens == 14
    assert model == "m-2"


def _client(handler):
    return LLMClient(
        model="m-1",
        base_url="https://llm.test/v1",
        api_key="secret-key-12345",
        transport=httpx.MockTransport(handler),
    )


def test_client_sends_tools_and_parses_reply():
    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"message": {"content": "hello"}}]})

    with _client(handler) as client:
        response = client.send(
            [Message(sequence_id=1, role=Role.USER, parts=[TextPart(text="hi")])],
            GenerationConfig(system_instruction="sys", tools=[{"name": "echo", "description": "d"}]),
        )

    assert response.parts[0].text == "hello"
    assert response.model_id == "m-1"
    assert seen["tools"][0]["function"]["name"] == "echo"
    assert seen["messages"][0] == {"role": "system", "content": "sys"}
    assert client.api_key_suffix == "12345"


def test_client_maps_http_errors():
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    with _client(handler) as client:
        with pytest.raises(LLMError) as info:
            client.send([Message(sequence_id=1, role=Role.USER, parts=[TextPart(text="hi")])], GenerationConfig())

    assert info.value.status_code == 429
    assert info.value.code == "rate_limit"
    assert "slow down" in str(info.value)


def test_client_maps_connection_errors():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with _client(handler) as client:
        with pytest.raises(LLMError) as info:
            client.send([Message(sequence_id=1, role=Role.USER, parts=[TextPart(text="hi")])], GenerationConfig())

    assert info.value.code == "connection_error"


def test_to_wire_answers_calls_without_results():
    conversation = [
        Message(sequence_id=1, role=Role.USER, parts=[TextPart(text="go")]),
        Message(sequence_id=2, role=Role.MODEL, parts=[ToolCallPart(name="run_shell", args={}, id="1")]),
        Message(sequence_id=3, role=Role.USER, parts=[TextPart(text="[run_shell id=1] CANCELLED")], tool_feedback=True),
        Message(sequence_id=4, role=Role.USER, parts=[TextPart(text="try again")]),
    ]

    wire = to_wire(conversation)

    assert [m["role"] for m in wire] == ["user", "assistant", "tool", "user", "user"]
    assert wire[2] == {"role": "tool", "tool_call_id": "1", "content": NOT_EXECUTED}


def test_to_wire_closes_trailing_calls():
    conversation = [
        Message(sequence_id=1, role=Role.USER, parts=[TextPart(text="go")]),
        Message(
            sequence_id=2,
            role=Role.MODEL,
            parts=[ToolCallPart(name="echo", args={}, id="1"), ToolCallPart(name="echo", args={}, id="2")],
        ),
        Message(sequence_id=3, role=Role.TOOL, parts=[ToolResultPart(name="echo", payload={"output": "x"}, id="2")]),
    ]

    wire = to_wire(conversation)

    assert [(m["role"], m.get("tool_call_id")) for m in wire[2:]] == [("tool", "2"), ("tool", "1")]
    assert wire[-1]["content"] == NOT_EXECUTED


def test_client_rejects_non_json_success_body():
    def handler(request):
        return httpx.Response(200, text="<html>gateway</html>")

    with _client(handler) as client:
        with pytest.raises(LLMError) as info:
            client.send([Message(sequence_id=1, role=Role.USER, parts=[TextPart(text="hi")])], GenerationConfig())

    assert info.value.code == "invalid_response"
    assert info.value.status_code == 200
    assert "gateway" in str(info.value)


def test_chat_survives_a_garbled_response(make_chat):
    def handler(request):
        return httpx.Response(200, text="<html>gateway</html>")

    client = _client(handler)
    chat = make_chat(client)

    assert chat.send_text("hello") is False
    assert chat.status_snapshot().current_phase == ChatStatus.API_CALL_FAILED
    client.close()
