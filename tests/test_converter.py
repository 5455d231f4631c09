import json

import pytest

from src.relay.converter import (
    encode_sse,
    error_event,
    map_stop_reason,
    request_from_wire,
    request_to_wire,
    response_events,
    response_to_wire,
)
from src.relay.errors import MalformedRequest, UpstreamProtocolError
from src.relay.types import (
    CanonicalResponse,
    ImageBlock,
    StreamEvent,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)


def make_body(**overrides):
    body = {
        "model": "alias-sonnet",
        "max_tokens": 256,
        "messages": [{"role": "user", "content": "hello"}],
    }
    body.update(overrides)
    return body


def test_request_from_wire_minimal() -> None:
    request = request_from_wire(make_body())

    assert request.model == "alias-sonnet"
    assert request.max_tokens == 256
    assert request.messages[0].role == "user"
    assert request.messages[0].content == (TextBlock(text="hello"),)
    assert request.stream is False
    assert request.tools == ()


def test_request_from_wire_full_conversation() -> None:
    body = make_body(
        system=[{"type": "text", "text": "be brief"}, {"type": "text", "text": "be kind"}],
        temperature=0.3,
        top_p=0.9,
        top_k=40,
        stop_sequences=["END"],
        stream=True,
        metadata={"user_id": "u-1"},
        tool_choice={"type": "auto"},
        tools=[{"name": "lookup", "description": "Find", "input_schema": {"type": "object"}}],
        messages=[
            {"role": "user", "content": [{"type": "text", "text": "weather?"}]},
            {
                "role": "assistant",
                "content": [
                    {"type": "thinking", "thinking": "hmm", "signature": "x"},
                    {"type": "text", "text": "checking"},
                    {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {"q": "x"}, "signature": "sig"},
                ],
            },
            {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": "toolu_1",
                        "content": [{"type": "text", "text": "sunny"}, {"type": "text", "text": "warm"}],
                    },
                    {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "aGk="}},
                ],
            },
        ],
    )

    request = request_from_wire(body)

    assert request.system == "be brief\nbe kind"
    assert (request.temperature, request.top_p, request.top_k) == (0.3, 0.9, 40)
    assert request.stop_sequences == ("END",)
    assert request.stream is True
    assert request.metadata == {"user_id": "u-1"}
    assert request.tools[0].name == "lookup"
    assert request.messages[1].content == (
        TextBlock(text="checking"),
        ToolUseBlock(id="toolu_1", name="lookup", input={"q": "x"}, signature="sig"),
    )
    assert request.messages[2].content == (
        ToolResultBlock(tool_use_id="toolu_1", content="sunny\nwarm"),
        ImageBlock(media_type="image/png", data="aGk="),
    )


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_tokens": None},
        {"max_tokens": 0},
        {"model": "   "},
        {"messages": []},
        {"temperature": 3},
        {"top_p": 1.5},
        {"messages": [{"role": "system", "content": "nope"}]},
        {"messages": [{"role": "user", "content": [{"type": "tool_use", "id": "t", "name": "n", "input": {}}]}]},
        {"messages": [{"role": "assistant", "content": [{"type": "tool_result", "tool_use_id": "t"}]}]},
        {"messages": [{"role": "user", "content": [{"type": "document", "source": {}}]}]},
        {"messages": [{"role": "user", "content": [{"type": "image", "source": {"type": "url", "url": "x"}}]}]},
        {"tools": [{"description": "missing name"}]},
    ],
)
def test_request_from_wire_rejects_invalid_bodies(overrides) -> None:
    body = make_body(**overrides)
    if body.get("max_tokens") is None:
        body.pop("max_tokens")

    with pytest.raises(MalformedRequest) as excinfo:
        request_from_wire(body)

    assert excinfo.value.status_code == 400
    assert excinfo.value.error_type == "invalid_request_error"


def test_request_from_wire_rejects_non_object() -> None:
    with pytest.raises(MalformedRequest):
        request_from_wire(["not", "an", "object"])


def test_validation_message_names_the_field() -> None:
    with pytest.raises(MalformedRequest) as excinfo:
        request_from_wire(make_body(max_tokens=-5))

    assert "max_tokens" in excinfo.value.message


def test_request_to_wire_round_trips_through_request_from_wire() -> None:
    body = make_body(
        system="sys",
        temperature=0.5,
        stop_sequences=["x"],
        tools=[{"name": "lookup", "input_schema": {"type": "object", "properties": {}}}],
        messages=[
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": [{"type": "tool_use", "id": "t1", "name": "lookup", "input": {"a": 1}}]},
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "r", "is_error": True}]},
        ],
    )
    request = request_from_wire(body)

    assert request_from_wire(request_to_wire(request)) == request


def test_response_to_wire_includes_signature() -> None:
    response = CanonicalResponse(
        id="msg_1",
        model="alias-sonnet",
        content=(TextBlock(text="hi"), ToolUseBlock(id="toolu_1", name="lookup", input={"q": 1}, signature="sig==")),
        stop_reason="tool_use",
        usage=Usage(input_tokens=3, output_tokens=4),
    )

    wire = response_to_wire(response)

    assert wire["type"] == "message"
    assert wire["role"] == "assistant"
    assert wire["model"] == "alias-sonnet"
    assert wire["stop_reason"] == "tool_use"
    assert wire["content"][1] == {
        "type": "tool_use",
        "id": "toolu_1",
        "name": "lookup",
        "input": {"q": 1},
        "signature": "sig==",
    }
    assert wire["usage"] == {"input_tokens": 3, "output_tokens": 4}


@pytest.mark.parametrize(
    "vocabulary,raw,has_tools,expected",
    [
        ("chat", "stop", False, "end_turn"),
        ("chat", "length", False, "max_tokens"),
        ("chat", "tool_calls", True, "tool_use"),
        ("chat", None, False, "end_turn"),
        ("responses", "completed", True, "tool_use"),
        ("responses", "max_output_tokens", False, "max_tokens"),
        ("gemini", "STOP", False, "end_turn"),
        ("gemini", "STOP", True, "tool_use"),
        ("gemini", "MAX_TOKENS", True, "max_tokens"),
        ("gemini", "SOMETHING_NEW", False, "end_turn"),
    ],
)
def test_map_stop_reason(vocabulary, raw, has_tools, expected) -> None:
    assert map_stop_reason(vocabulary, raw, has_tool_calls=has_tools) == expected


def test_encode_sse_frame_format() -> None:
    frame = encode_sse(StreamEvent("message_stop", {"type": "message_stop"}))

    assert frame == b'event: message_stop\ndata: {"type":"message_stop"}\n\n'


def test_error_event_uses_error_envelope() -> None:
    event = error_event(UpstreamProtocolError("bad json"))

    assert event.event == "error"
    assert event.data == {"type": "error", "error": {"type": "api_error", "message": "bad json"}}


def test_response_events_closes_every_block() -> None:
    response = CanonicalResponse(
        id="msg_1",
        model="m",
        content=(TextBlock(text="hi"), ToolUseBlock(id="toolu_1", name="lookup", input={"q": 1})),
        stop_reason="tool_use",
        usage=Usage(input_tokens=1, output_tokens=2),
    )

    events = list(response_events(response))
    names = [event.event for event in events]

    assert names[0] == "message_start"
    assert names[-2:] == ["message_delta", "message_stop"]
    starts = [event.data["index"] for event in events if event.event == "content_block_start"]
    stops = [event.data["index"] for event in events if event.event == "content_block_stop"]
    assert starts == stops == [0, 1]
    partial = [
        event.data["delta"]["partial_json"]
        for event in events
        if event.event == "content_block_delta" and event.data["delta"]["type"] == "input_json_delta"
    ]
    assert json.loads("".join(partial)) == {"q": 1}
    assert events[-2].data["delta"]["stop_reason"] == "tool_use"
    assert events[-2].data["usage"] == {"input_tokens": 1, "output_tokens": 2}


def test_response_events_numbers_only_emitted_blocks() -> None:
    response = CanonicalResponse(
        id="msg_1",
        model="m",
        content=(
            TextBlock(text="see"),
            ImageBlock(media_type="image/png", data="aGk="),
            ToolUseBlock(id="toolu_1", name="lookup", input={}),
        ),
        stop_reason="tool_use",
        usage=Usage(input_tokens=1, output_tokens=2),
    )

    events = list(response_events(response))

    starts = [event.data for event in events if event.event == "content_block_start"]
    assert [start["index"] for start in starts] == [0, 1]
    assert [start["content_block"]["type"] for start in starts] == ["text", "tool_use"]
