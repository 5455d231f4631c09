import json
from typing import Any, Iterable

import pytest

from src.relay.errors import UpstreamProtocolError
from src.relay.reframer import (
    ChatCompletionsReframer,
    GeminiReframer,
    ReframerState,
    ResponsesReframer,
    gemini_signature,
)
from src.relay.types import StreamEvent


def drive(reframer, payloads: Iterable[dict[str, Any]], *, end: bool = True) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    for payload in payloads:
        events.extend(reframer.feed(payload))
        if reframer.terminal:
            return events
    if end:
        events.extend(reframer.end_of_stream())
    return events


def names(events: list[StreamEvent]) -> list[str]:
    return [event.event for event in events]


def assert_well_formed(events: list[StreamEvent]) -> None:
    """Every started block stops before message_delta; indices are sequential."""
    open_blocks: set[int] = set()
    seen: list[int] = []
    assert events[0].event == "message_start"
    for event in events:
        if event.event == "content_block_start":
            index = event.data["index"]
            assert index == len(seen)
            seen.append(index)
            open_blocks.add(index)
        elif event.event in {"content_block_delta", "content_block_stop"}:
            assert event.data["index"] in open_blocks
            if event.event == "content_block_stop":
                open_blocks.remove(event.data["index"])
        elif event.event == "message_delta":
            assert not open_blocks
    assert events[-1].event == "message_stop"
    assert names(events).count("message_stop") == 1


def tool_arguments(events: list[StreamEvent], index: int) -> str:
    return "".join(
        event.data["delta"]["partial_json"]
        for event in events
        if event.event == "content_block_delta"
        and event.data["index"] == index
        and event.data["delta"]["type"] == "input_json_delta"
    )


def chat_chunk(delta: dict[str, Any] | None = None, finish_reason: str | None = None) -> dict[str, Any]:
    choice: dict[str, Any] = {"index": 0, "delta": delta or {}}
    if finish_reason is not None:
        choice["finish_reason"] = finish_reason
    return {"id": "chatcmpl-1", "object": "chat.completion.chunk", "choices": [choice]}


def tool_delta(arguments: str, *, call_id: str | None = None, name: str | None = None) -> dict[str, Any]:
    call: dict[str, Any] = {"index": 0, "function": {"arguments": arguments}}
    if call_id:
        call["id"] = call_id
        call["type"] = "function"
        call["function"]["name"] = name
    return {"tool_calls": [call]}


def test_chat_text_then_split_tool_arguments() -> None:
    reframer = ChatCompletionsReframer(model="alias-sonnet", message_id="msg_test")
    events = drive(
        reframer,
        [
            chat_chunk({"role": "assistant", "content": "Hi"}),
            chat_chunk(tool_delta('{"a":', call_id="call_1", name="lookup")),
            chat_chunk(tool_delta("1}")),
            chat_chunk(finish_reason="tool_calls"),
            {"id": "chatcmpl-1", "choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 7}},
        ],
    )

    assert names(events) == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_stop",
        "content_block_start",
        "content_block_delta",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    assert_well_formed(events)
    assert events[0].data["message"]["id"] == "msg_test"
    assert events[0].data["message"]["model"] == "alias-sonnet"
    assert events[4].data["content_block"] == {"type": "tool_use", "id": "call_1", "name": "lookup", "input": {}}
    assert json.loads(tool_arguments(events, 1)) == {"a": 1}
    assert events[-2].data["delta"]["stop_reason"] == "tool_use"
    assert events[-2].data["usage"] == {"input_tokens": 5, "output_tokens": 7}
    assert reframer.usage.input_tokens == 5
    assert reframer.terminal


def test_chat_truncated_arguments_emit_single_error() -> None:
    reframer = ChatCompletionsReframer(model="m")
    events = drive(
        reframer,
        [
            chat_chunk(tool_delta('{"a":', call_id="call_1", name="lookup")),
            chat_chunk(finish_reason="tool_calls"),
        ],
    )

    assert names(events)[-1] == "error"
    assert names(events).count("error") == 1
    assert "message_stop" not in names(events)
    assert events[-1].data["error"]["type"] == "api_error"
    assert "lookup" in events[-1].data["error"]["message"]
    assert reframer.state is ReframerState.TERMINAL


def test_chat_non_object_arguments_are_rejected() -> None:
    reframer = ChatCompletionsReframer(model="m")
    events = drive(
        reframer,
        [chat_chunk(tool_delta("[1, 2]", call_id="call_1", name="lookup")), chat_chunk(finish_reason="tool_calls")],
    )

    assert names(events)[-1] == "error"


def test_chat_plain_text_stop() -> None:
    events = drive(
        ChatCompletionsReframer(model="m"),
        [chat_chunk({"content": "Hel"}), chat_chunk({"content": "lo"}), chat_chunk(finish_reason="stop")],
        end=True,
    )

    assert_well_formed(events)
    texts = [event.data["delta"]["text"] for event in events if event.event == "content_block_delta"]
    assert texts == ["Hel", "lo"]
    assert events[-2].data["delta"]["stop_reason"] == "end_turn"


def test_chat_empty_stream_is_an_error() -> None:
    events = ChatCompletionsReframer(model="m").end_of_stream()

    assert names(events) == ["error"]


def test_feed_after_terminal_raises() -> None:
    reframer = ChatCompletionsReframer(model="m")
    drive(reframer, [chat_chunk({"content": "x"}), chat_chunk(finish_reason="stop")])

    with pytest.raises(UpstreamProtocolError):
        reframer.feed(chat_chunk({"content": "late"}))
    assert reframer.end_of_stream() == []


def test_sequence_counts_every_emitted_event() -> None:
    reframer = ChatCompletionsReframer(model="m")
    events = drive(reframer, [chat_chunk({"content": "x"}), chat_chunk(finish_reason="length")])

    assert reframer.sequence == len(events)
    assert events[-2].data["delta"]["stop_reason"] == "max_tokens"


def test_responses_text_and_function_call() -> None:
    reframer = ResponsesReframer(model="resp-five")
    events = drive(
        reframer,
        [
            {"type": "response.created", "response": {"id": "resp_1", "status": "in_progress"}},
            {"type": "response.output_item.added", "output_index": 0, "item": {"type": "message", "role": "assistant"}},
            {"type": "response.output_text.delta", "output_index": 0, "delta": "Let me check."},
            {"type": "response.output_item.done", "output_index": 0, "item": {"type": "message"}},
            {
                "type": "response.output_item.added",
                "output_index": 1,
                "item": {"type": "function_call", "call_id": "call_9", "name": "lookup", "arguments": ""},
            },
            {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": '{"city":'},
            {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": '"Oslo"}'},
            {
                "type": "response.output_item.done",
                "output_index": 1,
                "item": {"type": "function_call", "arguments": '{"city":"Oslo"}'},
            },
            {
                "type": "response.completed",
                "response": {"status": "completed", "usage": {"input_tokens": 11, "output_tokens": 13}},
            },
        ],
    )

    assert_well_formed(events)
    assert json.loads(tool_arguments(events, 1)) == {"city": "Oslo"}
    assert events[-2].data["delta"]["stop_reason"] == "tool_use"
    assert events[-2].data["usage"] == {"input_tokens": 11, "output_tokens": 13}


def test_responses_arguments_only_on_done() -> None:
    events = drive(
        ResponsesReframer(model="m"),
        [
            {"type": "response.created", "response": {}},
            {"type": "response.output_item.added", "output_index": 0, "item": {"type": "function_call", "name": "f"}},
            {"type": "response.output_item.done", "output_index": 0, "item": {"arguments": '{"x":2}'}},
            {"type": "response.completed", "response": {"status": "completed"}},
        ],
    )

    assert json.loads(tool_arguments(events, 0)) == {"x": 2}


def test_responses_incomplete_maps_to_max_tokens() -> None:
    events = drive(
        ResponsesReframer(model="m"),
        [
            {"type": "response.created", "response": {}},
            {"type": "response.output_text.delta", "output_index": 0, "delta": "partial"},
            {
                "type": "response.incomplete",
                "response": {"status": "incomplete", "incomplete_details": {"reason": "max_output_tokens"}},
            },
        ],
    )

    assert_well_formed(events)
    assert events[-2].data["delta"]["stop_reason"] == "max_tokens"


def test_responses_missing_completion_is_an_error() -> None:
    events = drive(
        ResponsesReframer(model="m"),
        [
            {"type": "response.created", "response": {}},
            {"type": "response.output_text.delta", "output_index": 0, "delta": "partial"},
        ],
    )

    assert names(events)[-1] == "error"
    assert "response.completed" in events[-1].data["error"]["message"]


def test_responses_failed_event_passes_message() -> None:
    events = drive(
        ResponsesReframer(model="m"),
        [
            {"type": "response.created", "response": {}},
            {"type": "response.failed", "response": {"error": {"message": "quota exhausted"}}},
        ],
    )

    assert names(events) == ["message_start", "error"]
    assert events[-1].data["error"]["message"] == "quota exhausted"


def gemini_chunk(parts: list[dict[str, Any]], finish_reason: str | None = None, **extra: Any) -> dict[str, Any]:
    candidate: dict[str, Any] = {"content": {"role": "model", "parts": parts}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return {"candidates": [candidate], **extra}


def test_gemini_function_call_carries_signature() -> None:
    reframer = GeminiReframer(model="alias-sonnet")
    events = drive(
        reframer,
        [
            gemini_chunk([{"text": "thinking...", "thought": True}, {"text": "Checking"}]),
            gemini_chunk(
                [{"functionCall": {"name": "lookup", "args": {"q": "x"}}, "thoughtSignature": "c2lnLTE="}],
                finish_reason="STOP",
                usageMetadata={"promptTokenCount": 4, "candidatesTokenCount": 9},
            ),
        ],
    )

    assert_well_formed(events)
    texts = [
        event.data["delta"]["text"]
        for event in events
        if event.event == "content_block_delta" and event.data["delta"]["type"] == "text_delta"
    ]
    assert texts == ["Checking"]
    tool_start = [event for event in events if event.event == "content_block_start"][1]
    assert tool_start.data["content_block"]["signature"] == "c2lnLTE="
    assert tool_start.data["content_block"]["name"] == "lookup"
    assert json.loads(tool_arguments(events, 1)) == {"q": "x"}
    assert events[-2].data["delta"]["stop_reason"] == "tool_use"
    assert events[-2].data["usage"] == {"input_tokens": 4, "output_tokens": 9}


def test_gemini_text_only_stop() -> None:
    events = drive(
        GeminiReframer(model="m"),
        [gemini_chunk([{"text": "Hello"}]), gemini_chunk([{"text": " world"}], finish_reason="STOP")],
    )

    assert_well_formed(events)
    assert events[-2].data["delta"]["stop_reason"] == "end_turn"


def test_gemini_error_payload_becomes_error_event() -> None:
    events = drive(GeminiReframer(model="m"), [{"error": {"code": 429, "message": "slow down"}}])

    assert names(events) == ["error"]
    assert events[0].data["error"] == {"type": "rate_limit_error", "message": "slow down"}


def test_gemini_signature_lookup_order() -> None:
    assert gemini_signature({"thoughtSignature": "a"}, {"thoughtSignature": "b"}) == "a"
    assert gemini_signature({}, {"thought_signature": "b"}) == "b"
    assert gemini_signature(None, {"thoughtSignature": ""}) is None
