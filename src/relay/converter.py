import json
import logging
import uuid
from typing import Any, Iterator, Literal, Mapping

from pydantic import ValidationError

from .errors import MalformedRequest, RelayError, error_body
from .types import (
    CanonicalRequest,
    CanonicalResponse,
    ContentBlock,
    ImageBlock,
    Message,
    MessagesRequest,
    StopReason,
    StreamEvent,
    TextBlock,
    Tool,
    ToolResultBlock,
    ToolUseBlock,
    WireContentBlock,
)

logger = logging.getLogger(__name__)

Vocabulary = Literal["chat", "responses", "gemini"]

# Reasoning blocks replayed by clients carry no meaning for the upstreams we
# translate to, so they are dropped from history instead of rejected.
_IGNORED_BLOCK_TYPES = frozenset({"thinking", "redacted_thinking"})


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def new_tool_use_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:24]}"


def _validation_message(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for item in content:
        if isinstance(item, Mapping) and item.get("type") == "text":
            text = item.get("text")
            if isinstance(text, str):
                parts.append(text)
    return "\n".join(parts)


def _block_from_wire(block: WireContentBlock, role: str) -> ContentBlock | None:
    kind = block.type
    if kind == "text":
        if block.text is None:
            raise MalformedRequest("text blocks require 'text'")
        return TextBlock(text=block.text)
    if kind == "tool_use":
        if role != "assistant":
            raise MalformedRequest("tool_use blocks are only valid in assistant messages")
        if not block.id or not block.name:
            raise MalformedRequest("tool_use blocks require 'id' and 'name'")
        return ToolUseBlock(
            id=block.id,
            name=block.name,
            input=dict(block.input or {}),
            signature=block.signature,
        )
    if kind == "tool_result":
        if role != "user":
            raise MalformedRequest("tool_result blocks are only valid in user messages")
        if not block.tool_use_id:
            raise MalformedRequest("tool_result blocks require 'tool_use_id'")
        return ToolResultBlock(
            tool_use_id=block.tool_use_id,
            content=_tool_result_text(block.content),
            is_error=bool(block.is_error),
        )
    if kind == "image":
        source = block.source or {}
        if source.get("type") != "base64":
            raise MalformedRequest("only base64 image sources are supported")
        media_type = source.get("media_type")
        data = source.get("data")
        if not isinstance(media_type, str) or not isinstance(data, str):
            raise MalformedRequest("image sources require 'media_type' and 'data'")
        return ImageBlock(media_type=media_type, data=data)
    if kind in _IGNORED_BLOCK_TYPES:
        logger.debug("dropping %s block from %s message", kind, role)
        return None
    raise MalformedRequest(f"unsupported content block type '{kind}'")


def _system_text(system: Any) -> str | None:
    if system is None:
        return None
    if isinstance(system, str):
        return system or None
    parts = [block.text for block in system if block.type == "text" and block.text]
    return "\n".join(parts) or None


def request_from_wire(body: Any) -> CanonicalRequest:
    """Validate a client request body and build the canonical request from it."""
    if not isinstance(body, Mapping):
        raise MalformedRequest("request body must be a JSON object")
    try:
        parsed = MessagesRequest.model_validate(body)
    except ValidationError as exc:
        raise MalformedRequest(_validation_message(exc)) from exc

    messages: list[Message] = []
    for wire_message in parsed.messages:
        if isinstance(wire_message.content, str):
            blocks: tuple[ContentBlock, ...] = (TextBlock(text=wire_message.content),)
        else:
            converted = (_block_from_wire(block, wire_message.role) for block in wire_message.content)
            blocks = tuple(block for block in converted if block is not None)
        messages.append(Message(role=wire_message.role, content=blocks))

    tools = tuple(
        Tool(name=tool.name, description=tool.description, input_schema=tool.input_schema)
        for tool in parsed.tools or ()
    )
    return CanonicalRequest(
        model=parsed.model,
        messages=tuple(messages),
        system=_system_text(parsed.system),
        max_tokens=parsed.max_tokens,
        temperature=parsed.temperature,
        top_p=parsed.top_p,
        top_k=parsed.top_k,
        stop_sequences=tuple(parsed.stop_sequences or ()),
        tools=tools,
        tool_choice=parsed.tool_choice,
        stream=bool(parsed.stream),
        metadata=parsed.metadata,
    )


def block_to_wire(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        payload: dict[str, Any] = {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": dict(block.input),
        }
        if block.signature is not None:
            payload["signature"] = block.signature
        return payload
    if isinstance(block, ToolResultBlock):
        payload = {"type": "tool_result", "tool_use_id": block.tool_use_id, "content": block.content}
        if block.is_error:
            payload["is_error"] = True
        return payload
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": block.media_type, "data": block.data},
    }


def request_to_wire(request: CanonicalRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": request.model,
        "max_tokens": request.max_tokens,
        "messages": [
            {"role": message.role, "content": [block_to_wire(block) for block in message.content]}
            for message in request.messages
        ],
    }
    if request.system is not None:
        payload["system"] = request.system
    for key in ("temperature", "top_p", "top_k"):
        value = getattr(request, key)
        if value is not None:
            payload[key] = value
    if request.stop_sequences:
        payload["stop_sequences"] = list(request.stop_sequences)
    if request.tools:
        payload["tools"] = [
            {
                "name": tool.name,
                **({"description": tool.description} if tool.description else {}),
                "input_schema": dict(tool.input_schema),
            }
            for tool in request.tools
        ]
    if request.tool_choice is not None:
        payload["tool_choice"] = dict(request.tool_choice)
    if request.metadata is not None:
        payload["metadata"] = dict(request.metadata)
    if request.stream:
        payload["stream"] = True
    return payload


def response_to_wire(response: CanonicalResponse) -> dict[str, Any]:
    return {
        "id": response.id,
        "type": "message",
        "role": "assistant",
        "model": response.model,
        "content": [block_to_wire(block) for block in response.content],
        "stop_reason": response.stop_reason,
        "stop_sequence": None,
        "usage": {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        },
    }


_STOP_REASONS: dict[str, dict[str, StopReason]] = {
    "chat": {
        "stop": "end_turn",
        "length": "max_tokens",
        "tool_calls": "tool_use",
        "function_call": "tool_use",
        "content_filter": "end_turn",
    },
    "responses": {
        "completed": "end_turn",
        "max_output_tokens": "max_tokens",
        "incomplete": "max_tokens",
        "content_filter": "end_turn",
    },
    "gemini": {
        "STOP": "end_turn",
        "MAX_TOKENS": "max_tokens",
        "SAFETY": "end_turn",
        "RECITATION": "end_turn",
        "OTHER": "end_turn",
    },
}


def map_stop_reason(vocabulary: Vocabulary, raw: str | None, *, has_tool_calls: bool = False) -> StopReason:
    """Fold an upstream terminal reason into end_turn, tool_use or max_tokens.

    A pending tool call wins over whatever the upstream reported, because the
    gemini and responses grammars both signal tool calls with a plain stop.
    """
    mapped = _STOP_REASONS[vocabulary].get(raw or "", "end_turn")
    if has_tool_calls and mapped == "end_turn":
        return "tool_use"
    return mapped


def encode_sse(event: StreamEvent) -> bytes:
    data = json.dumps(event.data, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event.event}\ndata: {data}\n\n".encode("utf-8")


def error_event(exc: RelayError) -> StreamEvent:
    return StreamEvent("error", error_body(exc.error_type, exc.message))


def response_events(response: CanonicalResponse) -> Iterator[StreamEvent]:
    """Replay a complete response in the streaming grammar, one delta per block."""
    message = response_to_wire(response)
    message["content"] = []
    message["stop_reason"] = None
    message["usage"] = {"input_tokens": response.usage.input_tokens, "output_tokens": 0}
    yield StreamEvent("message_start", {"type": "message_start", "message": message})
    index = 0
    for block in response.content:
        start = block_to_wire(block)
        if isinstance(block, TextBlock):
            start["text"] = ""
            delta = {"type": "text_delta", "text": block.text}
        elif isinstance(block, ToolUseBlock):
            start["input"] = {}
            delta = {"type": "input_json_delta", "partial_json": json.dumps(dict(block.input), ensure_ascii=False)}
        else:
            continue
        yield StreamEvent("content_block_start", {"type": "content_block_start", "index": index, "content_block": start})
        yield StreamEvent("content_block_delta", {"type": "content_block_delta", "index": index, "delta": delta})
        yield StreamEvent("content_block_stop", {"type": "content_block_stop", "index": index})
        index += 1
    yield StreamEvent(
        "message_delta",
        {
            "type": "message_delta",
            "delta": {"stop_reason": response.stop_reason, "stop_sequence": None},
            "usage": {"input_tokens": response.usage.input_tokens, "output_tokens": response.usage.output_tokens},
        },
    )
    yield StreamEvent("message_stop", {"type": "message_stop"})
