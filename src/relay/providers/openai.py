from __future__ import annotations

import json
from typing import Any, Mapping

from ..converter import map_stop_reason, new_message_id, new_tool_use_id
from ..errors import UpstreamProtocolError
from ..reframer import ChatCompletionsReframer
from ..router import ModelEntry
from ..types import (
    CanonicalRequest,
    CanonicalResponse,
    ContentBlock,
    ImageBlock,
    Message,
    TextBlock,
    Tool,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from . import BaseProvider


def tool_choice_to_openai(choice: Mapping[str, Any] | None) -> str | dict[str, Any] | None:
    if choice is None:
        return None
    kind = choice.get("type")
    if kind == "auto":
        return "auto"
    if kind == "any":
        return "required"
    if kind == "none":
        return "none"
    if kind == "tool" and choice.get("name"):
        return {"type": "function", "function": {"name": choice["name"]}}
    return None


def tool_choice_from_openai(choice: Any) -> dict[str, Any] | None:
    if choice == "auto":
        return {"type": "auto"}
    if choice == "required":
        return {"type": "any"}
    if choice == "none":
        return {"type": "none"}
    if isinstance(choice, Mapping):
        function = choice.get("function")
        if isinstance(function, Mapping) and function.get("name"):
            return {"type": "tool", "name": function["name"]}
    return None


def _image_url(block: ImageBlock) -> str:
    return f"data:{block.media_type};base64,{block.data}"


def _user_content(blocks: list[ContentBlock]) -> str | list[dict[str, Any]]:
    if all(isinstance(block, TextBlock) for block in blocks):
        return "".join(block.text for block in blocks if isinstance(block, TextBlock))
    parts: list[dict[str, Any]] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            parts.append({"type": "text", "text": block.text})
        elif isinstance(block, ImageBlock):
            parts.append({"type": "image_url", "image_url": {"url": _image_url(block)}})
    return parts


def _chat_messages(request: CanonicalRequest) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if request.system:
        messages.append({"role": "system", "content": request.system})
    for message in request.messages:
        if message.role == "assistant":
            text = "".join(block.text for block in message.content if isinstance(block, TextBlock))
            tool_calls = [
                {
                    "id": block.id,
                    "type": "function",
                    "function": {"name": block.name, "arguments": json.dumps(dict(block.input))},
                }
                for block in message.content
                if isinstance(block, ToolUseBlock)
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            messages.append(entry)
            continue
        # Tool results become separate tool messages ahead of the user's own content.
        rest: list[ContentBlock] = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                messages.append({"role": "tool", "tool_call_id": block.tool_use_id, "content": block.content})
            else:
                rest.append(block)
        if rest:
            messages.append({"role": "user", "content": _user_content(rest)})
    return messages


def to_chat_payload(request: CanonicalRequest, model_name: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model_name,
        "messages": _chat_messages(request),
        "max_tokens": request.max_tokens,
        "stream": request.stream,
    }
    if request.stream:
        payload["stream_options"] = {"include_usage": True}
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.stop_sequences:
        payload["stop"] = list(request.stop_sequences)
    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": dict(tool.input_schema),
                },
            }
            for tool in request.tools
        ]
    tool_choice = tool_choice_to_openai(request.tool_choice)
    if tool_choice is not None:
        payload["tool_choice"] = tool_choice
    user_id = (request.metadata or {}).get("user_id")
    if isinstance(user_id, str) and user_id:
        payload["user"] = user_id
    return payload


def _parse_arguments(raw: Any, name: str) -> dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    if raw is None or raw == "":
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise UpstreamProtocolError(f"tool call '{name}' has invalid JSON arguments") from exc
    if not isinstance(parsed, dict):
        raise UpstreamProtocolError(f"tool call '{name}' arguments must be a JSON object")
    return parsed


def _user_blocks(content: Any) -> list[ContentBlock]:
    if isinstance(content, str):
        return [TextBlock(text=content)] if content else []
    blocks: list[ContentBlock] = []
    for part in content or ():
        if part.get("type") == "text":
            blocks.append(TextBlock(text=part.get("text", "")))
        elif part.get("type") == "image_url":
            url = (part.get("image_url") or {}).get("url", "")
            header, _, data = url.partition(",")
            media_type = header.removeprefix("data:").removesuffix(";base64")
            blocks.append(ImageBlock(media_type=media_type, data=data))
    return blocks


def from_chat_payload(payload: Mapping[str, Any]) -> CanonicalRequest:
    """Inverse of ``to_chat_payload`` for every field the chat shape carries."""
    system: str | None = None
    messages: list[Message] = []
    pending_results: list[ContentBlock] = []

    def flush_results() -> None:
        if pending_results:
            messages.append(Message(role="user", content=tuple(pending_results)))
            pending_results.clear()

    for raw in payload.get("messages") or ():
        role = raw.get("role")
        if role == "system":
            system = raw.get("content")
        elif role == "tool":
            pending_results.append(
                ToolResultBlock(tool_use_id=raw.get("tool_call_id", ""), content=raw.get("content") or "")
            )
        elif role == "user":
            blocks = pending_results + _user_blocks(raw.get("content"))
            pending_results.clear()
            messages.append(Message(role="user", content=tuple(blocks)))
        elif role == "assistant":
            flush_results()
            blocks = []
            if raw.get("content"):
                blocks.append(TextBlock(text=raw["content"]))
            for call in raw.get("tool_calls") or ():
                function = call.get("function") or {}
                name = function.get("name", "")
                blocks.append(ToolUseBlock(id=call.get("id", ""), name=name, input=_parse_arguments(function.get("arguments"), name)))
            messages.append(Message(role="assistant", content=tuple(blocks)))
    flush_results()

    tools = tuple(
        Tool(
            name=tool["function"]["name"],
            description=tool["function"].get("description") or None,
            input_schema=tool["function"].get("parameters") or {},
        )
        for tool in payload.get("tools") or ()
    )
    user = payload.get("user")
    return CanonicalRequest(
        model=payload["model"],
        messages=tuple(messages),
        system=system,
        max_tokens=payload["max_tokens"],
        temperature=payload.get("temperature"),
        top_p=payload.get("top_p"),
        stop_sequences=tuple(payload.get("stop") or ()),
        tools=tools,
        tool_choice=tool_choice_from_openai(payload.get("tool_choice")),
        stream=bool(payload.get("stream")),
        metadata={"user_id": user} if user else None,
    )


def chat_response_to_canonical(data: Mapping[str, Any], model: str) -> CanonicalResponse:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
        raise UpstreamProtocolError("chat completion response has no choices")
    choice = choices[0]
    message = choice.get("message") or {}
    content: list[ContentBlock] = []
    text = message.get("content")
    if isinstance(text, str) and text:
        content.append(TextBlock(text=text))
    for call in message.get("tool_calls") or ():
        function = call.get("function") or {}
        name = function.get("name")
        if not name:
            raise UpstreamProtocolError("tool call without a function name")
        content.append(
            ToolUseBlock(
                id=call.get("id") or new_tool_use_id(),
                name=name,
                input=_parse_arguments(function.get("arguments"), name),
            )
        )
    usage = data.get("usage") or {}
    has_tool_calls = any(isinstance(block, ToolUseBlock) for block in content)
    return CanonicalResponse(
        id=new_message_id(),
        model=model,
        content=tuple(content),
        stop_reason=map_stop_reason("chat", choice.get("finish_reason"), has_tool_calls=has_tool_calls),
        usage=Usage(
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
        ),
    )


class DirectProvider(BaseProvider):
    """OpenAI-compatible chat completions endpoint with bearer authentication."""

    reframer_class = ChatCompletionsReframer

    def endpoint(self) -> str:
        base = self.config.base_url
        if base.endswith("/chat/completions"):
            return base
        return f"{base}/chat/completions"

    def request_headers(self) -> dict[str, str]:
        headers = super().request_headers()
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        headers.update(self.config.headers)
        return headers

    def build_payload(self, request: CanonicalRequest, entry: ModelEntry) -> dict[str, Any]:
        return to_chat_payload(request, entry.name)

    def parse_response(self, data: Mapping[str, Any], request: CanonicalRequest) -> CanonicalResponse:
        return chat_response_to_canonical(data, request.model)
