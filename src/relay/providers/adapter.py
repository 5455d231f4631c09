from __future__ import annotations

import json
from typing import Any, Mapping

from ..converter import map_stop_reason, new_message_id, new_tool_use_id
from ..errors import UpstreamProtocolError
from ..reframer import ResponsesReframer, responses_status
from ..router import ModelEntry
from ..types import (
    CanonicalRequest,
    CanonicalResponse,
    ContentBlock,
    ImageBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from . import BaseProvider

# The gateway identifies itself to modelhub with these on every call.
FIXED_HEADERS: dict[str, str] = {
    "HTTP-Referer": "https://aiapiproxy.local",
    "X-Title": "AIAPIProxy",
}

# The responses endpoint rejects smaller output budgets.
MIN_OUTPUT_TOKENS = 16


class AdapterProvider(BaseProvider):
    """Base for modelhub upstreams: credential in a query parameter plus fixed headers."""

    path = ""

    def endpoint(self) -> str:
        return f"{self.config.base_url}{self.path}"

    def request_headers(self) -> dict[str, str]:
        headers = super().request_headers()
        headers.update(FIXED_HEADERS)
        headers.update(self.config.headers)
        return headers

    def request_params(self, *, stream: bool) -> dict[str, str]:
        if not self.config.api_key:
            return {}
        return {self.config.api_key_param: self.config.api_key}


def _input_items(request: CanonicalRequest) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for message in request.messages:
        parts: list[dict[str, Any]] = []

        def flush() -> None:
            if parts:
                items.append({"type": "message", "role": message.role, "content": list(parts)})
                parts.clear()

        for block in message.content:
            if isinstance(block, TextBlock):
                kind = "output_text" if message.role == "assistant" else "input_text"
                parts.append({"type": kind, "text": block.text})
            elif isinstance(block, ImageBlock):
                parts.append({"type": "input_image", "image_url": f"data:{block.media_type};base64,{block.data}"})
            elif isinstance(block, ToolUseBlock):
                flush()
                items.append(
                    {
                        "type": "function_call",
                        "call_id": block.id,
                        "name": block.name,
                        "arguments": json.dumps(dict(block.input)),
                    }
                )
            elif isinstance(block, ToolResultBlock):
                flush()
                items.append({"type": "function_call_output", "call_id": block.tool_use_id, "output": block.content})
        flush()
    return items


def _tool_choice(choice: Mapping[str, Any] | None) -> Any:
    if choice is None:
        return None
    kind = choice.get("type")
    if kind == "any":
        return "required"
    if kind in {"auto", "none"}:
        return kind
    if kind == "tool" and choice.get("name"):
        return {"type": "function", "name": choice["name"]}
    return None


def to_responses_payload(request: CanonicalRequest, model_name: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model_name,
        "input": _input_items(request),
        "max_output_tokens": max(request.max_tokens, MIN_OUTPUT_TOKENS),
        "stream": request.stream,
    }
    if request.system:
        payload["instructions"] = request.system
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "name": tool.name,
                "description": tool.description or "",
                "parameters": dict(tool.input_schema),
            }
            for tool in request.tools
        ]
    tool_choice = _tool_choice(request.tool_choice)
    if tool_choice is not None:
        payload["tool_choice"] = tool_choice
    user_id = (request.metadata or {}).get("user_id")
    if isinstance(user_id, str) and user_id:
        payload["user"] = user_id
    return payload


def responses_to_canonical(data: Mapping[str, Any], model: str) -> CanonicalResponse:
    output = data.get("output")
    if not isinstance(output, list):
        raise UpstreamProtocolError("responses payload has no output array")
    content: list[ContentBlock] = []
    for item in output:
        if not isinstance(item, Mapping):
            continue
        kind = item.get("type")
        if kind == "message":
            for part in item.get("content") or ():
                if part.get("type") == "output_text" and part.get("text"):
                    content.append(TextBlock(text=part["text"]))
        elif kind == "function_call":
            name = item.get("name")
            if not name:
                raise UpstreamProtocolError("function_call output without a name")
            raw_arguments = item.get("arguments") or "{}"
            try:
                arguments = json.loads(raw_arguments)
            except (TypeError, json.JSONDecodeError) as exc:
                raise UpstreamProtocolError(f"function_call '{name}' has invalid JSON arguments") from exc
            if not isinstance(arguments, dict):
                raise UpstreamProtocolError(f"function_call '{name}' arguments must be a JSON object")
            content.append(
                ToolUseBlock(id=item.get("call_id") or item.get("id") or new_tool_use_id(), name=name, input=arguments)
            )
    usage = data.get("usage") or {}
    has_tool_calls = any(isinstance(block, ToolUseBlock) for block in content)
    return CanonicalResponse(
        id=new_message_id(),
        model=model,
        content=tuple(content),
        stop_reason=map_stop_reason("responses", responses_status(data), has_tool_calls=has_tool_calls),
        usage=Usage(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        ),
    )


class ResponsesAdapter(AdapterProvider):
    path = "/responses"
    reframer_class = ResponsesReframer

    def build_payload(self, request: CanonicalRequest, entry: ModelEntry) -> dict[str, Any]:
        return to_responses_payload(request, entry.name)

    def parse_response(self, data: Mapping[str, Any], request: CanonicalRequest) -> CanonicalResponse:
        return responses_to_canonical(data, request.model)
