"""Gemini-native translation for modelhub providers in ``gemini`` mode.

Turns become ``contents`` entries with ``user``/``model`` roles and typed
parts. A tool call's ``thoughtSignature`` travels on the same part as its
``functionCall``. It is read from there (or from the candidate) into
``ToolUseBlock.signature``, and written back to the same part when the call is
replayed as history. Losing or moving it breaks multi-turn tool use upstream.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping

from ..converter import map_stop_reason, new_message_id, new_tool_use_id
from ..errors import UpstreamProtocolError, UpstreamRejected
from ..reframer import GeminiReframer, gemini_signature
from ..router import ModelEntry
from ..schema import sanitize_tool
from ..types import (
    CanonicalRequest,
    CanonicalResponse,
    ContentBlock,
    ImageBlock,
    TextBlock,
    ToolUseBlock,
    Usage,
)
from .adapter import AdapterProvider


def _tool_names(request: CanonicalRequest) -> dict[str, str]:
    return {
        block.id: block.name
        for message in request.messages
        for block in message.content
        if isinstance(block, ToolUseBlock)
    }


def _part(block: ContentBlock, tool_names: Mapping[str, str]) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"text": block.text}
    if isinstance(block, ImageBlock):
        return {"inlineData": {"mimeType": block.media_type, "data": block.data}}
    if isinstance(block, ToolUseBlock):
        part: dict[str, Any] = {"functionCall": {"name": block.name, "args": dict(block.input)}}
        if block.signature is not None:
            part["thoughtSignature"] = block.signature
        return part
    key = "error" if block.is_error else "result"
    return {
        "functionResponse": {
            "name": tool_names.get(block.tool_use_id, block.tool_use_id),
            "response": {key: block.content},
        }
    }


def _contents(request: CanonicalRequest) -> list[dict[str, Any]]:
    tool_names = _tool_names(request)
    contents: list[dict[str, Any]] = []
    for message in request.messages:
        parts = [_part(block, tool_names) for block in message.content]
        if not parts:
            continue
        role = "model" if message.role == "assistant" else "user"
        # Gemini requires strictly alternating turns.
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})
    return contents


def _tool_config(choice: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if choice is None:
        return None
    kind = choice.get("type")
    if kind == "auto":
        return {"functionCallingConfig": {"mode": "AUTO"}}
    if kind == "none":
        return {"functionCallingConfig": {"mode": "NONE"}}
    if kind == "any":
        return {"functionCallingConfig": {"mode": "ANY"}}
    if kind == "tool" and choice.get("name"):
        return {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [choice["name"]]}}
    return None


def to_gemini_payload(request: CanonicalRequest, model_name: str) -> dict[str, Any]:
    generation_config: dict[str, Any] = {"maxOutputTokens": request.max_tokens}
    if request.temperature is not None:
        generation_config["temperature"] = request.temperature
    if request.top_p is not None:
        generation_config["topP"] = request.top_p
    if request.top_k is not None:
        generation_config["topK"] = request.top_k
    if request.stop_sequences:
        generation_config["stopSequences"] = list(request.stop_sequences)

    payload: dict[str, Any] = {
        "model": model_name,
        "contents": _contents(request),
        "generationConfig": generation_config,
    }
    if request.system:
        payload["systemInstruction"] = {"parts": [{"text": request.system}]}
    if request.tools:
        declarations = []
        for tool in request.tools:
            declaration: dict[str, Any] = {"name": tool.name, "parameters": dict(tool.input_schema)}
            if tool.description:
                declaration["description"] = tool.description
            declarations.append(declaration)
        payload["tools"] = [{"functionDeclarations": declarations}]
    tool_config = _tool_config(request.tool_choice)
    if tool_config is not None:
        payload["toolConfig"] = tool_config
    return payload


def gemini_to_canonical(data: Mapping[str, Any], model: str) -> CanonicalResponse:
    error = data.get("error")
    if isinstance(error, Mapping):
        code = error.get("code")
        raise UpstreamRejected(
            str(error.get("message") or "upstream error"),
            upstream_status=code if isinstance(code, int) else None,
        )
    candidates = data.get("candidates")
    if not candidates:
        feedback = data.get("promptFeedback") or {}
        reason = feedback.get("blockReason")
        if reason:
            raise UpstreamRejected(f"prompt blocked by upstream: {reason}", upstream_status=400)
        raise UpstreamProtocolError("gemini response has no candidates")
    candidate = candidates[0]
    if not isinstance(candidate, Mapping):
        raise UpstreamProtocolError("gemini candidate must be an object")

    content: list[ContentBlock] = []
    for part in (candidate.get("content") or {}).get("parts") or ():
        if not isinstance(part, Mapping):
            continue
        call = part.get("functionCall")
        if isinstance(call, Mapping):
            name = call.get("name")
            if not name:
                raise UpstreamProtocolError("functionCall part without a name")
            args = call.get("args") or {}
            if not isinstance(args, Mapping):
                raise UpstreamProtocolError(f"functionCall '{name}' args must be an object")
            content.append(
                ToolUseBlock(
                    id=call.get("id") or new_tool_use_id(),
                    name=name,
                    input=dict(args),
                    signature=gemini_signature(part, candidate),
                )
            )
            continue
        text = part.get("text")
        if isinstance(text, str) and text and not part.get("thought"):
            if content and isinstance(content[-1], TextBlock):
                content[-1] = TextBlock(text=content[-1].text + text)
            else:
                content.append(TextBlock(text=text))

    usage = data.get("usageMetadata") or {}
    has_tool_calls = any(isinstance(block, ToolUseBlock) for block in content)
    return CanonicalResponse(
        id=new_message_id(),
        model=model,
        content=tuple(content),
        stop_reason=map_stop_reason("gemini", candidate.get("finishReason"), has_tool_calls=has_tool_calls),
        usage=Usage(
            input_tokens=int(usage.get("promptTokenCount") or 0),
            output_tokens=int(usage.get("candidatesTokenCount") or 0),
        ),
    )


class GeminiAdapter(AdapterProvider):
    path = "/v2/crawl"
    reframer_class = GeminiReframer

    def derive_request(self, request: CanonicalRequest, entry: ModelEntry) -> CanonicalRequest:
        derived = super().derive_request(request, entry)
        if not derived.tools:
            return derived
        return replace(derived, tools=tuple(sanitize_tool(tool) for tool in derived.tools))

    def request_params(self, *, stream: bool) -> dict[str, str]:
        params = super().request_params(stream=stream)
        if stream:
            params["alt"] = "sse"
        return params

    def build_payload(self, request: CanonicalRequest, entry: ModelEntry) -> dict[str, Any]:
        return to_gemini_payload(request, entry.name)

    def parse_response(self, data: Mapping[str, Any], request: CanonicalRequest) -> CanonicalResponse:
        return gemini_to_canonical(data, request.model)
