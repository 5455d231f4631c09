"""Incremental translation of upstream SSE grammars into the Messages grammar.

Each in-flight stream owns one reframer. ``feed`` takes one decoded upstream
event and returns the client events it produces; ``end_of_stream`` is called
once the upstream body is exhausted. Content blocks are keyed by an
upstream-specific key and numbered sequentially for the client. Several blocks
may be open at once; any still open when the message finishes are closed in
index order before ``message_delta``.

Protocol failures (for example a tool-call argument buffer that is not a JSON
object) become a single ``error`` event and put the reframer in its terminal
state.
"""

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Hashable, Mapping

from .converter import map_stop_reason, new_message_id, new_tool_use_id, error_event
from .errors import RelayError, UpstreamProtocolError, UpstreamRejected
from .types import StopReason, StreamEvent, Usage

logger = logging.getLogger(__name__)


class ReframerState(enum.Enum):
    AWAITING_START = "awaiting_start"
    STREAMING = "streaming"
    AWAITING_FINAL = "awaiting_final"
    TERMINAL = "terminal"


@dataclass
class _BlockSlot:
    index: int
    kind: str
    tool_id: str | None = None
    name: str | None = None
    signature: str | None = None
    buffer: list[str] = field(default_factory=list)


class StreamReframer:
    vocabulary = "chat"

    def __init__(self, *, model: str, message_id: str | None = None):
        self.model = model
        self.message_id = message_id or new_message_id()
        self.state = ReframerState.AWAITING_START
        self.sequence = 0
        self._open: dict[Hashable, _BlockSlot] = {}
        self._next_index = 0
        self._input_tokens = 0
        self._output_tokens = 0
        self._raw_stop: str | None = None
        self._saw_tool_use = False

    @property
    def terminal(self) -> bool:
        return self.state is ReframerState.TERMINAL

    @property
    def usage(self) -> Usage:
        return Usage(input_tokens=self._input_tokens, output_tokens=self._output_tokens)

    # -- public driving interface -------------------------------------------------

    def feed(self, payload: Mapping[str, Any]) -> list[StreamEvent]:
        if self.terminal:
            raise UpstreamProtocolError("upstream event received after the stream finished")
        out: list[StreamEvent] = []
        try:
            self._consume(payload, out)
        except RelayError as exc:
            out.extend(self.fail(exc))
        return out

    def end_of_stream(self) -> list[StreamEvent]:
        if self.terminal:
            return []
        out: list[StreamEvent] = []
        try:
            self._on_end(out)
        except RelayError as exc:
            out.extend(self.fail(exc))
        return out

    def fail(self, exc: RelayError) -> list[StreamEvent]:
        if self.terminal:
            return []
        logger.warning("stream aborted message_id=%s seq=%d detail=%s", self.message_id, self.sequence, exc.message)
        self.state = ReframerState.TERMINAL
        self._open.clear()
        return [self._emit(error_event(exc))]

    # -- primitives ---------------------------------------------------------------

    def _emit(self, event: StreamEvent) -> StreamEvent:
        self.sequence += 1
        return event

    def _start(self, out: list[StreamEvent]) -> None:
        if self.state is not ReframerState.AWAITING_START:
            return
        self.state = ReframerState.STREAMING
        out.append(
            self._emit(
                StreamEvent(
                    "message_start",
                    {
                        "type": "message_start",
                        "message": {
                            "id": self.message_id,
                            "type": "message",
                            "role": "assistant",
                            "model": self.model,
                            "content": [],
                            "stop_reason": None,
                            "stop_sequence": None,
                            "usage": {"input_tokens": self._input_tokens, "output_tokens": 0},
                        },
                    },
                )
            )
        )

    def _open_text(self, key: Hashable, out: list[StreamEvent]) -> _BlockSlot:
        slot = self._open.get(key)
        if slot is not None:
            return slot
        self._start(out)
        slot = _BlockSlot(index=self._allocate_index(), kind="text")
        self._open[key] = slot
        out.append(
            self._emit(
                StreamEvent(
                    "content_block_start",
                    {"type": "content_block_start", "index": slot.index, "content_block": {"type": "text", "text": ""}},
                )
            )
        )
        return slot

    def _open_tool(
        self,
        key: Hashable,
        out: list[StreamEvent],
        *,
        tool_id: str | None,
        name: str | None,
        signature: str | None = None,
    ) -> _BlockSlot:
        if key in self._open:
            raise UpstreamProtocolError(f"tool call {key!r} started twice")
        if not name:
            raise UpstreamProtocolError("tool call started without a function name")
        self._start(out)
        slot = _BlockSlot(
            index=self._allocate_index(),
            kind="tool_use",
            tool_id=tool_id or new_tool_use_id(),
            name=name,
            signature=signature,
        )
        self._open[key] = slot
        self._saw_tool_use = True
        block: dict[str, Any] = {"type": "tool_use", "id": slot.tool_id, "name": name, "input": {}}
        if signature is not None:
            block["signature"] = signature
        out.append(
            self._emit(
                StreamEvent(
                    "content_block_start",
                    {"type": "content_block_start", "index": slot.index, "content_block": block},
                )
            )
        )
        return slot

    def _allocate_index(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index

    def _append_text(self, key: Hashable, text: str, out: list[StreamEvent]) -> None:
        if not text:
            return
        slot = self._open_text(key, out)
        out.append(
            self._emit(
                StreamEvent(
                    "content_block_delta",
                    {"type": "content_block_delta", "index": slot.index, "delta": {"type": "text_delta", "text": text}},
                )
            )
        )

    def _append_json(self, key: Hashable, fragment: str, out: list[StreamEvent]) -> None:
        if not fragment:
            return
        slot = self._open.get(key)
        if slot is None or slot.kind != "tool_use":
            raise UpstreamProtocolError(f"argument fragment for unknown tool call {key!r}")
        slot.buffer.append(fragment)
        out.append(
            self._emit(
                StreamEvent(
                    "content_block_delta",
                    {
                        "type": "content_block_delta",
                        "index": slot.index,
                        "delta": {"type": "input_json_delta", "partial_json": fragment},
                    },
                )
            )
        )

    def _close_block(self, key: Hashable, out: list[StreamEvent]) -> None:
        slot = self._open.pop(key, None)
        if slot is None:
            return
        if slot.kind == "tool_use":
            arguments = "".join(slot.buffer)
            if arguments.strip():
                try:
                    parsed = json.loads(arguments)
                except json.JSONDecodeError as exc:
                    raise UpstreamProtocolError(
                        f"tool call '{slot.name}' produced invalid JSON arguments: {exc.msg}"
                    ) from exc
                if not isinstance(parsed, dict):
                    raise UpstreamProtocolError(f"tool call '{slot.name}' arguments must be a JSON object")
        out.append(
            self._emit(StreamEvent("content_block_stop", {"type": "content_block_stop", "index": slot.index}))
        )

    def _close_all(self, out: list[StreamEvent]) -> None:
        for key, _slot in sorted(self._open.items(), key=lambda item: item[1].index):
            self._close_block(key, out)

    def _close_kind(self, kind: str, out: list[StreamEvent]) -> None:
        for key in [key for key, slot in self._open.items() if slot.kind == kind]:
            self._close_block(key, out)

    def _record_usage(self, *, input_tokens: Any = None, output_tokens: Any = None) -> None:
        if isinstance(input_tokens, int):
            self._input_tokens = input_tokens
        if isinstance(output_tokens, int):
            self._output_tokens = output_tokens

    def _finish(self, stop_reason: StopReason, out: list[StreamEvent]) -> None:
        self._start(out)
        self.state = ReframerState.AWAITING_FINAL
        self._close_all(out)
        out.append(
            self._emit(
                StreamEvent(
                    "message_delta",
                    {
                        "type": "message_delta",
                        "delta": {"stop_reason": stop_reason, "stop_sequence": None},
                        "usage": {"input_tokens": self._input_tokens, "output_tokens": self._output_tokens},
                    },
                )
            )
        )
        out.append(self._emit(StreamEvent("message_stop", {"type": "message_stop"})))
        self.state = ReframerState.TERMINAL

    def _finish_with_raw(self, out: list[StreamEvent]) -> None:
        self._finish(
            map_stop_reason(self.vocabulary, self._raw_stop, has_tool_calls=self._saw_tool_use),
            out,
        )

    # -- per-grammar hooks --------------------------------------------------------

    def _consume(self, payload: Mapping[str, Any], out: list[StreamEvent]) -> None:
        raise NotImplementedError

    def _on_end(self, out: list[StreamEvent]) -> None:
        if self.state is ReframerState.AWAITING_START:
            raise UpstreamProtocolError("upstream stream ended without any content")
        self._finish_with_raw(out)


class ChatCompletionsReframer(StreamReframer):
    """``chat.completion.chunk`` objects; the ``[DONE]`` sentinel is dropped by the SSE parser."""

    vocabulary = "chat"

    def _consume(self, payload: Mapping[str, Any], out: list[StreamEvent]) -> None:
        error = payload.get("error")
        if isinstance(error, Mapping):
            raise UpstreamRejected(str(error.get("message") or "upstream error"), upstream_status=None)
        self._start(out)
        usage = payload.get("usage")
        if isinstance(usage, Mapping):
            self._record_usage(
                input_tokens=usage.get("prompt_tokens"),
                output_tokens=usage.get("completion_tokens"),
            )
        for choice in payload.get("choices") or ():
            if not isinstance(choice, Mapping) or choice.get("index", 0) != 0:
                continue
            delta = choice.get("delta")
            if isinstance(delta, Mapping):
                self._consume_delta(delta, out)
            finish_reason = choice.get("finish_reason")
            if isinstance(finish_reason, str):
                self._raw_stop = finish_reason
                self.state = ReframerState.AWAITING_FINAL

    def _consume_delta(self, delta: Mapping[str, Any], out: list[StreamEvent]) -> None:
        content = delta.get("content")
        if isinstance(content, str) and content:
            self._append_text("text", content, out)
        for call in delta.get("tool_calls") or ():
            if not isinstance(call, Mapping):
                continue
            key = ("tool", call.get("index", 0))
            function = call.get("function") if isinstance(call.get("function"), Mapping) else {}
            if key not in self._open:
                self._close_kind("text", out)
                self._open_tool(key, out, tool_id=call.get("id"), name=function.get("name"))
            arguments = function.get("arguments")
            if isinstance(arguments, str):
                self._append_json(key, arguments, out)


class ResponsesReframer(StreamReframer):
    """Events of the ``/responses`` endpoint, keyed by ``output_index``."""

    vocabulary = "responses"

    def _consume(self, payload: Mapping[str, Any], out: list[StreamEvent]) -> None:
        kind = payload.get("type")
        if kind == "response.created":
            self._start(out)
        elif kind == "response.output_item.added":
            item = payload.get("item") or {}
            if item.get("type") == "function_call":
                self._open_tool(
                    ("item", payload.get("output_index", 0)),
                    out,
                    tool_id=item.get("call_id") or item.get("id"),
                    name=item.get("name"),
                )
        elif kind == "response.output_text.delta":
            delta = payload.get("delta")
            if isinstance(delta, str):
                self._append_text(("item", payload.get("output_index", 0)), delta, out)
        elif kind == "response.function_call_arguments.delta":
            delta = payload.get("delta")
            if isinstance(delta, str):
                self._append_json(("item", payload.get("output_index", 0)), delta, out)
        elif kind == "response.output_item.done":
            key = ("item", payload.get("output_index", 0))
            slot = self._open.get(key)
            item = payload.get("item") or {}
            if slot is not None and slot.kind == "tool_use" and not slot.buffer:
                arguments = item.get("arguments")
                if isinstance(arguments, str):
                    self._append_json(key, arguments, out)
            self._close_block(key, out)
        elif kind in {"response.completed", "response.done", "response.incomplete"}:
            response = payload.get("response") or {}
            usage = response.get("usage")
            if isinstance(usage, Mapping):
                self._record_usage(
                    input_tokens=usage.get("input_tokens"),
                    output_tokens=usage.get("output_tokens"),
                )
            self._raw_stop = responses_status(response)
            self._finish_with_raw(out)
        elif kind in {"response.failed", "error"}:
            response = payload.get("response") or {}
            error = response.get("error") or payload.get("error") or {}
            message = error.get("message") if isinstance(error, Mapping) else None
            raise UpstreamRejected(str(message or payload.get("message") or "upstream response failed"), upstream_status=None)

    def _on_end(self, out: list[StreamEvent]) -> None:
        raise UpstreamProtocolError("upstream stream ended before response.completed")


def responses_status(response: Mapping[str, Any]) -> str | None:
    status = response.get("status")
    details = response.get("incomplete_details")
    if status == "incomplete" and isinstance(details, Mapping):
        reason = details.get("reason")
        if isinstance(reason, str):
            return reason
    return status if isinstance(status, str) else None


def gemini_signature(*sources: Any) -> str | None:
    """First thought signature found on the given parts/candidates, in order."""
    for source in sources:
        if not isinstance(source, Mapping):
            continue
        for key in ("thoughtSignature", "thought_signature"):
            value = source.get(key)
            if isinstance(value, str) and value:
                return value
    return None


class GeminiReframer(StreamReframer):
    """``alt=sse`` chunks of ``generateContent`` responses.

    Function calls arrive whole in a single part, so each one is opened,
    filled with its serialized arguments and closed in the same step.
    """

    vocabulary = "gemini"

    def _consume(self, payload: Mapping[str, Any], out: list[StreamEvent]) -> None:
        error = payload.get("error")
        if isinstance(error, Mapping):
            code = error.get("code")
            raise UpstreamRejected(
                str(error.get("message") or "upstream error"),
                upstream_status=code if isinstance(code, int) else None,
            )
        usage = payload.get("usageMetadata")
        if isinstance(usage, Mapping):
            self._record_usage(
                input_tokens=usage.get("promptTokenCount"),
                output_tokens=usage.get("candidatesTokenCount"),
            )
        self._start(out)
        candidates = payload.get("candidates") or ()
        if not candidates:
            return
        candidate = candidates[0]
        if not isinstance(candidate, Mapping):
            raise UpstreamProtocolError("gemini candidate must be an object")
        content = candidate.get("content") or {}
        for part in content.get("parts") or ():
            if not isinstance(part, Mapping):
                continue
            call = part.get("functionCall")
            if isinstance(call, Mapping):
                self._close_kind("text", out)
                key = ("call", self._next_index)
                self._open_tool(
                    key,
                    out,
                    tool_id=call.get("id"),
                    name=call.get("name"),
                    signature=gemini_signature(part, candidate),
                )
                self._append_json(key, json.dumps(call.get("args") or {}, ensure_ascii=False), out)
                self._close_block(key, out)
                continue
            text = part.get("text")
            if isinstance(text, str) and not part.get("thought"):
                self._append_text("text", text, out)
        finish_reason = candidate.get("finishReason")
        if isinstance(finish_reason, str):
            self._raw_stop = finish_reason
            self.state = ReframerState.AWAITING_FINAL
