import json
import logging
from dataclasses import replace
from typing import Any, AsyncIterator, Mapping

import httpx

from ..errors import MalformedRequest, UpstreamProtocolError, from_httpx_error
from ..reframer import StreamReframer
from ..router import ModelEntry, ProviderConfig
from ..settings import Settings
from ..types import CanonicalRequest, CanonicalResponse, StreamEvent

logger = logging.getLogger(__name__)


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Decode ``data:`` frames into JSON objects.

    Frames are separated by blank lines and multi-line data is joined with
    newlines. ``[DONE]`` sentinels and comment lines are skipped; anything else
    that is not a JSON object is a protocol error.
    """
    buffer: list[str] = []

    def _decode() -> dict[str, Any] | None:
        data_text = "\n".join(buffer).strip()
        buffer.clear()
        if not data_text or data_text == "[DONE]":
            return None
        try:
            parsed = json.loads(data_text)
        except json.JSONDecodeError as exc:
            raise UpstreamProtocolError(f"upstream sent a non-JSON event: {data_text[:200]}") from exc
        if not isinstance(parsed, dict):
            raise UpstreamProtocolError("upstream event payload must be a JSON object")
        return parsed

    async for line in lines:
        if line is None:
            continue
        stripped = line.strip()
        if not stripped:
            if not buffer:
                continue
            parsed = _decode()
            if parsed is not None:
                yield parsed
            continue
        if stripped.startswith("data:"):
            buffer.append(stripped[5:].lstrip())
    if buffer:
        parsed = _decode()
        if parsed is not None:
            yield parsed


class BaseProvider:
    """One upstream. Subclasses supply the wire shape; this class does the I/O.

    A provider holds no per-request state: every call derives a new request
    from the canonical one and reads or streams exactly one upstream response.
    """

    reframer_class: type[StreamReframer] = StreamReframer

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient, settings: Settings):
        self.config = config
        self.client = client
        self.settings = settings

    @property
    def name(self) -> str:
        return self.config.name

    # -- wire shape hooks ---------------------------------------------------------

    def endpoint(self) -> str:
        raise NotImplementedError

    def request_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def request_params(self, *, stream: bool) -> dict[str, str]:
        return {}

    def build_payload(self, request: CanonicalRequest, entry: ModelEntry) -> dict[str, Any]:
        raise NotImplementedError

    def parse_response(self, data: Mapping[str, Any], request: CanonicalRequest) -> CanonicalResponse:
        raise NotImplementedError

    # -- shared -------------------------------------------------------------------

    def derive_request(self, request: CanonicalRequest, entry: ModelEntry) -> CanonicalRequest:
        if request.tools and not entry.supports_tools:
            raise MalformedRequest(f"model '{request.model}' does not support tools")
        max_tokens = request.max_tokens
        if entry.max_tokens is not None:
            max_tokens = min(max_tokens, entry.max_tokens)
        temperature = request.temperature if request.temperature is not None else entry.temperature
        return replace(request, max_tokens=max_tokens, temperature=temperature)

    def _timeout(self) -> httpx.Timeout:
        # For streams the read timeout bounds the gap between events; the
        # total deadline is enforced by the pipeline.
        return httpx.Timeout(self.settings.request_timeout, connect=self.settings.connect_timeout)

    def _log_payload(self, payload: Mapping[str, Any], *, stream: bool) -> None:
        if not self.settings.log_payloads:
            return
        logger.debug(
            "upstream request provider=%s url=%s stream=%s keys=%s",
            self.name,
            self.endpoint(),
            stream,
            sorted(payload),
        )

    async def invoke(self, request: CanonicalRequest, entry: ModelEntry) -> CanonicalResponse:
        derived = replace(self.derive_request(request, entry), stream=False)
        payload = self.build_payload(derived, entry)
        self._log_payload(payload, stream=False)
        try:
            r = await self.client.post(
                self.endpoint(),
                headers=self.request_headers(),
                params=self.request_params(stream=False),
                json=payload,
                timeout=self._timeout(),
            )
            r.raise_for_status()
        except httpx.HTTPError as exc:
            raise from_httpx_error(exc) from exc
        try:
            data = r.json()
        except ValueError as exc:
            raise UpstreamProtocolError(f"upstream returned a non-JSON body ({r.status_code})") from exc
        if not isinstance(data, dict):
            raise UpstreamProtocolError("upstream response must be a JSON object")
        return self.parse_response(data, derived)

    async def invoke_streaming(self, request: CanonicalRequest, entry: ModelEntry) -> AsyncIterator[StreamEvent]:
        derived = replace(self.derive_request(request, entry), stream=True)
        payload = self.build_payload(derived, entry)
        self._log_payload(payload, stream=True)
        reframer = self.reframer_class(model=request.model)
        try:
            async with self.client.stream(
                "POST",
                self.endpoint(),
                headers={**self.request_headers(), "Accept": "text/event-stream"},
                params=self.request_params(stream=True),
                json=payload,
                timeout=self._timeout(),
            ) as response:
                if response.is_error:
                    await response.aread()
                    response.raise_for_status()
                async for event_payload in iter_sse_events(response.aiter_lines()):
                    for event in reframer.feed(event_payload):
                        yield event
                    if reframer.terminal:
                        return
                for event in reframer.end_of_stream():
                    yield event
        except httpx.HTTPError as exc:
            raise from_httpx_error(exc) from exc

    async def probe(self) -> bool:
        """True when the upstream base URL answers at all (any HTTP status)."""
        try:
            await self.client.get(
                self.config.base_url,
                headers=self.request_headers(),
                params=self.request_params(stream=False),
                timeout=httpx.Timeout(self.settings.connect_timeout),
            )
        except httpx.HTTPError as exc:
            logger.info("probe failed provider=%s detail=%s", self.name, exc.__class__.__name__)
            return False
        return True


from .openai import DirectProvider  # noqa: E402
from .adapter import AdapterProvider, ResponsesAdapter  # noqa: E402
from .gemini import GeminiAdapter  # noqa: E402


def build_provider(config: ProviderConfig, client: httpx.AsyncClient, settings: Settings) -> BaseProvider:
    if config.kind == "openai":
        return DirectProvider(config, client, settings)
    if config.kind == "modelhub":
        if config.mode == "gemini":
            return GeminiAdapter(config, client, settings)
        return ResponsesAdapter(config, client, settings)
    raise ValueError(f"Unknown provider kind '{config.kind}' for provider '{config.name}'")


def build_providers(
    configs: Mapping[str, ProviderConfig], client: httpx.AsyncClient, settings: Settings
) -> dict[str, BaseProvider]:
    return {name: build_provider(config, client, settings) for name, config in configs.items()}


__all__ = [
    "AdapterProvider",
    "BaseProvider",
    "DirectProvider",
    "GeminiAdapter",
    "ResponsesAdapter",
    "build_provider",
    "build_providers",
    "iter_sse_events",
]
