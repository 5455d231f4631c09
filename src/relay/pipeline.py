import asyncio
import logging
import weakref
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from .converter import encode_sse, error_event, request_from_wire, response_events, response_to_wire
from .errors import RelayError, UpstreamProtocolError, UpstreamUnavailable
from .providers import BaseProvider
from .router import ModelEntry, Router
from .settings import Settings
from .types import CanonicalRequest, CanonicalResponse, StreamEvent

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def _backoff(attempt: int) -> float:
    return min(0.25 * attempt, 2.0)


def log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    provider: str | None,
    attempts: int,
    detail: str | None = None,
) -> None:
    provider_value = provider or "unknown"
    message = f"{event} req_id={req_id} provider={provider_value} attempts={attempts}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


@dataclass
class RequestTrace:
    """Per-request bookkeeping surfaced in logs and response headers."""

    req_id: str
    provider: str | None = None
    model: str | None = None
    attempts: int = 0


@dataclass(frozen=True)
class Target:
    request: CanonicalRequest
    provider: BaseProvider
    entry: ModelEntry


class RequestPipeline:
    """Inbound body -> canonical request -> route -> provider -> client shape.

    Only failures that happen before anything was sent to the client are
    retried, and only when they are ``UpstreamUnavailable``.
    """

    def __init__(self, router: Router, settings: Settings, *, sleep: Sleep = asyncio.sleep):
        self.router = router
        self.settings = settings
        self._sleep = sleep

    def prepare(self, body: Any, trace: RequestTrace) -> Target:
        request = request_from_wire(body)
        trace.model = request.model
        provider, entry = self.router.resolve(request.model)
        trace.provider = provider.name
        return Target(request=request, provider=provider, entry=entry)

    async def _retry_wait(self, trace: RequestTrace, exc: RelayError) -> None:
        log_request_event(
            logging.WARNING,
            event="messages retry",
            req_id=trace.req_id,
            provider=trace.provider,
            attempts=trace.attempts,
            detail=exc.message,
        )
        await self._sleep(_backoff(trace.attempts))

    async def invoke(self, target: Target, trace: RequestTrace) -> CanonicalResponse:
        while True:
            trace.attempts += 1
            try:
                return await target.provider.invoke(target.request, target.entry)
            except UpstreamUnavailable as exc:
                if trace.attempts >= self.settings.max_attempts:
                    raise
                await self._retry_wait(trace, exc)

    async def complete(self, target: Target, trace: RequestTrace) -> dict[str, Any]:
        response = await self.invoke(target, trace)
        log_request_event(
            logging.WARNING if trace.attempts > 1 else logging.INFO,
            event="messages success",
            req_id=trace.req_id,
            provider=trace.provider,
            attempts=trace.attempts,
        )
        return response_to_wire(response)

    async def _events(self, target: Target, trace: RequestTrace) -> AsyncIterator[StreamEvent]:
        if not target.entry.supports_streaming:
            response = await self.invoke(target, trace)
            for event in response_events(response):
                yield event
            return
        while True:
            trace.attempts += 1
            started = False
            try:
                upstream = target.provider.invoke_streaming(target.request, target.entry)
                async with aclosing(upstream):
                    async for event in upstream:
                        started = True
                        yield event
                return
            except UpstreamUnavailable as exc:
                if started or trace.attempts >= self.settings.max_attempts:
                    raise
                await self._retry_wait(trace, exc)

    async def stream(self, target: Target, trace: RequestTrace) -> "EventStream":
        """Start the upstream stream and return the client byte stream.

        Waits for the first upstream result so that a failure before any output
        is raised here (and can become a plain JSON error response) instead of
        being buried in an event stream.
        """
        queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=self.settings.stream_buffer)

        async def producer() -> RelayError | None:
            try:
                async with asyncio.timeout(self.settings.stream_timeout or None):
                    async with aclosing(self._events(target, trace)) as events:
                        async for event in events:
                            await queue.put(encode_sse(event))
            except RelayError as exc:
                return exc
            except TimeoutError:
                return UpstreamUnavailable("upstream stream exceeded the total deadline", timeout=True)
            except Exception as exc:
                logger.exception("stream producer failed req_id=%s", trace.req_id)
                return UpstreamProtocolError(str(exc) or exc.__class__.__name__)
            return None

        source = EventStream(queue, asyncio.create_task(producer(), name=f"relay-stream-{trace.req_id}"), trace)
        try:
            await source.prime()
        except BaseException:
            await source.aclose()
            raise
        return source

    async def probe(self, provider_name: str) -> bool:
        """Whether ``provider_name`` is configured and its base URL is reachable."""
        provider = self.router.providers.get(provider_name)
        if provider is None:
            return False
        return await provider.probe()


class EventStream:
    """SSE frames fed by a producer task through a bounded queue.

    Data frames wait for room in the queue; the outcome (clean end or error)
    is the producer's return value, so finishing never waits on the reader.
    ``aclose`` cancels the producer whether or not iteration ever began, and
    dropping an unclosed stream cancels it too.
    """

    def __init__(
        self,
        queue: "asyncio.Queue[bytes]",
        producer: "asyncio.Task[RelayError | None]",
        trace: RequestTrace,
    ):
        self._queue = queue
        self._producer = producer
        self._trace = trace
        self._pending: bytes | None = None
        self._finished = False
        finalizer = weakref.finalize(self, producer.cancel)
        finalizer.atexit = False

    @property
    def producer(self) -> "asyncio.Task[RelayError | None]":
        return self._producer

    def __aiter__(self) -> "EventStream":
        return self

    async def _next_frame(self) -> bytes | None:
        """Next queued frame, or None once the producer is done and the queue is drained."""
        while self._queue.empty():
            if self._producer.done():
                return None
            getter = asyncio.ensure_future(self._queue.get())
            try:
                await asyncio.wait((getter, self._producer), return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not getter.done():
                    getter.cancel()
            if getter.done():
                return getter.result()
        return self._queue.get_nowait()

    def _outcome(self) -> RelayError | None:
        if self._producer.cancelled():
            return None
        return self._producer.result()

    async def prime(self) -> None:
        """Wait for the first frame; raise the upstream error if there is none."""
        self._pending = await self._next_frame()
        if self._pending is None:
            error = self._outcome()
            if error is not None:
                raise error

    async def __anext__(self) -> bytes:
        if self._finished:
            raise StopAsyncIteration
        if self._pending is not None:
            frame, self._pending = self._pending, None
            return frame
        frame = await self._next_frame()
        if frame is not None:
            return frame
        self._finished = True
        error = self._outcome()
        if error is None:
            log_request_event(
                logging.INFO,
                event="messages stream success",
                req_id=self._trace.req_id,
                provider=self._trace.provider,
                attempts=self._trace.attempts,
            )
            raise StopAsyncIteration
        log_request_event(
            logging.ERROR,
            event="messages stream failure",
            req_id=self._trace.req_id,
            provider=self._trace.provider,
            attempts=self._trace.attempts,
            detail=error.message,
        )
        return encode_sse(error_event(error))

    async def aclose(self) -> None:
        """Stop reading upstream; safe to call more than once."""
        self._finished = True
        self._pending = None
        if not self._producer.done():
            self._producer.cancel()
        await asyncio.wait((self._producer,))
