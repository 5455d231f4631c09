import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Literal

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from .errors import MalformedRequest, RelayError, error_body
from .pipeline import RequestPipeline, RequestTrace, log_request_event
from .providers import build_providers
from .router import Router, load_config
from .settings import Settings

logger = logging.getLogger(__name__)


class ModelInfo(BaseModel):
    id: str
    type: Literal["model"] = "model"
    display_name: str
    owned_by: str
    aliases: list[str] | None = None


class ModelListResponse(BaseModel):
    object: Literal["list"] = "list"
    data: list[ModelInfo]
    has_more: bool = False


def _make_response_headers(trace: RequestTrace) -> dict[str, str]:
    return {
        "x-relay-request-id": trace.req_id,
        "x-relay-provider": trace.provider or "unknown",
        "x-relay-attempts": str(trace.attempts),
    }


def _require_api_key(req: Request, settings: Settings) -> None:
    if not settings.inbound_api_keys:
        return
    candidate = req.headers.get(settings.api_key_header)
    if candidate is None:
        auth_header = req.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            candidate = auth_header[7:]
    if candidate and candidate in settings.inbound_api_keys:
        return
    raise HTTPException(status_code=401, detail="missing or invalid api key")


def _error_response(exc: RelayError, trace: RequestTrace) -> JSONResponse:
    log_request_event(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        event="messages failure",
        req_id=trace.req_id,
        provider=trace.provider,
        attempts=trace.attempts,
        detail=exc.message,
    )
    return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=_make_response_headers(trace))


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the application; configuration is read when the lifespan starts."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = settings or Settings.from_env()
        table = load_config(active.config_dir)
        if not active.inbound_api_keys:
            logger.warning("inbound api key check disabled: RELAY_INBOUND_API_KEYS is not set")
        client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(active.request_timeout, connect=active.connect_timeout),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )
        router = Router(table, build_providers(table.providers, client, active))
        app.state.settings = active
        app.state.router = router
        app.state.pipeline = RequestPipeline(router, active)
        logger.info(
            "relay started providers=%s models=%d aliases=%d",
            ",".join(sorted(table.providers)),
            len(router.list_model_paths()),
            len(table.aliases),
        )
        try:
            yield
        finally:
            await client.aclose()

    app = FastAPI(title="llm-relay", lifespan=lifespan)

    @app.post("/v1/messages")
    async def messages(req: Request):
        trace = RequestTrace(req_id=str(uuid.uuid4()))
        try:
            _require_api_key(req, app.state.settings)
        except HTTPException as exc:
            body = error_body("authentication_error", str(exc.detail))
            return JSONResponse(body, status_code=exc.status_code, headers=_make_response_headers(trace))
        pipeline: RequestPipeline = app.state.pipeline
        try:
            try:
                body = await req.json()
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise MalformedRequest("request body is not valid JSON") from exc
            target = pipeline.prepare(body, trace)
            if target.request.stream:
                source = await pipeline.stream(target, trace)
                return StreamingResponse(
                    source,
                    media_type="text/event-stream",
                    headers={**_make_response_headers(trace), "Cache-Control": "no-cache"},
                    background=BackgroundTask(source.aclose),
                )
            payload = await pipeline.complete(target, trace)
        except RelayError as exc:
            return _error_response(exc, trace)
        return JSONResponse(payload, headers=_make_response_headers(trace))

    @app.get("/v1/models", response_model=ModelListResponse)
    async def list_models() -> ModelListResponse:
        router: Router = app.state.router
        models: list[ModelInfo] = []
        for name, provider in sorted(router.table.providers.items()):
            for key, entry in sorted(provider.models.items()):
                path = f"{name}/{key}"
                models.append(
                    ModelInfo(
                        id=path,
                        display_name=entry.name,
                        owned_by=name,
                        aliases=router.aliases_for(path) or None,
                    )
                )
        return ModelListResponse(data=models)

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        router: Router = app.state.router
        return {"status": "ok", "providers": sorted(router.table.providers)}

    @app.get("/healthz/ready")
    async def readiness() -> JSONResponse:
        router: Router = app.state.router
        pipeline: RequestPipeline = app.state.pipeline
        names = sorted(router.providers)
        results = await asyncio.gather(*(pipeline.probe(name) for name in names))
        reachable = dict(zip(names, results))
        ready = all(results)
        return JSONResponse(
            {
                "status": "ready" if ready else "degraded",
                "providers": reachable,
                "models": len(router.list_model_paths()),
            },
            status_code=200 if ready else 503,
        )

    return app


app = create_app()
