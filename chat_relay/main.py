from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import ValidationError

from .config import Settings, settings as default_settings, setup_logging
from .credentials import CredentialSelector, InboundIdentity, TokenProvider, identity_from_authorization
from .errors import InvalidArgument, UpstreamFailure
from .http_client import close_http_client, get_http_client
from .relay import StreamRelay
from .schemas.chat import MessageRequest, StreamRequest
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
INVALID_JSON_BODY = "Invalid JSON body"


def _has_text(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def resolve_identity(request: Request) -> InboundIdentity:
    identity = identity_from_authorization(request.headers.get("authorization"))
    if identity is None and request.app.state.settings.require_auth:
        raise HTTPException(
            status_code=401,
            detail="Bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


router = APIRouter()


def _event_stream(request: Request, prompt: Optional[str], identity: InboundIdentity) -> StreamingResponse:
    relay: StreamRelay = request.app.state.relay
    return StreamingResponse(
        relay.events(prompt, identity, request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/chat/stream")
async def stream_get(
    request: Request,
    message: Optional[str] = Query(default=None),
    identity: InboundIdentity = Depends(resolve_identity),
):
    return _event_stream(request, message, identity)


async def _stream_body_prompt(request: Request) -> str:
    raw = await request.body()
    if not raw:
        return ""
    try:
        return StreamRequest.model_validate_json(raw).prompt()
    except ValidationError as e:
        # Reported on the stream as a missing message, never as a 422
        logger.info("POST /chat/stream unreadable body (%d errors)", e.error_count())
        return ""


@router.post("/chat/stream")
async def stream_post(
    request: Request,
    identity: InboundIdentity = Depends(resolve_identity),
):
    return _event_stream(request, await _stream_body_prompt(request), identity)


async def _body_prompt(request: Request) -> Optional[str]:
    raw = await request.body()
    if not raw:
        return None
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith("text/plain"):
        return raw.decode("utf-8", errors="replace")
    try:
        return MessageRequest.model_validate_json(raw).message
    except ValidationError:
        raise InvalidArgument(INVALID_JSON_BODY)


@router.post("/chat", response_class=PlainTextResponse)
@router.post("/chat/", response_class=PlainTextResponse, include_in_schema=False)
async def chat(
    request: Request,
    message: Optional[str] = Query(default=None),
    identity: InboundIdentity = Depends(resolve_identity),
):
    body_prompt = await _body_prompt(request)
    logger.info(
        "POST /chat message(param)=%r bodyLength=%s",
        message,
        len(body_prompt) if body_prompt is not None else None,
    )
    # A non-blank query parameter wins over the body
    prompt = message if _has_text(message) else body_prompt
    if not _has_text(prompt):
        raise InvalidArgument()
    credential = await request.app.state.selector.select(identity)
    text = await request.app.state.upstream.call(prompt, credential)
    return PlainTextResponse(text)


@router.get("/chat", response_class=PlainTextResponse)
@router.get("/chat/", response_class=PlainTextResponse, include_in_schema=False)
async def ping():
    logger.debug("GET /chat ping")
    return PlainTextResponse("OK")


async def _invalid_argument(request: Request, exc: InvalidArgument) -> PlainTextResponse:
    return PlainTextResponse(str(exc), status_code=400)


async def _upstream_failure(request: Request, exc: UpstreamFailure) -> PlainTextResponse:
    logger.error("%s %s failed upstream: %s", request.method, request.url.path, exc.message)
    return PlainTextResponse("Upstream service unavailable", status_code=502)


def create_app(
    settings: Optional[Settings] = None,
    upstream: Optional[UpstreamClient] = None,
    token_provider: Optional[TokenProvider] = None,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Initialize shared HTTP client eagerly to establish pools
        get_http_client()
        logger.info("Chat relay started, backend %s", settings.backend_base_url)
        yield
        await close_http_client()
        logger.info("Chat relay stopped")

    app = FastAPI(title="Chat Relay", lifespan=lifespan)

    provider = token_provider or TokenProvider(settings)
    app.state.settings = settings
    app.state.token_provider = provider
    app.state.selector = CredentialSelector(provider)
    app.state.upstream = upstream or UpstreamClient(settings)
    app.state.relay = StreamRelay(app.state.upstream, app.state.selector, timeout=settings.stream_timeout)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_and_timing(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request completed req_id=%s method=%s path=%s status=%s duration_sec=%.4f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            process_time,
        )
        return response

    app.add_exception_handler(InvalidArgument, _invalid_argument)
    app.add_exception_handler(UpstreamFailure, _upstream_failure)

    app.include_router(router, prefix=settings.api_prefix)

    @app.get("/")
    async def root():
        return {"ok": True, "backend": settings.backend_base_url}

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "ok"})

    return app


app = create_app()


def run() -> None:
    import uvicorn

    setup_logging(default_settings)
    uvicorn.run(
        app,
        host=default_settings.host,
        port=default_settings.port,
        timeout_graceful_shutdown=30,
        server_header=False,
    )


if __name__ == "__main__":
    run()
