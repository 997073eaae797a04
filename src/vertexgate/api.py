"""FastAPI application and routes for the vertexgate proxy."""

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
import uvicorn
from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from pydantic import ValidationError

from .auth import APIKeyMiddleware
from .backends import RetryPolicy, UpstreamClient, create_http_client
from .catalog import ModelCatalog
from .config import Settings, access_logger, configure_logging, load_settings
from .credentials import CredentialPool, ProjectProbe
from .errors import GatewayError, TranslationError, UpstreamError
from .models import ChatCompletionRequest
from .streaming import (
    SSE_HEADERS,
    ChunkEmitter,
    forward_lines,
    new_request_id,
    stream_gemini_events,
    stream_openai_events,
)
from .translation import (
    DEFAULT_SAFETY_SETTINGS,
    build_passthrough_request,
    from_gemini_response,
    process_openai_response,
    to_gemini_request,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


async def parse_chat_request(request: Request) -> ChatCompletionRequest:
    body = await request.body()
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise TranslationError("Invalid JSON")

    try:
        chat_request = ChatCompletionRequest.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise TranslationError(f"Invalid request: {fields}")

    if not chat_request.model:
        raise TranslationError("model is required")
    if not chat_request.messages:
        raise TranslationError("messages must not be empty")
    return chat_request


def upstream_response(response: httpx.Response) -> Response:
    return Response(
        content=response.content,
        status_code=response.status_code,
        media_type=response.headers.get("content-type", "application/json"),
    )


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "uptime": format_uptime(time.time() - request.app.state.started_at),
    }


@router.get("/")
async def root():
    return RedirectResponse("/health", status_code=302)


@router.get("/v1/models")
async def list_models(request: Request):
    return request.app.state.catalog.openai_listing()


@router.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    """
    Serve an OpenAI chat completion from the backend.

    ``native`` mode translates to and from generateContent; ``openai`` mode
    forwards to the OpenAI-compatible endpoint and only extracts reasoning.
    """
    chat_request = await parse_chat_request(request)
    state = request.app.state
    if state.settings.mode == "openai":
        return await _passthrough_completion(state, chat_request)
    return await _native_completion(state, chat_request)


async def _native_completion(state, chat_request: ChatCompletionRequest) -> Response:
    tag = state.settings.reasoning_tag
    body, model_id = to_gemini_request(chat_request, state.catalog, DEFAULT_SAFETY_SETTINGS)
    logger.info(
        f"ChatCompletions: model={chat_request.model} (vertex={model_id}), "
        f"stream={chat_request.stream}"
    )

    if chat_request.stream:
        response = await state.upstream.stream_generate_content(model_id, body)
        return StreamingResponse(
            stream_gemini_events(response, ChunkEmitter(chat_request.model), tag),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    data = await state.upstream.generate_content(model_id, body)
    result = from_gemini_response(data, chat_request.model, new_request_id(), tag)
    return JSONResponse(content=result.model_dump(exclude_none=True))


async def _passthrough_completion(state, chat_request: ChatCompletionRequest) -> Response:
    tag = state.settings.reasoning_tag
    model_id, alias = state.catalog.resolve(chat_request.model)
    payload = build_passthrough_request(chat_request, model_id, alias, tag)
    logger.info(
        f"ChatCompletions: model={chat_request.model} (vertex={payload['model']}), "
        f"stream={chat_request.stream}"
    )

    if chat_request.stream:
        response = await state.upstream.stream_chat_completions(payload)
        return StreamingResponse(
            stream_openai_events(response, ChunkEmitter(chat_request.model), tag),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    response = await state.upstream.chat_completions(payload)
    try:
        data = response.json()
    except ValueError:
        logger.warning("Passthrough response is not JSON, forwarding unchanged")
        return upstream_response(response)
    return JSONResponse(content=process_openai_response(data, tag))


@router.get("/gemini/v1beta/models")
async def gemini_models(request: Request):
    return request.app.state.catalog.gemini_listing()


@router.post("/gemini/v1beta/models/{model}:{action}")
async def gemini_generate(model: str, action: str, request: Request) -> Response:
    """Forward a native Gemini call, streaming verbatim for streamGenerateContent."""
    body = await request.body()
    logger.info(f"Gemini: model={model}, action={action}")
    upstream = request.app.state.upstream

    response = await upstream.forward_generate(model, action, body)
    if action == "streamGenerateContent":
        return StreamingResponse(
            forward_lines(response),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
    return upstream_response(response)


async def handle_upstream_error(request: Request, exc: UpstreamError) -> Response:
    logger.error(f"Upstream error on {request.url.path}: {exc.message}")
    if not exc.body:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    return Response(content=exc.body, status_code=exc.status_code, media_type=exc.content_type)


async def handle_gateway_error(request: Request, exc: GatewayError) -> Response:
    if exc.status_code >= 500:
        logger.error(f"Error handling {request.url.path}: {exc.message}")
    else:
        logger.warning(f"Rejected request to {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def log_access(request: Request, call_next):
    start = time.monotonic()
    response = await call_next(request)
    latency = time.monotonic() - start
    access_logger.info(
        f"{request.method} {request.url.path} {response.status_code} {latency:.3f}s"
    )
    return response


def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    catalog: Optional[ModelCatalog] = None,
) -> FastAPI:
    """
    Build the application and its shared state.

    Raises:
        ConfigurationError: if no upstream credentials are configured
    """
    if settings is None:
        settings = load_settings()
    if http_client is None:
        http_client = create_http_client(settings)

    probe = ProjectProbe(
        http_client,
        location=settings.location,
        message_patterns=settings.message_patterns,
        body_patterns=settings.body_patterns,
    )
    pool = CredentialPool(
        settings.api_keys,
        probe,
        round_robin=settings.round_robin,
        project_id=settings.project_id,
    )
    upstream = UpstreamClient(pool, http_client, RetryPolicy.from_settings(settings))
    if catalog is None:
        catalog = ModelCatalog.load(
            settings.models_file, settings.models_config_url, settings.timeout
        )

    logger.info(
        f"Configuration loaded: port={settings.port}, keys={pool.count()}, "
        f"roundrobin={settings.round_robin}, location={settings.location}, "
        f"mode={settings.mode}"
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await upstream.aclose()

    app = FastAPI(title="vertexgate", lifespan=lifespan)
    app.state.settings = settings
    app.state.pool = pool
    app.state.upstream = upstream
    app.state.catalog = catalog
    app.state.started_at = time.time()

    app.include_router(router)
    app.add_exception_handler(UpstreamError, handle_upstream_error)
    app.add_exception_handler(GatewayError, handle_gateway_error)

    # Last added runs first: CORS, then access log, then the key check.
    app.add_middleware(APIKeyMiddleware, api_key=settings.api_key)
    app.middleware("http")(log_access)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )
    return app


def main() -> None:
    settings = load_settings()
    configure_logging(settings)
    app = create_app(settings)
    logger.info(f"Server listening on port {settings.port}")
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
