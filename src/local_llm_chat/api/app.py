"""
FastAPI Relay Module

Relays chat requests from the interactive client to an Ollama-compatible
inference server, either as one JSON answer or as a forwarded stream of
newline-delimited JSON records.

Key Features:
- Per-request inference clients scoped to the caller's server URL and key
- Verbatim record forwarding for streaming chat
- Structured errors for failures before the first streamed byte
- Structured logging, Prometheus metrics, CORS and OpenTelemetry support
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Mapping, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import ValidationError
from structlog import get_logger

from ..config import Config, get_config
from ..domain.errors import UpstreamError
from ..domain.models import GenerationSettings, merge_settings
from ..services.inference import ChatStream, InferenceClient
from .schemas import (
    ChatRequest,
    ChatResponse,
    ConfigResponse,
    HealthResponse,
    ModelsResponse,
    OpenAIModel,
    OpenAIModelList,
)

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total upstream errors", registry=CUSTOM_REGISTRY)
STREAMED_RECORDS = Counter(
    "streamed_records_total", "Stream records forwarded to clients", registry=CUSTOM_REGISTRY
)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

logger = get_logger()

ClientFactory = Callable[[str, str], InferenceClient]


def get_client_factory() -> ClientFactory:
    """Returns a factory building one inference client per request"""
    config = get_config()

    def factory(api_url: str, api_key: str = "") -> InferenceClient:
        return InferenceClient(
            api_url,
            api_key,
            timeout=config.timeout,
            stream_timeout=config.stream_timeout,
        )

    return factory


def _same_server(url: str, other: str) -> bool:
    return url.rstrip("/") == other.rstrip("/")


def resolve_settings(overrides: Optional[Mapping[str, Any]], config: Config) -> GenerationSettings:
    """Merges request settings over the configured defaults.

    The configured API key is only ever sent to the configured server; a
    caller naming another server must bring its own key.
    """
    settings = merge_settings(overrides, base=GenerationSettings(api_url=config.api_url))
    if not settings.api_key and _same_server(settings.api_url, config.api_url):
        settings = settings.model_copy(update={"api_key": config.api_key})
    return settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Logs startup and probes the default inference server"""
    config = get_config()
    logger.info("application_startup", api_url=config.api_url, api_key_configured=bool(config.api_key))
    async with get_client_factory()(config.api_url, config.api_key) as client:
        if await client.check_health():
            logger.info("inference_server_reachable", api_url=config.api_url)
        else:
            logger.warning("inference_server_unreachable", api_url=config.api_url)

    yield

    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Local LLM Chat Relay",
    description="Relay between the chat client and an Ollama-compatible inference server",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests"""
    REQUESTS.inc()
    logger.info("request_started", method=request.method, path=request.url.path)
    try:
        return await call_next(request)
    except Exception as e:
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    """Maps inference failures to a status code and an {error, details} body"""
    ERRORS.inc()
    logger.error(
        "upstream_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.public_message, "details": exc.details},
    )


@app.exception_handler(ValidationError)
async def settings_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Rejects request settings that do not fit their declared types"""
    logger.warning("invalid_settings", path=request.url.path, errors=exc.error_count())
    return JSONResponse(
        status_code=422,
        content={
            "error": "Invalid settings",
            "details": exc.errors(include_url=False, include_context=False),
        },
    )


def _empty_message_response() -> JSONResponse:
    logger.warning("chat_rejected_empty_message")
    return JSONResponse(status_code=400, content={"error": "Message must not be empty"})


@app.get("/api/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness probe"""
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc).isoformat())


@app.get("/api/config", response_model=ConfigResponse)
async def default_config() -> ConfigResponse:
    """Exposes the default server URL without leaking the key"""
    config = get_config()
    return ConfigResponse(
        api_url=config.api_url, api_key="configured" if config.api_key else ""
    )


@app.get("/v1/models", response_model=OpenAIModelList)
async def list_models_openai(factory: ClientFactory = Depends(get_client_factory)):
    """Lists models of the default server in the OpenAI-compatible shape"""
    config = get_config()
    try:
        async with factory(config.api_url, config.api_key) as client:
            models = await client.list_models()
    except UpstreamError as e:
        ERRORS.inc()
        logger.error("list_models_openai_error", error=e.message)
        return JSONResponse(
            status_code=e.status_code,
            content={
                "error": {"message": "Failed to list models", "type": "invalid_request_error"}
            },
        )

    created = int(time.time())
    return OpenAIModelList(
        data=[OpenAIModel(id=model.name, created=created) for model in models]
    )


@app.get("/api/models", response_model=ModelsResponse)
async def list_models(
    api_url: Optional[str] = Query(default=None, alias="apiUrl"),
    api_key: str = Query(default="", alias="apiKey"),
    factory: ClientFactory = Depends(get_client_factory),
) -> ModelsResponse:
    """Lists models of the caller-selected server"""
    config = get_config()
    url = api_url or config.api_url
    if not api_key and _same_server(url, config.api_url):
        api_key = config.api_key
    async with factory(url, api_key) as client:
        models = await client.list_models()
    return ModelsResponse(models=models)


@app.post("/api/chat", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    factory: ClientFactory = Depends(get_client_factory),
):
    """Answers a chat message in one response"""
    if not body.message.strip():
        return _empty_message_response()

    settings = resolve_settings(body.settings, get_config())
    async with factory(settings.api_url, settings.api_key) as client:
        answer = await client.complete_chat(body.message, body.history, settings)

    logger.info("chat_answered", model=settings.model, response_preview=answer[:50])
    return ChatResponse(response=answer)


async def relay_records(stream: ChatStream, client: InferenceClient) -> AsyncIterator[bytes]:
    """Forward each record line verbatim, then release the upstream call.

    Errors raised after the first byte propagate so the server drops the
    connection without a terminating chunk.
    """
    forwarded = 0
    try:
        async for record in stream:
            forwarded += 1
            STREAMED_RECORDS.inc()
            yield record.raw
        logger.info("relay_stream_completed", model=stream.model, records=forwarded)
    except UpstreamError as e:
        ERRORS.inc()
        logger.error(
            "relay_stream_aborted", model=stream.model, records=forwarded, error=e.message
        )
        raise
    finally:
        try:
            await stream.aclose()
        finally:
            await client.aclose()


@app.post("/api/chat/stream")
async def chat_stream(
    body: ChatRequest,
    factory: ClientFactory = Depends(get_client_factory),
):
    """Streams a chat answer as newline-delimited JSON records"""
    if not body.message.strip():
        return _empty_message_response()

    settings = resolve_settings(body.settings, get_config())
    client = factory(settings.api_url, settings.api_key)
    stream = client.stream_chat(body.message, body.history, settings)
    try:
        await stream.open()
    except UpstreamError:
        await client.aclose()
        raise

    return StreamingResponse(
        relay_records(stream, client),
        media_type="text/plain; charset=utf-8",
        headers=STREAM_HEADERS,
    )


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
