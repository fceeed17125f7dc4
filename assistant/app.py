"""FastAPI application -- thin HTTP adapter over Orchestrator."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from assistant.__version__ import __version__
from assistant.dependencies import get_orchestrator, get_runtime, shutdown_runtime
from assistant.errors import (
    AssistantError,
    InvalidRequest,
    ProviderFailure,
    SessionNotFound,
    StorageFailure,
    Timeout,
)
from assistant.runtime import Runtime
from assistant.schemas import (
    ChatRequest,
    ChatResponse,
    ConversationCreateResponse,
    ConversationResponse,
    ErrorResponse,
    TurnSchema,
    UsageInfo,
)
from assistant.services.orchestrator import Orchestrator

logger = logging.getLogger("assistant")

_STATUS = {
    InvalidRequest: 400,
    SessionNotFound: 404,
    ProviderFailure: 502,
    StorageFailure: 503,
    Timeout: 504,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan: no heavy work at startup. Runtime is built on first request."""
    ts = datetime.now(timezone.utc).isoformat()
    logger.info("[%s] Startup: begin", ts)
    yield
    shutdown_runtime()
    ts_end = datetime.now(timezone.utc).isoformat()
    logger.info("[%s] Shutdown: complete", ts_end)


app = FastAPI(title="Assistant", version=__version__, lifespan=lifespan)


@app.exception_handler(AssistantError)
async def assistant_error_handler(request: Request, exc: AssistantError):
    status = next((code for cls, code in _STATUS.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
    body = ErrorResponse(error=exc.kind, message=exc.message, details=exc.details)
    return JSONResponse(status_code=status, content=body.model_dump())


# ---- Health (no dependencies, always fast) ----

@app.get("/health")
def health():
    """Minimal health check. No deps, no provider call. Always returns immediately."""
    return {"ok": True}


# ---- Chat ----

@app.post("/api/chat", response_model=ChatResponse)
def chat(body: ChatRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Answer a message. Without conversation_id a new conversation is started."""
    conversation_id = body.conversation_id or orchestrator.start_session()
    result = orchestrator.handle(
        conversation_id,
        body.message,
        params=body.params,
        timeout=body.timeout_s,
    )
    completion = result.completion
    return ChatResponse(
        response=completion.text,
        conversation_id=result.session_id,
        trace_id=result.trace_id,
        model=completion.model,
        cached=result.cache_hit,
        shared=result.shared,
        persisted=result.persisted,
        warning=result.warning,
        duration_ms=result.duration_ms,
        route=result.route,
        anonymized_entities=result.anonymized_entities,
        usage=UsageInfo(
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            latency_ms=completion.latency_ms,
        ),
    )


# ---- Conversations ----

@app.post("/api/conversations", response_model=ConversationCreateResponse)
def create_conversation(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return {"conversation_id": orchestrator.start_session()}


@app.get("/api/conversations/{conversation_id}", response_model=ConversationResponse)
def get_conversation(conversation_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    turns = orchestrator.get_session(conversation_id)
    return ConversationResponse(
        conversation_id=conversation_id,
        turns=[
            TurnSchema(prompt=t.prompt, completion=t.completion, timestamp=t.timestamp, trace_id=t.trace_id)
            for t in turns
        ],
    )


# ---- Metrics ----

@app.get("/api/metrics")
def metrics(runtime: Runtime = Depends(get_runtime)):
    """Counters, histograms and cache occupancy for the observability collector."""
    stats = runtime.cache.stats()
    snapshot = runtime.metrics.snapshot()
    snapshot["cache"] = {
        "size": stats.size,
        "weight": stats.weight,
        "max_weight": runtime.cache.max_weight,
        "in_flight": stats.in_flight,
    }
    return snapshot


@app.get("/api/provider/status")
def provider_status(runtime: Runtime = Depends(get_runtime)):
    """Probe the configured LLM provider. Does not go through the cache."""
    provider = runtime.get_provider()
    ok, message = provider.test_connection()
    return {"provider": provider.name, "model": provider.model, "ok": ok, "message": message}
