"""
FastAPI transport adapter for the flow engine.

Translates HTTP requests into session manager commands and engine errors into
HTTP status codes. Authentication happens upstream: the resolved permission set
arrives in the ``X-Permissions`` header.

Endpoints:
- POST   /sessions                                      open or resume a session
- POST   /sessions/{sid}/instances                      create an instance
- POST   /sessions/{sid}/instances/{iid}/events         apply an event
- PATCH  /sessions/{sid}/instances/{iid}/render-data    patch render data
- DELETE /sessions/{sid}/instances/{iid}                dismiss
- POST   /sessions/{sid}/sync                           reconnect sync
- GET    /instances/{iid}                               instance snapshot
- GET    /capabilities                                  registered capabilities
- GET    /health                                        component health and config hash
- GET    /metrics                                       Prometheus text format

Usage:
    $ uvicorn flowstate.api.server:app --host 0.0.0.0 --port 8000

    Create an order:
    $ curl -X POST http://localhost:8000/sessions/$SID/instances \
      -H 'X-Permissions: orders:write' -H 'Idempotency-Key: req-1' \
      -H 'Content-Type: application/json' \
      -d '{"capability_id":"commerce.place_order","entities":{"customer_id":"c1","sku":"sku-espresso"}}'
"""

import math
import time
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from ..config.container import Container, setup_container
from ..config.settings import get_settings
from ..core.collaborators import CallerContext
from ..core.errors import (
    ErrorCategory,
    FlowError,
    InstanceNotFound,
    InternalError,
    SessionNotFound,
    UnknownCapability,
)
from ..core.orchestrator import FlowOrchestrator, KnownInstance
from ..core.session import (
    Command,
    CreateCommand,
    DismissCommand,
    EventCommand,
    Outcome,
    PatchCommand,
    SessionManager,
)
from ..observability.logging import get_logger, set_instance_id, set_trace_id, setup_logging
from ..observability.tracing import get_tracing_manager

logger = get_logger(__name__)

_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.STATE: 409,
    ErrorCategory.PERMISSION: 403,
    ErrorCategory.EXTERNAL: 424,
    ErrorCategory.CONFLICT: 500,
    ErrorCategory.INTERNAL: 500,
    ErrorCategory.REGISTRY: 500,
}


def status_for(error: FlowError) -> int:
    if isinstance(error, (InstanceNotFound, SessionNotFound, UnknownCapability)):
        return 404
    return _STATUS_BY_CATEGORY[error.category]


# Request models


class OpenSessionRequest(BaseModel):
    session_id: str | None = Field(None, min_length=1, max_length=128)


class CreateInstanceRequest(BaseModel):
    capability_id: str = Field(..., min_length=1)
    entities: dict[str, Any] = Field(default_factory=dict)
    parent_instance_id: str | None = None


class EventRequest(BaseModel):
    event: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class PatchRequest(BaseModel):
    patch: dict[str, Any]


class KnownInstanceModel(BaseModel):
    instance_id: str
    last_seen_seq: int = Field(0, ge=0)


class SyncRequest(BaseModel):
    known: list[KnownInstanceModel] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    version: str
    config_hash: str
    uptime_seconds: float
    components: dict[str, str]


# Helpers


def _permissions(request: Request) -> frozenset[str] | None:
    header = request.headers.get("x-permissions")
    if header is None:
        return None
    return frozenset(p.strip() for p in header.split(",") if p.strip())


def _sessions(request: Request) -> SessionManager:
    return request.app.state.container.get("session_manager")


def _orchestrator(request: Request) -> FlowOrchestrator:
    return request.app.state.container.get("orchestrator")


async def _submit(request: Request, session_id: str, command: Command) -> JSONResponse:
    sessions = _sessions(request)
    session = sessions.get_session(session_id)
    permissions = _permissions(request)
    if permissions is not None:
        session.caller = replace(session.caller, permissions=permissions)

    key = request.headers.get("idempotency-key") or uuid.uuid4().hex
    outcome: Outcome = await sessions.submit(session_id, key, command)
    result = outcome.unwrap()

    headers = {"Idempotency-Key": key}
    if outcome.replayed:
        headers["Idempotent-Replayed"] = "true"
    return JSONResponse(result.to_dict(), headers=headers)


# Application lifecycle


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the container, initialize tracing and tear both down on shutdown."""
    settings = app.state.container.settings
    setup_logging(settings.observability.log_level)
    logger.info("Starting flowstate API server...")

    tracing = get_tracing_manager()
    if settings.observability.enable_tracing:
        try:
            tracing.initialize(
                settings.observability.otlp_endpoint,
                service_name=settings.observability.service_name,
                service_version=settings.observability.service_version,
            )
        except Exception as e:
            # Serve without tracing rather than failing startup
            logger.error(f"Failed to initialize tracing: {e}")

    # Registry problems should stop startup, not the first request
    app.state.container.get("session_manager")
    app.state.startup_time = time.time()
    app.state.config_hash = settings.config_hash()
    logger.info("flowstate API server ready", config_hash=app.state.config_hash[:16])

    yield

    logger.info("Shutting down flowstate API server...")
    await app.state.container.cleanup()
    if tracing.is_initialized:
        tracing.shutdown()


def create_app(container: Container | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    container = container or setup_container()
    settings = container.settings

    app = FastAPI(
        title="flowstate",
        description="Flow orchestration engine",
        version="1.0.0",
        docs_url="/docs" if settings.api.enable_docs else None,
        redoc_url="/redoc" if settings.api.enable_docs else None,
        lifespan=lifespan,
    )
    app.state.container = container

    @app.middleware("http")
    async def trace_context(request: Request, call_next):
        trace_id = get_tracing_manager().extract_trace_id(request.headers) or uuid.uuid4().hex
        set_trace_id(trace_id)
        set_instance_id(None)
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(FlowError)
    async def flow_error_handler(request: Request, error: FlowError) -> JSONResponse:
        status = status_for(error)
        headers = {}
        if isinstance(error, InternalError):
            headers["Retry-After"] = str(math.ceil(error.retry_after))
        elif status >= 500:
            logger.error(f"{error.code} reached the transport: {error.user_message}")
            error = InternalError(retry_after=settings.engine.internal_retry_after)
            headers["Retry-After"] = str(math.ceil(error.retry_after))
        return JSONResponse({"error": error.to_dict()}, status_code=status, headers=headers)

    # Sessions and commands

    @app.post("/sessions")
    async def open_session(request: Request, body: OpenSessionRequest | None = None):
        permissions = _permissions(request) or frozenset()
        session = _sessions(request).open_session(
            body.session_id if body else None,
            caller=CallerContext(
                permissions=permissions, locale=request.headers.get("accept-language")
            ),
        )
        return session.to_dict()

    @app.post("/sessions/{session_id}/instances")
    async def create_instance(request: Request, session_id: str, body: CreateInstanceRequest):
        return await _submit(
            request,
            session_id,
            CreateCommand(body.capability_id, body.entities, body.parent_instance_id),
        )

    @app.post("/sessions/{session_id}/instances/{instance_id}/events")
    async def apply_event(request: Request, session_id: str, instance_id: str, body: EventRequest):
        return await _submit(
            request, session_id, EventCommand(instance_id, body.event, body.payload)
        )

    @app.patch("/sessions/{session_id}/instances/{instance_id}/render-data")
    async def patch_render_data(
        request: Request, session_id: str, instance_id: str, body: PatchRequest
    ):
        return await _submit(request, session_id, PatchCommand(instance_id, body.patch))

    @app.delete("/sessions/{session_id}/instances/{instance_id}")
    async def dismiss_instance(
        request: Request, session_id: str, instance_id: str, reason: str = "dismissed"
    ):
        return await _submit(request, session_id, DismissCommand(instance_id, reason))

    @app.post("/sessions/{session_id}/sync")
    async def sync_session(request: Request, session_id: str, body: SyncRequest):
        replies = await _sessions(request).sync(
            session_id, [KnownInstance(k.instance_id, k.last_seen_seq) for k in body.known]
        )
        return {
            "session_id": session_id,
            "instances": {
                instance_id: [m.to_dict() for m in messages]
                for instance_id, messages in replies.items()
            },
        }

    # Queries

    @app.get("/instances/{instance_id}")
    async def get_instance(request: Request, instance_id: str):
        view = await _orchestrator(request).get_instance(instance_id)
        data = view.to_dict()
        data["children"] = await _orchestrator(request).list_children(instance_id)
        return data

    @app.get("/capabilities")
    async def list_capabilities(request: Request):
        return [capability.describe() for capability in _orchestrator(request).registry]

    @app.get("/health", response_model=HealthResponse)
    async def health_check_endpoint(request: Request) -> HealthResponse:
        startup_time = getattr(app.state, "startup_time", time.time())
        components = {"config": "healthy"}

        health = await _orchestrator(request).health_check()
        components["store"] = "healthy" if health["store"] else "unhealthy"
        components["capabilities"] = "healthy" if health["capabilities"] else "empty"
        components["tracing"] = (
            "initialized" if get_tracing_manager().is_initialized else "not_initialized"
        )

        return HealthResponse(
            status="healthy" if health["overall"] and health["capabilities"] else "unhealthy",
            version="1.0.0",
            config_hash=getattr(app.state, "config_hash", "unknown"),
            uptime_seconds=max(0.0, time.time() - startup_time),
            components=components,
        )

    @app.get("/metrics")
    async def metrics_endpoint() -> Response:
        """Prometheus exposition of engine metrics."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app(setup_container(get_settings()))
