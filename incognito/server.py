import logging
import os
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from incognito.errors import ClientDisconnected, ProxyError
from incognito.routes import register_proxy_routes, router
from incognito.state import ProxySettings, ProxyState
from incognito.tunnel import TunnelDispatchMiddleware, load_tunnel_app
from incognito.utils.exception_logging import (
    find_exception_in_exception_groups,
    log_exception_with_details,
)
from incognito.vars import OTLP_ENDPOINT, OTLP_HEADERS

logger = logging.getLogger("uvicorn.error")

_tracer_provider_configured = False


# ASGI send/receive events emitted once per body chunk
BODY_CHUNK_EVENTS = frozenset({"http.request", "http.response.body"})


class BodyChunkSpanFilter(SpanExporter):
    """
    Exporter wrapper that drops the per-chunk ASGI spans of proxied bodies.

    Streamed uploads and downloads both pass through in many small chunks, and
    the FastAPI instrumentation opens a span for each one.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    @staticmethod
    def is_body_chunk(span: ReadableSpan) -> bool:
        attributes = span.attributes or {}
        return attributes.get("asgi.event.type") in BODY_CHUNK_EVENTS

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        kept = [span for span in spans if not self.is_body_chunk(span)]
        if not kept:
            return SpanExportResult.SUCCESS
        return self.exporter.export(kept)

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing(app: FastAPI, service_name: str) -> None:
    """Export spans over OTLP when OTLP_ENDPOINT is set."""
    global _tracer_provider_configured
    if not OTLP_ENDPOINT:
        return
    if not _tracer_provider_configured:
        tracer_provider = TracerProvider(
            resource=Resource.create({"service.name": service_name})
        )
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=OTLP_HEADERS or None,
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(BodyChunkSpanFilter(otlp_exporter))
        )
        trace.set_tracer_provider(tracer_provider)
        _tracer_provider_configured = True

    FastAPIInstrumentor.instrument_app(app, excluded_urls="/metrics,/health")


def _not_found(request: Request) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": f"Endpoint {request.url.path} does not exist.",
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ClientDisconnected)
    async def client_disconnected_handler(request: Request, exc: ClientDisconnected):
        # Nobody is listening anymore; 499 only shows up in the access log
        return Response(status_code=499)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Validation Failed",
                "message": "Request body is missing or malformed.",
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _not_found(request)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        proxy_error = find_exception_in_exception_groups(exc, ProxyError)
        if proxy_error is not None:
            return JSONResponse(
                status_code=proxy_error.status_code, content=proxy_error.to_dict()
            )
        log_exception_with_details(
            logger, f"[Server] {request.method} {request.url.path}", exc
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )


def create_app(
    settings: Optional[ProxySettings] = None,
    state: Optional[ProxyState] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application.

    Routing priority: the tunneling application (outermost middleware), then
    health/API/metrics and proxy routes, then static files.
    """
    if state is None:
        state = ProxyState(settings or ProxySettings.from_env(), transport=transport)
    settings = state.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        state.begin_shutdown()
        await state.aclose()

    app = FastAPI(title=settings.service_name, lifespan=lifespan)
    app.state.proxy = state

    register_exception_handlers(app)
    app.include_router(router)
    register_proxy_routes(app, settings)

    instrumentator = Instrumentator(registry=state.metrics.registry)
    instrumentator.instrument(app).expose(app, include_in_schema=False)
    app_info = Info(
        "fastapi_app_info", "Application Info", registry=state.metrics.registry
    )
    app_info.info({"app_name": settings.service_name})

    configure_tracing(app, settings.service_name)

    if settings.static_dir and os.path.isdir(settings.static_dir):
        app.mount(
            "/", StaticFiles(directory=settings.static_dir, html=True), name="static"
        )
    else:
        logger.info(
            f"Static directory {settings.static_dir!r} not found, serving API only"
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        TunnelDispatchMiddleware,
        tunnel_app=load_tunnel_app(settings.tunnel_app),
        prefix=settings.bare_prefix,
    )
    return app
