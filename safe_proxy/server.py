import logging
import os
from typing import Optional, Sequence

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
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
from prometheus_client import CollectorRegistry, Info
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import Scope

from safe_proxy import __version__
from safe_proxy.config import ProxyConfig, load_config
from safe_proxy.errors import register_exception_handlers
from safe_proxy.rate_limit import SlidingWindowRateLimiter
from safe_proxy.routes import router
from safe_proxy.vars import OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

logger = logging.getLogger("uvicorn.error")

# Per-chunk and per-frame ASGI spans of long-lived streams and tunnels
NOISY_ASGI_EVENTS = {"http.response.body", "websocket.send", "websocket.receive"}

_tracing_configured = False


class StaticUI(StaticFiles):
    """Static UI files. Only GET and HEAD are served; anything else is the JSON 404."""

    async def get_response(self, path: str, scope: Scope):
        if scope["method"] not in ("GET", "HEAD"):
            raise StarletteHTTPException(status_code=404)
        return await super().get_response(path, scope)


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body and frame spans.
    A relayed download or a busy tunnel would otherwise emit one span per chunk.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") in NOISY_ASGI_EVENTS
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing() -> None:
    """Install the SDK tracer provider once per process."""
    global _tracing_configured
    if _tracing_configured:
        return
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
        )
        trace.get_tracer_provider().add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )
        logger.info(f"[Server] Exporting traces to {OTLP_ENDPOINT}")
    _tracing_configured = True


def create_app(config: Optional[ProxyConfig] = None) -> FastAPI:
    """
    Build the proxy application. Without an explicit config the environment is
    read, and an empty allowlist raises ConfigurationError before anything binds.
    """
    if config is None:
        config = load_config()

    app = FastAPI(title=SERVICE_NAME, version=__version__, docs_url=None, redoc_url=None)
    app.state.proxy_config = config
    app.state.rate_limiter = SlidingWindowRateLimiter(
        window_seconds=config.rate_window_seconds, max_requests=config.rate_max
    )

    register_exception_handlers(app)

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(config.cors_origins),
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    registry = CollectorRegistry()
    Instrumentator(registry=registry).instrument(app).expose(app)
    app_info = Info("fastapi_app_info", "Application Info", registry=registry)
    app_info.info({"app_name": SERVICE_NAME, "version": __version__})

    configure_tracing()
    FastAPIInstrumentor.instrument_app(app, excluded_urls="healthz,metrics")

    app.include_router(router)

    if config.static_dir and os.path.isdir(config.static_dir):
        app.mount("/", StaticUI(directory=config.static_dir, html=True), name="ui")

    return app
