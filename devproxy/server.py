import logging
from contextlib import asynccontextmanager
from typing import Iterable, Optional, Sequence

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
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

from devproxy import vars as settings
from devproxy.local.assets import LocalAssets
from devproxy.router.errors import ClientDisconnected, UpstreamUnavailable
from devproxy.router.forward import forward
from devproxy.router.rules import Forward, RouterHandle, configure, default_rules
from devproxy.utils.exception_logging import (
    find_exception_in_exception_groups,
    format_exception_message,
    log_exception_with_details,
)

logger = logging.getLogger("uvicorn.error")

# Everything a browser, API client or WebDAV client may send
PROXY_METHODS = [
    "GET",
    "HEAD",
    "POST",
    "PUT",
    "DELETE",
    "PATCH",
    "OPTIONS",
    "PROPFIND",
    "PROPPATCH",
    "MKCOL",
    "COPY",
    "MOVE",
    "LOCK",
    "UNLOCK",
    "REPORT",
    "SEARCH",
]

ROUTES_PATH = "/__devproxy/routes"


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out ASGI body spans from streamed responses.
    A proxied download otherwise produces one span per relayed chunk.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


_tracing_configured = False


def configure_tracing() -> None:
    global _tracing_configured
    if _tracing_configured:
        return
    _tracing_configured = True

    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": settings.SERVICE_NAME}))
    )
    if settings.OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.OTLP_ENDPOINT,
            headers=(
                settings.OTLP_HEADERS.split(",") if settings.OTLP_HEADERS else None
            ),
        )
        trace.get_tracer_provider().add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )


def build_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            settings.PROXY_TIMEOUT, connect=settings.PROXY_CONNECT_TIMEOUT
        ),
        # Redirects go back to the caller untouched
        follow_redirects=False,
    )


def create_app(
    rules: Optional[Iterable] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    pages_root: Optional[str] = None,
    public_dir: Optional[str] = None,
) -> FastAPI:
    """
    Build the dev server application.

    Raises:
        ConfigError: if any route rule is malformed
    """
    router_handle: RouterHandle = configure(
        default_rules() if rules is None else rules
    )
    assets = LocalAssets(
        settings.PAGES_ROOT if pages_root is None else pages_root,
        settings.PUBLIC_DIR if public_dir is None else public_dir,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_client = app.state.http_client is None
        if owns_client:
            app.state.http_client = build_http_client()
        for rule in router_handle.rules:
            logger.info(
                f"[Router] {rule.path_prefix} -> {rule.target_origin}"
                f" (change_origin={rule.change_origin})"
            )
        try:
            yield
        finally:
            if owns_client:
                await app.state.http_client.aclose()
                app.state.http_client = None

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.router_handle = router_handle
    app.state.assets = assets
    app.state.http_client = http_client

    configure_tracing()

    registry = CollectorRegistry()
    Instrumentator(registry=registry).instrument(app).expose(
        app, endpoint=settings.METRICS_PATH, include_in_schema=False
    )
    app_info = Info("devproxy_app_info", "Application Info", registry=registry)
    app_info.info({"app_name": settings.SERVICE_NAME})

    FastAPIInstrumentor.instrument_app(app)

    @app.exception_handler(UpstreamUnavailable)
    async def upstream_unavailable(request: Request, exc: UpstreamUnavailable):
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.exception_handler(ClientDisconnected)
    async def client_disconnected(request: Request, exc: ClientDisconnected):
        logger.info(f"[Proxy] {exc}")
        # Nobody is listening, 499 only shows up in metrics and access logs
        return Response(status_code=499)

    @app.get(ROUTES_PATH, include_in_schema=False)
    async def list_routes():
        return {"routes": router_handle.describe()}

    # Registered last so the endpoints above take precedence
    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def dispatch(request: Request, path: str):
        decision = router_handle.route(request.url.path)
        if isinstance(decision, Forward):
            client = request.app.state.http_client
            if client is None:
                # Without lifespan (e.g. bare TestClient) create one per app
                client = request.app.state.http_client = build_http_client()
            try:
                return await forward(request, decision, client)
            except (UpstreamUnavailable, ClientDisconnected):
                raise
            except Exception as e:
                disconnected = find_exception_in_exception_groups(e, ClientDisconnected)
                if disconnected is not None:
                    raise disconnected from e
                log_exception_with_details(
                    logger, f"[Proxy] Forwarding {request.url.path} failed:", e
                )
                raise UpstreamUnavailable(
                    decision.target_origin, format_exception_message(e)
                ) from e
        return await assets.serve(request)

    return app
