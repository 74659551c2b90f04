import logging
from typing import AsyncIterator, Dict

import anyio
import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse
from opentelemetry import trace
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from devproxy import vars as settings
from devproxy.router.errors import (
    ClientDisconnected,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from devproxy.router.rules import Forward
from devproxy.utils import origin_of
from devproxy.utils.exception_logging import log_exception_with_details
from devproxy.utils.traced_requests import traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def get_target_url(request: Request, target_origin: str) -> httpx.URL:
    """
    Build the upstream URL. The path and query string are taken from the raw
    request bytes so the backend sees them exactly as the caller sent them.
    """
    raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
    query_string = request.scope.get("query_string", b"")
    if query_string:
        raw_path = raw_path + b"?" + query_string
    return httpx.URL(target_origin).copy_with(raw_path=raw_path)


def prepare_headers(request: Request, decision: Forward) -> Dict[str, str]:
    """
    Prepare headers for forwarding to the backend.
    Removes hop-by-hop headers, adds X-Forwarded-* and applies the origin
    rewrite carried by the routing decision.
    """
    headers = {}

    for name, value in request.headers.items():
        name_lower = name.lower()
        if name_lower not in HOP_BY_HOP_HEADERS:
            headers[name_lower] = value

    client_ip = request.client.host if request.client else "unknown"
    existing_xff = headers.get("x-forwarded-for", "")
    headers["x-forwarded-for"] = f"{existing_xff}, {client_ip}".strip(", ")
    headers["x-forwarded-host"] = request.headers.get("host", "")
    headers["x-forwarded-proto"] = request.url.scheme

    rewritten = decision.rewritten_headers
    if "host" in rewritten:
        headers["host"] = rewritten["host"]
    # Origin is only rewritten when the caller sent one
    if "origin" in rewritten and "origin" in headers:
        headers["origin"] = rewritten["origin"]

    return headers


def rewrite_location_header(location: str, request: Request, target_origin: str) -> str:
    """
    Point absolute redirects at the backend origin back to the dev server.
    Relative and external locations are returned unchanged.
    """
    if not location or "://" not in location:
        return location
    if origin_of(location).lower() != target_origin.lower():
        return location
    own_host = request.headers.get("host") or (
        request.client.host if request.client else "localhost"
    )
    return f"{request.url.scheme}://{own_host}{location[len(target_origin):]}"


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


async def _request_body(request: Request) -> AsyncIterator[bytes]:
    try:
        async for chunk in request.stream():
            if chunk:
                yield chunk
    except ClientDisconnect as e:
        raise ClientDisconnected(
            f"Client disconnected while sending {request.method} {request.url.path}"
        ) from e


class UpstreamStreamingResponse(StreamingResponse):
    """
    Relays an open upstream response without buffering it. The upstream
    connection is released when the relay finishes, fails, or the caller
    disconnects.
    """

    def __init__(self, upstream: httpx.Response, request: Request, target_origin: str):
        self.upstream = upstream
        self.completed = False
        super().__init__(self._relay(), status_code=upstream.status_code)
        self.raw_headers = self._response_headers(request, target_origin)

    def _response_headers(self, request: Request, target_origin: str) -> list:
        raw_headers = []
        for name, value in self.upstream.headers.raw:
            name_lower = name.decode("latin-1").lower()
            if name_lower in HOP_BY_HOP_HEADERS:
                continue
            if name_lower == "location" and settings.PROXY_REWRITE_LOCATION:
                location = rewrite_location_header(
                    value.decode("latin-1"), request, target_origin
                )
                value = location.encode("latin-1")
            raw_headers.append((name_lower.encode("latin-1"), value))
        return raw_headers

    async def _relay(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.upstream.aiter_raw():
                yield chunk
        except httpx.TransportError as e:
            log_exception_with_details(
                logger, f"[Proxy] Upstream stream from {self.upstream.url} broke:", e
            )
            raise
        self.completed = True

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except ClientDisconnect:
            logger.info(
                f"[Proxy] Client disconnected from {self.upstream.url}, cancelling upstream"
            )
        finally:
            if not self.completed:
                logger.debug(f"[Proxy] Closing unfinished upstream {self.upstream.url}")
            with anyio.CancelScope(shield=True):
                await self.upstream.aclose()


async def forward(
    request: Request,
    decision: Forward,
    client: httpx.AsyncClient,
) -> UpstreamStreamingResponse:
    """
    Forward ``request`` to the origin chosen by the router and stream the
    backend's answer back.

    Raises:
        UpstreamUnavailable: the backend refused or dropped the connection
        UpstreamTimeout: the backend did not answer in time
        ClientDisconnected: the caller went away while uploading the body
    """
    target_url = get_target_url(request, decision.target_origin)
    with traced_request(
        tracer,
        operation="proxy_request",
        start_message=f"[Proxy] {request.method} {request.url.path} -> {target_url}",
        extra_attrs={
            "proxy.target_url": str(target_url),
            "proxy.method": request.method,
            "proxy.prefix": decision.rule.path_prefix,
        },
    ) as span:
        upstream_request = client.build_request(
            method=request.method,
            url=target_url,
            headers=prepare_headers(request, decision),
            content=_request_body(request) if _has_body(request) else None,
        )
        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            logger.error(f"[Proxy] Timeout for {target_url}: {e}")
            span.set_attribute("proxy.error", "timeout")
            raise UpstreamTimeout(str(target_url), str(e) or type(e).__name__) from e
        except httpx.TransportError as e:
            logger.error(f"[Proxy] Failed to reach {target_url}: {e}")
            span.set_attribute("proxy.error", "connection_failed")
            raise UpstreamUnavailable(str(target_url), str(e) or type(e).__name__) from e

        span.set_attribute("proxy.status_code", upstream.status_code)
        return UpstreamStreamingResponse(upstream, request, decision.target_origin)

