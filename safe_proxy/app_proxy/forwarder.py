import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask

from safe_proxy.app_proxy.headers import (
    sanitize_request_headers,
    sanitize_response_headers,
)
from safe_proxy.config import ProxyConfig
from safe_proxy.errors import (
    PayloadTooLarge,
    ProxyError,
    RedirectRejected,
    UpstreamError,
    UpstreamTimeout,
)
from safe_proxy.target import Rejected, TargetDescriptor, validate
from safe_proxy.utils import redact_query
from safe_proxy.utils.exception_logging import (
    describe_upstream_error,
    log_exception_with_details,
)
from safe_proxy.utils.traced_requests import traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")


def _client(
    config: ProxyConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> httpx.AsyncClient:
    """HTTP client for one exchange; the timeout bounds every individual wait."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.idle_timeout or None),
        follow_redirects=config.follow_redirects,
        max_redirects=config.max_redirects,
        transport=transport,
    )


def _redirect_guard(config: ProxyConfig, initial: httpx.Request):
    """Request hook that re-validates every redirect hop the client follows."""

    async def check(request: httpx.Request) -> None:
        if request is initial:
            return
        verdict = validate(str(request.url), config.allowlist)
        if isinstance(verdict, Rejected):
            logger.info(
                f"[Proxy] Refusing redirect to {redact_query(str(request.url))}: {verdict.reason.value}"
            )
            raise RedirectRejected(verdict.reason)

    return check


def _declared_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ProxyError(
            status_code=400, error="Bad request", reason="Invalid Content-Length header"
        )


async def stream_request_body(request: Request, limit: int) -> AsyncIterator[bytes]:
    """Stream the inbound body upstream, refusing it once it grows past ``limit``."""
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if limit and received > limit:
            raise PayloadTooLarge(reason=f"Request body exceeds {limit} bytes")
        if chunk:
            yield chunk


async def _close_exchange(upstream: httpx.Response, client: httpx.AsyncClient) -> None:
    """Safe to run twice: both closes are no-ops once done."""
    await upstream.aclose()
    await client.aclose()


async def relay_response_body(
    upstream: httpx.Response, client: httpx.AsyncClient, descriptor: TargetDescriptor
) -> AsyncIterator[bytes]:
    """
    Stream the upstream body back without decoding it.

    Headers are already on the wire once this runs, so an upstream failure can
    only cut the stream short. The upstream connection is closed however the
    relay ends, including when the client goes away and the stream is cancelled.
    """
    outcome = "client_disconnected"
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
        outcome = "completed"
    except httpx.HTTPError as e:
        outcome = "terminated"
        logger.warning(
            f"[Proxy] Upstream {descriptor.authority} terminated mid-response "
            f"({describe_upstream_error(e)})"
        )
        raise
    finally:
        await asyncio.shield(_close_exchange(upstream, client))
        if outcome == "completed":
            logger.debug(f"[Proxy] Upstream {descriptor.authority} response completed")
        elif outcome == "client_disconnected":
            logger.info(
                f"[Proxy] Client went away, closed upstream {descriptor.authority}"
            )


async def forward_request(
    request: Request, descriptor: TargetDescriptor, config: ProxyConfig
) -> StreamingResponse:
    """
    Forward an inbound request to the validated target and stream the reply.

    The upstream URL is built from ``descriptor`` alone; the inbound path and
    query string only ever address this proxy.
    """
    target_url = descriptor.http_url()

    with traced_request(
        tracer,
        operation="proxy_request",
        descriptor=descriptor,
        start_message=f"[Proxy] {request.method} -> {redact_query(target_url)}",
        extra_attrs={"proxy.method": request.method},
    ) as span:
        declared_length = _declared_length(request)
        if config.max_body_bytes and declared_length and declared_length > config.max_body_bytes:
            raise PayloadTooLarge(
                reason=f"Request body exceeds {config.max_body_bytes} bytes"
            )
        has_body = bool(declared_length) or "transfer-encoding" in request.headers

        client = _client(config)
        try:
            upstream_request = client.build_request(
                method=request.method,
                url=target_url,
                headers=sanitize_request_headers(request.headers),
                content=stream_request_body(request, config.max_body_bytes) if has_body else None,
            )
            client.event_hooks = {
                "request": [_redirect_guard(config, upstream_request)],
                "response": [],
            }
            upstream = await client.send(upstream_request, stream=True)
        except ProxyError as e:
            await client.aclose()
            span.set_attribute("proxy.error", e.error)
            raise
        except httpx.TimeoutException as e:
            await client.aclose()
            logger.warning(f"[Proxy] Timeout contacting {descriptor.authority}: {e}")
            span.set_attribute("proxy.error", "timeout")
            raise UpstreamTimeout(reason="Upstream did not respond in time")
        except Exception as e:
            await client.aclose()
            log_exception_with_details(
                logger,
                f"[Proxy] Upstream {descriptor.authority} unreachable",
                e,
                logging.WARNING,
            )
            span.set_attribute("proxy.error", describe_upstream_error(e))
            raise UpstreamError(reason="Could not reach the upstream server")

        span.set_attribute("proxy.status_code", upstream.status_code)
        if upstream.history:
            span.set_attribute("proxy.redirects", len(upstream.history))

        # The background close covers a client that leaves before the body starts.
        response = StreamingResponse(
            relay_response_body(upstream, client, descriptor),
            status_code=upstream.status_code,
            background=BackgroundTask(_close_exchange, upstream, client),
        )
        for name, value in sanitize_response_headers(upstream.headers.multi_items()):
            response.headers.append(name, value)
        return response
