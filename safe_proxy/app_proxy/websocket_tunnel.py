"""
WebSocket tunnelling for /proxy.

The upstream handshake happens before the client is accepted, so a target that
refuses or cannot be reached is reported to the client as a denied upgrade.
Once both sides are open, frames are relayed unmodified in both directions
until one side closes or the tunnel sits idle for too long.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from fastapi import WebSocket
from opentelemetry import trace
from starlette.websockets import WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus

from safe_proxy.app_proxy.headers import sanitize_request_headers
from safe_proxy.config import ProxyConfig
from safe_proxy.errors import error_response
from safe_proxy.target import TargetDescriptor
from safe_proxy.utils import redact_query
from safe_proxy.utils.exception_logging import describe_upstream_error
from safe_proxy.utils.traced_requests import traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

NORMAL_CLOSURE = 1000
GOING_AWAY = 1001
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011

# Generated by the websocket client for its own handshake with the upstream.
HANDSHAKE_HEADERS = {
    "host",
    "upgrade",
    "connection",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-accept",
    "sec-websocket-protocol",
}


@dataclass(frozen=True)
class TunnelClose:
    source: str
    code: int
    reason: str = ""


def handshake_headers(headers) -> Dict[str, str]:
    """End-to-end headers to send with the upstream handshake."""
    sanitized = sanitize_request_headers(headers, upgrade=True)
    return {
        name: value
        for name, value in sanitized.items()
        if name not in HANDSHAKE_HEADERS
    }


def requested_subprotocols(headers) -> List[str]:
    raw = headers.get("sec-websocket-protocol", "")
    return [p.strip() for p in raw.split(",") if p.strip()]


def sendable_close_code(code: Optional[int]) -> int:
    """Map reserved close codes (1005, 1006, 1015) onto ones that may be sent."""
    if code is None or code == 1005:
        return NORMAL_CLOSURE
    if code in (1006, 1015) or not (1000 <= code <= 4999):
        return INTERNAL_ERROR
    return code


def _client_open(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


async def deny_upgrade(
    websocket: WebSocket,
    status_code: int,
    error: str,
    reason: Optional[str] = None,
    close_code: int = POLICY_VIOLATION,
) -> None:
    """Refuse an upgrade before any frame is exchanged."""
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(error_response(status_code, error, reason))
    else:
        await websocket.close(code=close_code, reason=error)


async def relay_frames(
    websocket: WebSocket, upstream: ClientConnection, idle_timeout: float
) -> TunnelClose:
    """Pump frames both ways; returns which side ended the tunnel and how."""
    loop = asyncio.get_running_loop()
    last_activity = loop.time()

    def touch():
        nonlocal last_activity
        last_activity = loop.time()

    async def client_to_upstream() -> TunnelClose:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return TunnelClose(
                    "client",
                    message.get("code", NORMAL_CLOSURE),
                    message.get("reason") or "",
                )
            touch()
            if message.get("bytes") is not None:
                await upstream.send(message["bytes"])
            elif message.get("text") is not None:
                await upstream.send(message["text"])

    async def upstream_to_client() -> TunnelClose:
        async for message in upstream:
            touch()
            if isinstance(message, bytes):
                await websocket.send_bytes(message)
            else:
                await websocket.send_text(message)
        return TunnelClose("upstream", upstream.close_code, upstream.close_reason or "")

    async def idle_watchdog() -> TunnelClose:
        while True:
            remaining = idle_timeout - (loop.time() - last_activity)
            if remaining <= 0:
                return TunnelClose("idle", GOING_AWAY, "Idle timeout")
            await asyncio.sleep(remaining)

    tasks = [asyncio.create_task(client_to_upstream())]
    tasks.append(asyncio.create_task(upstream_to_client()))
    if idle_timeout:
        tasks.append(asyncio.create_task(idle_watchdog()))

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    finished = next(iter(done))
    error = finished.exception()
    if error is None:
        return finished.result()
    if isinstance(error, ConnectionClosed):
        code = error.rcvd.code if error.rcvd else 1006
        reason = error.rcvd.reason if error.rcvd else ""
        return TunnelClose("upstream", code, reason)
    logger.warning(f"[Tunnel] Relay failed: {describe_upstream_error(error)}")
    return TunnelClose("error", INTERNAL_ERROR, "Relay failed")


async def open_tunnel(
    websocket: WebSocket, descriptor: TargetDescriptor, config: ProxyConfig
) -> None:
    target_url = descriptor.websocket_url()

    with traced_request(
        tracer,
        operation="proxy_websocket",
        descriptor=descriptor,
        start_message=f"[Tunnel] Upgrade -> {redact_query(target_url)}",
    ) as span:
        subprotocols = requested_subprotocols(websocket.headers)
        try:
            upstream = await connect(
                target_url,
                additional_headers=handshake_headers(websocket.headers),
                subprotocols=subprotocols or None,
                open_timeout=config.idle_timeout or None,
                ping_interval=None,
                max_size=None,
            )
        except (asyncio.TimeoutError, TimeoutError):
            logger.warning(f"[Tunnel] Handshake with {descriptor.authority} timed out")
            span.set_attribute("proxy.error", "timeout")
            await deny_upgrade(
                websocket, 504, "Gateway timeout", "Upstream did not respond in time",
                close_code=INTERNAL_ERROR,
            )
            return
        except InvalidStatus as e:
            status = e.response.status_code
            logger.warning(f"[Tunnel] Upstream {descriptor.authority} refused upgrade: {status}")
            span.set_attribute("proxy.error", f"upstream_status_{status}")
            await deny_upgrade(
                websocket, 502, "Bad gateway", "Upstream refused the WebSocket upgrade",
                close_code=INTERNAL_ERROR,
            )
            return
        except Exception as e:
            logger.warning(
                f"[Tunnel] Upstream {descriptor.authority} unreachable: {describe_upstream_error(e)}"
            )
            span.set_attribute("proxy.error", describe_upstream_error(e))
            await deny_upgrade(
                websocket, 502, "Bad gateway", "Could not reach the upstream server",
                close_code=INTERNAL_ERROR,
            )
            return

        upstream_close = TunnelClose("proxy", INTERNAL_ERROR, "Proxy error")
        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            closed = await relay_frames(websocket, upstream, config.idle_timeout)
            span.set_attribute("proxy.ws.closed_by", closed.source)
            logger.info(
                f"[Tunnel] {descriptor.authority} closed by {closed.source} (code {closed.code})"
            )
            upstream_close = closed
            if closed.source != "client" and _client_open(websocket):
                await websocket.close(
                    code=sendable_close_code(closed.code), reason=closed.reason
                )
        finally:
            await asyncio.shield(
                upstream.close(
                    code=sendable_close_code(upstream_close.code),
                    reason=upstream_close.reason,
                )
            )
