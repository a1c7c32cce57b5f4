import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, WebSocket
from starlette.requests import HTTPConnection

from safe_proxy.app_proxy.forwarder import forward_request
from safe_proxy.app_proxy.websocket_tunnel import deny_upgrade, open_tunnel
from safe_proxy.config import ProxyConfig
from safe_proxy.errors import RateLimited, rejection_response
from safe_proxy.rate_limit import SlidingWindowRateLimiter
from safe_proxy.target import (
    Accepted,
    Rejected,
    RejectionReason,
    ValidationVerdict,
    validate,
)
from safe_proxy.utils import client_ip

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def get_proxy_config(connection: HTTPConnection) -> ProxyConfig:
    return connection.app.state.proxy_config


def get_rate_limiter(connection: HTTPConnection) -> SlidingWindowRateLimiter:
    return connection.app.state.rate_limiter


def resolve_target(connection: HTTPConnection, config: ProxyConfig) -> ValidationVerdict:
    """
    Turn the ``url`` query parameter into a verdict. Without the parameter the
    configured default upstream is used; it never comes from the request.
    """
    values = connection.query_params.getlist("url")
    if not values:
        return Accepted(config.default_target)
    if len(values) > 1:
        return Rejected(RejectionReason.INVALID_URL)
    return validate(values[0], config.allowlist)


def _rate_limit_key(
    connection: HTTPConnection,
    config: ProxyConfig,
    limiter: SlidingWindowRateLimiter,
):
    key = client_ip(connection, config.trust_proxy)
    if limiter.check(key):
        return None
    return key


@router.get("/healthz")
async def healthz():
    return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}


@router.api_route("/proxy", methods=PROXY_METHODS)
async def proxy_http(
    request: Request,
    config: ProxyConfig = Depends(get_proxy_config),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
):
    limited = _rate_limit_key(request, config, limiter)
    if limited is not None:
        logger.info(f"[Proxy] Rate limit exceeded for {limited}")
        raise RateLimited(headers={"Retry-After": str(limiter.retry_after(limited))})

    verdict = resolve_target(request, config)
    if isinstance(verdict, Rejected):
        logger.info(f"[Proxy] Target rejected: {verdict.reason.value}")
        return rejection_response(verdict.reason)
    return await forward_request(request, verdict.descriptor, config)


@router.websocket("/proxy")
async def proxy_websocket(
    websocket: WebSocket,
    config: ProxyConfig = Depends(get_proxy_config),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
):
    limited = _rate_limit_key(websocket, config, limiter)
    if limited is not None:
        logger.info(f"[Tunnel] Rate limit exceeded for {limited}")
        await deny_upgrade(websocket, 429, RateLimited.error)
        return

    verdict = resolve_target(websocket, config)
    if isinstance(verdict, Rejected):
        logger.info(f"[Tunnel] Target rejected: {verdict.reason.value}")
        await deny_upgrade(
            websocket, 400, verdict.reason.value, verdict.reason.description
        )
        return
    await open_tunnel(websocket, verdict.descriptor, config)
