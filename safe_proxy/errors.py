import logging
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from safe_proxy.target.descriptor import RejectionReason
from safe_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")


class ProxyError(Exception):
    """An error with a client-visible status and JSON body."""

    status_code = 500
    error = "Internal server error"

    def __init__(
        self,
        reason: Optional[str] = None,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        if status_code is not None:
            self.status_code = status_code
        if error is not None:
            self.error = error
        self.reason = reason
        self.headers = headers
        super().__init__(reason or self.error)


class UpstreamError(ProxyError):
    status_code = 502
    error = "Bad gateway"


class UpstreamTimeout(UpstreamError):
    status_code = 504
    error = "Gateway timeout"


class RedirectRejected(UpstreamError):
    """An upstream redirect pointed at a target the validator refuses."""

    def __init__(self, rejection: RejectionReason):
        self.rejection = rejection
        super().__init__(
            reason=f"Upstream redirected to a rejected target ({rejection.value})"
        )


class PayloadTooLarge(ProxyError):
    status_code = 413
    error = "Payload too large"


class RateLimited(ProxyError):
    status_code = 429
    error = "Too many requests"


def error_response(
    status_code: int,
    error: str,
    reason: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = {"error": error}
    if reason:
        body["reason"] = reason
    return JSONResponse(body, status_code=status_code, headers=headers)


def rejection_response(reason: RejectionReason) -> JSONResponse:
    return error_response(400, reason.value, reason.description)


_HTTP_ERRORS = {
    404: "Not found",
    405: "Method not allowed",
}


async def _proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    return error_response(exc.status_code, exc.error, exc.reason, exc.headers)


async def _http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    error = _HTTP_ERRORS.get(exc.status_code, str(exc.detail))
    return error_response(exc.status_code, error, headers=getattr(exc, "headers", None))


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log_exception_with_details(logger, f"[Server] {request.method} {request.url.path}", exc)
    return error_response(500, "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ProxyError, _proxy_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
