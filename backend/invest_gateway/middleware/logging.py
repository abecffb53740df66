"""
Invest Gateway - Access Log Middleware
======================================

What:  One access log line per HTTP request, written after the response is
       known (including responses produced by the policy stages).

Line format:
    POST /api/auth/login 201 12.4ms ns=auth rl=97 [a1b2c3d4] from 203.0.113.7

    ns  namespace the path belongs to ("-" outside /api/<namespace>)
    rl  RateLimit-Remaining of the response ("-" when the path is not limited)

Level follows the status class: 5xx → ERROR, 4xx → WARNING, else INFO.
Request bodies, Authorization headers and tokens are never logged.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from invest_gateway.middleware.rate_limit import client_identity
from invest_gateway.middleware.request_id import request_id_var

logger = logging.getLogger("invest_gateway.access")


def level_for_status(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


def namespace_of(path: str) -> str:
    parts = path.split("/", 3)
    if len(parts) >= 3 and parts[1] == "api" and parts[2]:
        return parts[2]
    return "-"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access logging for everything except the polled health probe."""

    QUIET_PATHS = frozenset({"/api/health"})

    def __init__(self, app, trust_proxy: bool = False):
        super().__init__(app)
        self.trust_proxy = trust_proxy

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in self.QUIET_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        rid = request_id_var.get("") or getattr(request.state, "request_id", "")
        client = client_identity(request, self.trust_proxy)
        namespace = namespace_of(path)
        remaining = response.headers.get("RateLimit-Remaining", "-")

        logger.log(
            level_for_status(response.status_code),
            "%s %s %d %.1fms ns=%s rl=%s [%s] from %s",
            request.method,
            path,
            response.status_code,
            elapsed_ms,
            namespace,
            remaining,
            rid,
            client,
            extra={
                "request_id": rid,
                "namespace": namespace,
                "status": response.status_code,
                "duration_ms": round(elapsed_ms, 2),
                "client_ip": client,
            },
        )
        return response
