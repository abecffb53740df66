"""
Invest Gateway - Cross-Origin Policy Middleware
===============================================

What:  Starlette's CORSMiddleware pinned to the single allowed front-end
       origin, with credentialed requests enabled.
How:   Preflights from other origins are answered with the JSON error
       envelope (403 OriginRejected) instead of Starlette's plain-text 400.
       Simple requests from other origins pass through without any
       Access-Control-Allow-* headers, so the browser withholds the response.
"""

import logging
from typing import Sequence

from starlette.datastructures import Headers
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response

from invest_gateway.errors import ErrorNormalizer
from invest_gateway.exceptions import OriginRejectedError
from invest_gateway.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
ALLOWED_HEADERS = ["Content-Type", "Authorization", "X-Requested-With"]
EXPOSED_HEADERS = [
    "X-Request-ID",
    "Retry-After",
    "RateLimit-Limit",
    "RateLimit-Remaining",
    "RateLimit-Reset",
]


class OriginPolicyMiddleware(CORSMiddleware):
    """CORS for one allowed origin; rejected preflights get a JSON envelope."""

    def __init__(self, app, allowed_origins: Sequence[str], normalizer: ErrorNormalizer):
        super().__init__(
            app,
            allow_origins=list(allowed_origins),
            allow_credentials=True,
            allow_methods=ALLOWED_METHODS,
            allow_headers=ALLOWED_HEADERS,
            expose_headers=EXPOSED_HEADERS,
        )
        self.normalizer = normalizer

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers=request_headers)
        if response.status_code < 400:
            return response

        origin = request_headers.get("origin")
        reason = bytes(response.body).decode("utf-8", "replace")
        logger.warning("Rejected CORS preflight from %s: %s", origin, reason)
        return self.normalizer.render(
            OriginRejectedError(origin=origin, message=reason or None),
            request_id=request_id_var.get(""),
        )
