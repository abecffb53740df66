"""
Invest Gateway - Error Boundary Middleware
==========================================

What:  Innermost middleware. Any exception that escapes the router without a
       registered handler is normalized here, inside the policy chain, so the
       response still carries the security, CORS and rate-limit headers.
"""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from invest_gateway.errors import ErrorNormalizer
from invest_gateway.middleware.request_id import request_id_var


class ErrorBoundaryMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, normalizer: ErrorNormalizer):
        super().__init__(app)
        self.normalizer = normalizer

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            return self.normalizer.render(exc, request_id=request_id_var.get(""))
