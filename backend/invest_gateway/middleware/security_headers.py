"""
Invest Gateway - Security Headers Middleware
============================================

What:  Adds the browser hardening headers to every response, including
       responses written by later stages (429, 413, 404).
How:   The header set is computed once from `CSP_DIRECTIVES` at construction
       and stamped onto each outgoing response.

The Content-Security-Policy allow-lists the CDNs the front-end views load
(Tailwind, cdnjs, unpkg, Google Fonts) and the crypto payment provider API the
dashboard calls directly.
"""

from typing import Dict, Mapping, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

CSP_DIRECTIVES: Dict[str, Sequence[str]] = {
    "default-src": ["'self'"],
    "base-uri": ["'self'"],
    "font-src": [
        "'self'",
        "https://fonts.googleapis.com",
        "https://fonts.gstatic.com",
    ],
    "form-action": ["'self'"],
    "frame-ancestors": ["'self'"],
    "img-src": ["'self'", "data:", "https:", "http:"],
    "object-src": ["'none'"],
    "script-src": [
        "'self'",
        "'unsafe-inline'",
        "https://cdn.tailwindcss.com",
        "https://cdnjs.cloudflare.com",
        "https://unpkg.com",
    ],
    "script-src-attr": ["'none'"],
    "style-src": [
        "'self'",
        "'unsafe-inline'",
        "https://cdn.tailwindcss.com",
        "https://cdnjs.cloudflare.com",
    ],
    "connect-src": [
        "'self'",
        "https://api.coingate.com",
        "https://api-sandbox.coingate.com",
    ],
    "upgrade-insecure-requests": [],
}

BASE_HEADERS: Dict[str, str] = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}

LEAKY_HEADERS = ("x-powered-by", "server")


def build_csp(directives: Mapping[str, Sequence[str]]) -> str:
    """Serialise directives as `name src src; name src`."""
    parts = []
    for name, sources in directives.items():
        parts.append(" ".join([name, *sources]) if sources else name)
    return "; ".join(parts)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Stamps the hardening headers onto every response."""

    def __init__(self, app, csp_directives: Optional[Mapping[str, Sequence[str]]] = None):
        super().__init__(app)
        self.headers = dict(BASE_HEADERS)
        self.headers["Content-Security-Policy"] = build_csp(csp_directives or CSP_DIRECTIVES)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        for name, value in self.headers.items():
            response.headers[name] = value
        for name in LEAKY_HEADERS:
            if name in response.headers:
                del response.headers[name]
        return response
