# Middleware package init
"""
Invest Gateway - Middleware Package
===================================

What:  The policy chain applied to every request before the router runs.

Middleware Chain (outermost first):
    Request → [Request ID] → [Logging] → [Security Headers] → [CORS]
            → [Rate Limit] → [Body Limit] → [Error Boundary] → Router

    Starlette runs middleware in REVERSE order of `add_middleware` calls,
    so `create_app()` registers them innermost first.

    Responses travel back through the same stages, so a 429 written by the
    rate limiter still receives CORS and security headers, a request id, and
    an access log line.
"""
