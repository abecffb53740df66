"""
Invest Gateway - FastAPI Application Factory
============================================

What:  Creates and configures the gateway application.
How:   `create_app()` builds a `GatewayContext` (settings, route table, rate
       limiter, data store, error normalizer), stores it on `app.state`,
       registers the policy middleware, the exception handlers and the
       routes, and returns the app. Nothing is read from module globals at
       request time, so several isolated apps can coexist (tests do this).
Who:   The lifecycle manager (`invest-gateway` command) or uvicorn directly:
           uvicorn invest_gateway.main:create_app --factory

Application Architecture:
    ┌──────────────────────────────────────────────────────┐
    │                   FastAPI App                        │
    │                                                      │
    │  Middleware Chain (outermost first):                 │
    │   Request ID → Logging → Security Headers → CORS     │
    │   → Rate Limit → Body Limit → Error Boundary         │
    │                                                      │
    │  Routes (dispatch order):                            │
    │   /api/health, /api/info → /api/<namespace>/*        │
    │   → named views → public files / not-found           │
    │                                                      │
    │  Exception Handlers:                                 │
    │   GatewayError, validation, HTTP → Error Normalizer  │
    └──────────────────────────────────────────────────────┘
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Callable, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from invest_gateway import __version__
from invest_gateway.config import Settings, get_settings
from invest_gateway.database import DataStore
from invest_gateway.errors import ErrorNormalizer
from invest_gateway.exceptions import GatewayError
from invest_gateway.handlers import HandlerGroup
from invest_gateway.middleware.body_limit import BodyLimitMiddleware
from invest_gateway.middleware.cors import OriginPolicyMiddleware
from invest_gateway.middleware.error_boundary import ErrorBoundaryMiddleware
from invest_gateway.middleware.logging import RequestLoggingMiddleware
from invest_gateway.middleware.rate_limit import FixedWindowRateLimiter, RateLimitMiddleware
from invest_gateway.middleware.request_id import RequestIDMiddleware, request_id_var
from invest_gateway.middleware.security_headers import SecurityHeadersMiddleware
from invest_gateway.routing import RouteTable, build_route_table, mount_routes

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the whole process.

    Called once by the entry point, before the data store probe, so the
    startup sequence itself is logged.
    """
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Gateway Context
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class GatewayContext:
    """Process-wide collaborators of one gateway instance, built once at startup."""

    settings: Settings
    route_table: RouteTable
    limiter: FixedWindowRateLimiter
    store: DataStore
    normalizer: ErrorNormalizer

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: Optional[DataStore] = None,
        handler_groups: Optional[Mapping[str, HandlerGroup]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "GatewayContext":
        return cls(
            settings=settings,
            route_table=build_route_table(handler_groups),
            limiter=FixedWindowRateLimiter(
                max_requests=settings.rate_limit_max_requests,
                window_seconds=settings.rate_limit_window_seconds,
                clock=clock,
            ),
            store=store or DataStore.from_settings(settings),
            normalizer=ErrorNormalizer(expose_diagnostics=not settings.is_production),
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    gateway: GatewayContext = app.state.gateway
    logger.info(
        "Gateway application started (%s, %d namespaces)",
        gateway.settings.environment,
        len(gateway.route_table.dynamic),
    )
    yield
    await gateway.store.dispose()
    logger.info("Gateway application stopped")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI, normalizer: ErrorNormalizer) -> None:
    """
    Route typed failures to the error normalizer.

    Handler hierarchy:
        GatewayError            → its FailureKind row
        RequestValidationError  → ValidationFailed (400)
        HTTPException           → NotFound or Internal with its status
        anything else           → ErrorBoundaryMiddleware (same normalizer)
    """

    @app.exception_handler(GatewayError)
    async def handle_gateway_error(request: Request, exc: GatewayError):
        return normalizer.render(exc, request_id=request_id_var.get(""))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return normalizer.render(exc, request_id=request_id_var.get(""))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        return normalizer.render(exc, request_id=request_id_var.get(""))


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DataStore] = None,
    handler_groups: Optional[Mapping[str, HandlerGroup]] = None,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    """
    Create and configure the gateway application.

    Args:
        settings:       Configuration; read from the environment when omitted.
        store:          Data store probe; built from settings when omitted.
        handler_groups: Domain collaborators keyed by namespace name.
        clock:          Time source for the rate limiter.
    """
    settings = settings or get_settings()
    gateway = GatewayContext.build(
        settings, store=store, handler_groups=handler_groups, clock=clock
    )

    app = FastAPI(
        title="AI Investment Platform API",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.gateway = gateway

    # ── Register Middleware ───────────────────────────────────────────────
    # Starlette runs middleware in REVERSE order of addition: the first one
    # added sits closest to the router.
    app.add_middleware(ErrorBoundaryMiddleware, normalizer=gateway.normalizer)
    app.add_middleware(
        BodyLimitMiddleware,
        max_body_bytes=settings.max_body_bytes,
        normalizer=gateway.normalizer,
    )
    app.add_middleware(
        RateLimitMiddleware,
        limiter=gateway.limiter,
        normalizer=gateway.normalizer,
        prefix=settings.rate_limit_prefix,
        trust_proxy=settings.trust_proxy,
    )
    app.add_middleware(
        OriginPolicyMiddleware,
        allowed_origins=settings.allowed_origins,
        normalizer=gateway.normalizer,
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware, trust_proxy=settings.trust_proxy)
    app.add_middleware(RequestIDMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app, gateway.normalizer)

    # ── Register Routes ───────────────────────────────────────────────────
    mount_routes(app, gateway.route_table)

    return app
