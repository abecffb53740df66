"""
Invest Gateway - System Routes
==============================

What:  GET /api/health and GET /api/info.

Health semantics:
    - Probe completes, store reachable   → 200, database "Connected"
    - Probe completes, store unreachable → 200, database "Disconnected"
    - Probe itself raises                → 500 error envelope
    The probe runs on every call; nothing is cached.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from starlette.responses import JSONResponse

from invest_gateway import __version__
from invest_gateway.errors import classify
from invest_gateway.schemas import (
    HealthErrorResponse,
    HealthResponse,
    InfoResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["System"])

# HEAD is answered like GET
READ_METHODS = ["GET", "HEAD"]

FEATURES = [
    "User Authentication (JWT)",
    "Crypto Payment Gateway",
    "Multi-language Support",
    "Investment Management",
    "Transaction History",
    "KYC Verification",
]


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@router.api_route(
    "/health",
    methods=READ_METHODS,
    response_model=HealthResponse,
    responses={500: {"description": "Probe failed", "model": HealthErrorResponse}},
    summary="Gateway and data store health",
)
async def health_check(request: Request):
    gateway = request.app.state.gateway
    timestamp = _utc_timestamp()
    try:
        reachable = await gateway.store.ping()
    except Exception as exc:
        _, body = gateway.normalizer.envelope(classify(exc))
        logger.error("Health check probe failed: %s", exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"status": "ERROR", "timestamp": timestamp, **body},
        )

    return HealthResponse(
        timestamp=timestamp,
        database="Connected" if reachable else "Disconnected",
        environment=gateway.settings.environment,
    )


@router.api_route(
    "/info",
    methods=READ_METHODS,
    response_model=InfoResponse,
    summary="Capability and version descriptor",
)
async def api_info(request: Request) -> InfoResponse:
    gateway = request.app.state.gateway
    return InfoResponse(
        name="AI Investment Platform API",
        version=__version__,
        description="HTTP gateway for the AI compute investment platform",
        endpoints=gateway.route_table.namespaces(),
        features=FEATURES,
    )
