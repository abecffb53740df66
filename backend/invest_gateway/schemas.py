"""
Invest Gateway - Response Schemas
=================================

What:  Pydantic models for the gateway's own responses (health and info).
How:   Used as FastAPI response models; handler-group payloads are owned by the
       collaborators and are not modeled here.
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Returned by GET /api/health when the probe completes (reachable or not)."""

    status: Literal["OK"] = Field(default="OK")
    timestamp: str = Field(description="UTC ISO 8601 time of the probe")
    database: Literal["Connected", "Disconnected"] = Field(
        description="Reachability of the backing data store"
    )
    environment: str = Field(description="Runtime environment name")


class HealthErrorResponse(BaseModel):
    """Returned by GET /api/health when the probe itself raised."""

    status: Literal["ERROR"] = Field(default="ERROR")
    timestamp: str
    error: str
    message: str
    stack: Optional[str] = None


class InfoResponse(BaseModel):
    name: str
    version: str
    description: str
    endpoints: Dict[str, str] = Field(description="Mounted namespaces by name")
    features: List[str]
