from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from esim_reseller.core.resilience import describe_breakers

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    circuit_breakers: dict[str, Any] = {}


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint (no auth required)."""
    return HealthResponse(
        status="ok",
        service="esim-reseller",
        circuit_breakers=describe_breakers(),
    )
