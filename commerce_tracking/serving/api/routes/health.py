"""
Health Check Endpoints

Liveness for orchestration systems and the Prometheus scrape endpoint.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

router = APIRouter(tags=["Health"])

SERVICE_NAME = "commerce-tracking"


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    timestamp: datetime
    service: str


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        service=SERVICE_NAME,
    )


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics in the text exposition format"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
