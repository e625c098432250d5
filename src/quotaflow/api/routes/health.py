"""Health check endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from quotaflow import __version__
from quotaflow.api.dependencies.database import get_database
from quotaflow.core.database import Database

router = APIRouter()


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str
    version: str


class ReadinessResponse(BaseModel):
    """Readiness check response with dependency status."""

    status: str
    database: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Basic health check endpoint."""
    return HealthResponse(status="healthy", version=__version__)


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    responses={
        status.HTTP_503_SERVICE_UNAVAILABLE: {
            "description": "Service not ready",
        }
    },
)
async def readiness_check(
    database: Annotated[Database, Depends(get_database)],
    response: Response,
) -> ReadinessResponse:
    """Readiness check that verifies the database answers."""
    db_ok = database.is_connected and await database.check_connection()
    if not db_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(
        status="ready" if db_ok else "degraded",
        database=db_ok,
    )


@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics endpoint.

    Returns metrics in Prometheus text-based exposition format.
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
