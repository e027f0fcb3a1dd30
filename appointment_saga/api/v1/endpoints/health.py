"""Health check endpoints."""

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel

from appointment_saga.dependencies import Context
from appointment_saga.messaging.queue import CONFIRMATIONS, MessageQueue

logger = structlog.get_logger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str


class DetailedHealthResponse(BaseModel):
    """Detailed health check response model."""

    status: str
    version: str
    environment: str
    primary_store: str
    regional_stores: dict[str, str]
    queue_depths: dict[str, int | None]


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Basic health check",
)
async def health_check(ctx: Context) -> HealthResponse:
    """
    Basic health check endpoint.

    Returns:
        Basic health status
    """
    return HealthResponse(
        status="healthy",
        version=ctx.settings.app_version,
        environment=ctx.settings.environment,
    )


async def _queue_depth(queue: MessageQueue) -> int | None:
    try:
        return await queue.approximate_depth()
    except Exception as e:
        logger.warning("queue_depth_unavailable", queue=queue.name, error=str(e))
        return None


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Detailed health check",
)
async def detailed_health_check(ctx: Context) -> DetailedHealthResponse:
    """
    Detailed health check with store status and queue backlogs.

    Returns:
        Detailed health status including dependencies
    """
    primary_healthy = await ctx.appointments.ping()
    regional = {
        country.value: "healthy" if await repository.ping() else "unhealthy"
        for country, repository in ctx.regional.items()
    }
    queues = {
        country.value: await _queue_depth(queue) for country, queue in ctx.country_queues.items()
    }
    queues[CONFIRMATIONS] = await _queue_depth(ctx.confirmation_queue)

    all_healthy = (
        primary_healthy
        and all(v == "healthy" for v in regional.values())
        and all(depth is not None for depth in queues.values())
    )

    return DetailedHealthResponse(
        status="healthy" if all_healthy else "degraded",
        version=ctx.settings.app_version,
        environment=ctx.settings.environment,
        primary_store="healthy" if primary_healthy else "unhealthy",
        regional_stores=regional,
        queue_depths=queues,
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    """Simple ping endpoint."""
    return {"message": "pong"}
