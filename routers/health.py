from datetime import datetime, timezone

from fastapi import APIRouter, Request

from logging_config import get_logger
from schemas.chat import HealthCheck, HealthStatus

logger = get_logger(__name__)

health_router = APIRouter(tags=["health"])


@health_router.get("/health", response_model=HealthCheck)
async def health(request: Request):
    status = HealthStatus.HEALTHY
    if not await request.app.state.backend.ping():
        logger.warning("Health check: store did not answer ping")
        status = HealthStatus.DEGRADED
    return HealthCheck(
        status=status,
        version=request.app.state.settings.version,
        timestamp=datetime.now(timezone.utc),
    )
