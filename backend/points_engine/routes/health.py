"""
Points Engine — Health Check Route
===================================

What:  Health check endpoint for monitoring and load balancer probes.
Why:   Load balancers route away from instances that cannot reach the database.
How:   Checks the database (critical) and the valuation model (non-critical).
Who:   Docker health checks, load balancers, monitoring.

Status levels:
    - healthy:   database and model reachable (HTTP 200)
    - degraded:  model down or circuit open; listings priced by fallback (HTTP 200)
    - unhealthy: database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text

from points_engine import __version__
from points_engine.dependencies import get_container
from points_engine.schemas.common import HealthResponse
from points_engine.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> HealthResponse:
    db_status = "connected"
    gemini_status = "available"
    overall = "healthy"

    # ── Check Database ────────────────────────────────────────────────────
    try:
        async with container.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    # ── Check Valuation Model ─────────────────────────────────────────────
    llm = container.llm
    if llm is None:
        gemini_status = "disabled"
    elif getattr(getattr(llm, "circuit_breaker", None), "state", None) == "open":
        gemini_status = "circuit_open"
    elif not await llm.health_check():
        gemini_status = "unavailable"

    if gemini_status != "available" and overall == "healthy":
        overall = "degraded"

    settings = container.settings
    if settings.webhook_signing_enabled:
        signing = "enforced"
    elif settings.allow_unsigned_webhooks:
        signing = "insecure"
    else:
        signing = "rejecting"

    if overall == "unhealthy":
        response.status_code = 503

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        gemini=gemini_status,
        webhook_signing=signing,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
