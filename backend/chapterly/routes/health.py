"""
Chapterly Backend — Health Check Route
========================================

What:  Liveness endpoint for uptime monitors and the hosting platform.
Why:   The platform restarts instances that stop answering /health.
How:   Always answers 200 with status "ok" while the process serves requests;
       database reachability is reported alongside but never fails the probe,
       so a Supabase hiccup does not trigger restart loops.
"""

import logging
import time

from fastapi import APIRouter
from sqlalchemy import text

from chapterly import __version__
from chapterly.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check() -> HealthResponse:
    """Runs SELECT 1 against the database and reports uptime."""
    db_status = "connected"

    try:
        from chapterly.database import engine
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        logger.warning("Health check: database unreachable: %s", str(e))

    return HealthResponse(
        status="ok",
        message="Backend is running",
        version=__version__,
        database=db_status,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
