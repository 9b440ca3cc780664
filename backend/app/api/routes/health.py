"""Health check endpoint with real service connectivity probes.

Each service check has a short timeout to avoid blocking the response.
A dependency reporting "disconnected" does not change the overall status;
the endpoint always returns 200 so load balancers keep routing.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter

from app.config import settings

logger = structlog.get_logger()

router = APIRouter(tags=["health"])

_CHECK_TIMEOUT = 3.0  # seconds per service check


async def _check_database() -> str:
    """Run SELECT 1 through the application's own engine and pool."""
    from sqlalchemy import text

    from app.database import get_sessionmaker

    async def _ping() -> None:
        async with get_sessionmaker()() as session:
            await session.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping(), timeout=_CHECK_TIMEOUT)
        return "connected"
    except Exception as exc:
        logger.debug("health_database_failed", error=str(exc))
        return "disconnected"


async def _check_r2() -> str:
    """Check bucket accessibility via head_bucket."""
    from app.utils.r2 import _get_client

    if not settings.r2_account_id:
        return "not_configured"

    def _head_bucket() -> None:
        _get_client().head_bucket(Bucket=settings.r2_bucket_name)

    try:
        await asyncio.wait_for(asyncio.to_thread(_head_bucket), timeout=_CHECK_TIMEOUT)
        return "connected"
    except Exception as exc:
        logger.debug("health_r2_failed", error=str(exc))
        return "disconnected"


@router.get("/health")
async def health_check() -> dict:
    """Probe the database and R2 in parallel; always 200."""
    database, r2 = await asyncio.gather(_check_database(), _check_r2())
    return {
        "status": "ok",
        "version": "0.1.0",
        "environment": settings.environment,
        "database": database,
        "r2": r2,
    }
