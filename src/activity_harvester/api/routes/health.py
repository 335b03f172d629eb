"""Health check route.

``GET /api/health``
    Liveness check: verifies the process can reach the database
    (``SELECT 1``) and Redis (``PING``).  Always returns HTTP 200; the
    ``status`` field distinguishes ``"ok"`` from ``"degraded"``.

This endpoint is diagnostic and must never raise an HTTP 5xx error.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

import redis.asyncio as aioredis
import sqlalchemy as sa
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from activity_harvester import __version__
from activity_harvester.config.settings import get_settings
from activity_harvester.core.database import AsyncSessionLocal

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


async def _check_database() -> str:
    """Run ``SELECT 1`` against the configured database.

    Returns:
        ``"ok"`` if the query succeeds, ``"error"`` otherwise.
    """
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(sa.text("SELECT 1"))
        return "ok"
    except Exception:
        logger.exception("Health check: database unreachable")
        return "error"


async def _check_redis() -> str:
    """Send ``PING`` to the configured Redis instance.

    Returns:
        ``"ok"`` if Redis responds, ``"error"`` otherwise.
    """
    settings = get_settings()
    try:
        client: aioredis.Redis = aioredis.from_url(
            settings.redis_url,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        await client.ping()
        await client.aclose()
        return "ok"
    except Exception:
        logger.exception("Health check: Redis unreachable")
        return "error"


@router.get("/health")
async def system_health() -> JSONResponse:
    """Return process health including database and Redis connectivity.

    Returns:
        JSON with keys ``status``, ``version``, ``database``, ``redis`` and
        ``timestamp``.
    """
    db_status, redis_status = await asyncio.gather(_check_database(), _check_redis())
    payload = {
        "status": "ok" if db_status == "ok" and redis_status == "ok" else "degraded",
        "version": __version__,
        "database": db_status,
        "redis": redis_status,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    logger.info("system_health_check", extra={"health": payload})
    return JSONResponse(payload)
