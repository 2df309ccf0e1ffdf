"""
Health probes for the ledger API.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()
logger = logging.getLogger(__name__)


async def _check_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("health_database_down error=%s", exc)
        return f"down: {exc}"
    return "up"


async def _check_redis() -> str:
    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
    except Exception as exc:
        logger.warning("health_redis_down error=%s", exc)
        return f"down: {exc}"
    return "up"


def _billing_configuration() -> Dict[str, str]:
    return {
        "gateway": "stripe" if settings.STRIPE_SECRET_KEY else "offline",
        "webhook": "configured" if settings.STRIPE_WEBHOOK_SECRET else "missing",
        "manual_payments": "enabled" if settings.MANUAL_PAYMENTS_ENABLED else "disabled",
    }


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Report ledger storage and rate-limit store reachability.

    The ledger database is required; Redis only backs rate limiting, which
    falls back to in-process counters, so losing it degrades but never fails.
    """
    database = await _check_database()
    rate_limit_store = await _check_redis()

    if database != "up":
        status = "unhealthy"
    elif rate_limit_store != "up":
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "database": database,
        "redis": rate_limit_store,
        "billing": _billing_configuration(),
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once the ledger database answers and webhooks can be verified."""
    missing = []
    if not settings.STRIPE_WEBHOOK_SECRET:
        missing.append("STRIPE_WEBHOOK_SECRET")
    if await _check_database() != "up":
        missing.append("DATABASE")

    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
