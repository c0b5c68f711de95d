"""
Health endpoints: liveness, dependency probes and generation readiness.
"""

import logging
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine
from services.generator import get_openai_client

router = APIRouter()
logger = logging.getLogger(__name__)


async def _probe_database() -> Optional[str]:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Database probe failed: %s", exc)
        return str(exc)
    return None


async def _probe_redis() -> Optional[str]:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except Exception as exc:
        return str(exc)
    finally:
        await client.aclose()
    return None


def _generator_backend() -> str:
    return "openai" if get_openai_client(settings.OPENAI_API_KEY) is not None else "local_fallback"


@router.get("/health")
async def health_check():
    """Report the ledger store, throttle backend and generator mode."""
    db_error = await _probe_database()
    redis_error = await _probe_redis()
    return {
        # The ledger cannot work without the database; Redis only backs request throttling.
        "status": "healthy" if db_error is None and redis_error is None else "degraded",
        "api": "up",
        "database": "up" if db_error is None else f"down: {db_error}",
        "redis": "up" if redis_error is None else f"down: {redis_error}",
        "generator": _generator_backend(),
        "model": settings.GENERATION_MODEL,
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once the database answers and a real generator is configured."""
    missing = []
    if _generator_backend() != "openai":
        missing.append("OPENAI_API_KEY")
    if await _probe_database() is not None:
        missing.append("DATABASE_URL")

    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
