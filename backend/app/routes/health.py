"""
PostSnap Backend — Health Check Route
=======================================

What:  GET /health for container liveness checks and load balancers.
How:   SELECT 1 against the database; reports which storage adapter is active
       without calling the provider.

Status levels:
    healthy    database reachable, storage adapter ready
    degraded   database reachable, but uploads use placeholders or the
               upload circuit breaker is open
    unhealthy  database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app import __version__
from app.database import engine
from app.schemas.post import HealthResponse
from app.services.storage_service import storage_adapter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


def storage_status() -> str:
    """imagekit, imagekit_circuit_open or placeholder."""
    breaker = getattr(storage_adapter, "circuit_breaker", None)
    if breaker is not None and breaker.state == breaker.OPEN:
        return f"{storage_adapter.mode}_circuit_open"
    return storage_adapter.mode


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "Database unreachable", "model": HealthResponse}},
    summary="Service health check",
)
async def health_check():
    db_status = "connected"
    overall = "healthy"

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    storage = storage_status()
    if overall == "healthy" and storage != "imagekit":
        overall = "degraded"

    body = HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        storage=storage,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
    if overall == "unhealthy":
        return JSONResponse(status_code=503, content=body.model_dump())
    return body
