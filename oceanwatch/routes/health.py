"""
health.py — Liveness check.

Route:
  GET /health — process liveness, MongoDB reachability, live socket count

The check answers 200 whenever the process is up. A failed Mongo ping is
reported as database="disconnected" rather than as an error, so a
degraded-mode instance (reads/writes answering 503) is still visibly alive.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from oceanwatch.core import database as db_module
from oceanwatch.core.config import settings
from oceanwatch.services.realtime import RealtimeHub, get_hub

logger = logging.getLogger(__name__)
router = APIRouter()

API_VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str  # "ok" while the process serves requests
    version: str
    database: str  # "connected" | "disconnected"
    environment: str
    realtime_connections: int


async def _ping_database() -> str:
    # Read through the module so tests can swap db_client.client
    client = db_module.db_client.client
    if client is None:
        return "disconnected"
    try:
        await client.admin.command("ping")
    except Exception as exc:
        logger.warning("Health check ping failed: %s", exc)
        return "disconnected"
    return "connected"


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check(hub: RealtimeHub = Depends(get_hub)) -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=API_VERSION,
        database=await _ping_database(),
        environment=settings.environment,
        realtime_connections=hub.connected_count,
    )
