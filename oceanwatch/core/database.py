"""
MongoDB connection management using Motor (async driver).

A single DatabaseClient instance is shared across all requests via a
module-level singleton. FastAPI's dependency injection (get_db) gives
routes access without importing the singleton directly.

Collections:
  users    — accounts with a role (citizen | analyst | admin)
  reports  — hazard reports; `location` carries a GeoJSON Point for the
             2dsphere index, `longitude` / `latitude` back the bbox filters

The connection is opened in FastAPI's lifespan (startup) and closed
on shutdown.
"""

import logging
import re

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, GEOSPHERE

from oceanwatch.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseClient:
    """
    Holds the Motor client and selected database.

    Tests replace .client and .db directly (monkeypatching a class
    attribute is cleaner than replacing module-level vars).
    """

    client: AsyncIOMotorClient | None = None
    db: AsyncIOMotorDatabase | None = None


# Module-level singleton — all app code references this object
db_client = DatabaseClient()


async def connect_to_mongo() -> None:
    """
    Create the MongoDB connection and validate it with a ping.

    Called once at app startup (via lifespan). If MongoDB is unavailable
    the API still starts in degraded mode: DB-dependent endpoints return
    503 and the health check reports the real status.
    """
    logger.info("Connecting to MongoDB at %s", _redact_uri(settings.mongo_uri))
    try:
        db_client.client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            tlsCAFile=certifi.where(),
            # Return timezone-aware datetimes so they compare with our UTC "now"
            tz_aware=True,
        )
        db_client.db = db_client.client[settings.mongo_db_name]
        await db_client.client.admin.command("ping")
        await ensure_indexes(db_client.db)
        logger.info("MongoDB connection established (db: %s)", settings.mongo_db_name)
    except Exception as exc:
        logger.warning(
            "MongoDB unavailable at startup: %s. "
            "API running in degraded mode — DB endpoints will fail.",
            exc,
        )
        db_client.client = None
        db_client.db = None


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """Create the indexes the report queries rely on (idempotent)."""
    await db["users"].create_index("email", unique=True)
    await db["reports"].create_index([("location", GEOSPHERE)])
    await db["reports"].create_index([("timestamp", DESCENDING)])
    await db["reports"].create_index([("created_at", DESCENDING)])
    await db["reports"].create_index([("user_id", ASCENDING), ("timestamp", DESCENDING)])
    await db["reports"].create_index([("verified", ASCENDING)])


async def close_mongo_connection() -> None:
    """Close the MongoDB connection gracefully on app shutdown."""
    if db_client.client is not None:
        db_client.client.close()
        logger.info("MongoDB connection closed")


def get_db() -> AsyncIOMotorDatabase | None:
    """
    FastAPI dependency — inject the database into route handlers.

    Returns None when MongoDB is unavailable; routes answer 503 in that case.
    """
    return db_client.db


def _redact_uri(uri: str) -> str:
    """Strip credentials from URI before logging."""
    return re.sub(r"://[^:]+:[^@]+@", "://<redacted>@", uri)
