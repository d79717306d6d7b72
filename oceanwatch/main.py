"""
OceanWatch API — Application entry point.

Bootstraps FastAPI, wires up middleware, registers route groups,
and manages the MongoDB connection lifecycle.

Run:
    uvicorn oceanwatch.main:app --reload --port 8000
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from oceanwatch.core.config import settings
from oceanwatch.core.database import close_mongo_connection, connect_to_mongo
from oceanwatch.core.rate_limit import limiter
from oceanwatch.routes.auth import router as auth_router
from oceanwatch.routes.dashboard import router as dashboard_router
from oceanwatch.routes.health import router as health_router
from oceanwatch.routes.realtime import router as realtime_router
from oceanwatch.routes.reports import router as reports_router
from oceanwatch.routes.users import router as users_router
from oceanwatch.services.realtime import hub

# ─── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Lifespan ──────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: connect to MongoDB (degraded mode if unreachable).
    Shutdown: close Mongo. Live sockets are not drained; clients reconnect,
    re-authenticate and re-subscribe against the next process.
    """
    logger.info(
        "Starting OceanWatch API (env: %s, stats tz: %s)",
        settings.environment,
        settings.stats_timezone,
    )
    await connect_to_mongo()
    yield
    logger.info("Shutting down OceanWatch API (%d realtime connections open)", hub.connected_count)
    await close_mongo_connection()


# ─── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="OceanWatch API",
    description=(
        "Crowdsourced ocean-hazard reporting: geotagged citizen reports, "
        "analyst verification, hotspot clustering and realtime updates."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)


# ─── Rate limiting ─────────────────────────────────────────────────────────────
# Routes opt-in with @limiter.limit(...) + request: Request parameter.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ─── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Routes ────────────────────────────────────────────────────────────────────
app.include_router(health_router, prefix="/health", tags=["health"])

app.include_router(auth_router)
app.include_router(users_router)

app.include_router(reports_router)
app.include_router(dashboard_router)

# WS /ws
app.include_router(realtime_router)


@app.get("/", tags=["root"])
async def root():
    """API root — basic metadata."""
    return {
        "name": "OceanWatch API",
        "version": "0.1.0",
        "status": "running",
        "environment": settings.environment,
        "docs": "/docs",
        "realtime": "/ws",
    }
