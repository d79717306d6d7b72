"""
dashboard.py — Analyst / admin dashboard routes.

Routes:
  GET /api/v1/dashboard/stats        — counts + breakdown + hotspots (analyst, admin)
  GET /api/v1/dashboard/analytics    — daily counts, verification, top reporters (analyst, admin)
  GET /api/v1/dashboard/export       — full dataset as JSON or CSV (admin)
  GET /api/v1/dashboard/connections  — live realtime audience (admin)

Stats are recomputed on every call (no cache). The same shape is pushed
to analysts and admins as `dashboard_update` after report mutations.
"""

import csv
import io
import logging
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response

from oceanwatch.core.database import get_db
from oceanwatch.models.dashboard import AnalyticsResponse, ConnectionStats, DashboardStats
from oceanwatch.routes.auth import AdminUser, StaffUser
from oceanwatch.routes.reports import HubDep, StoreDep
from oceanwatch.services.analytics import compute_analytics, lookup_reporters
from oceanwatch.services.stats import compute_stats

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/dashboard", tags=["dashboard"])

_CSV_HEADERS = [
    "ID", "Event Type", "Description", "Longitude", "Latitude",
    "Location Name", "Media URLs", "Verified", "Timestamp",
    "Reporter Name", "Reporter Email",
]


@router.get("/stats", response_model=DashboardStats)
async def get_stats(current_user: StaffUser, store: StoreDep):
    """Dashboard aggregates with the default hotspot set (5 clusters, 30 days)."""
    return await compute_stats(store)


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_analytics(
    current_user: StaffUser,
    store: StoreDep,
    days: int = Query(default=30, ge=1, le=365),
    db=Depends(get_db),
):
    """Trailing-window analytics: per-day counts, verification turnaround, top reporters."""
    return await compute_analytics(store, db["users"], days=days)


@router.get("/export")
async def export_reports(
    admin: AdminUser,
    store: StoreDep,
    fmt: Literal["json", "csv"] = Query(default="json", alias="format"),
    verified_only: bool = Query(default=False),
    db=Depends(get_db),
):
    """Export every report (optionally verified only), newest first."""
    reports = await store.iter_all({"verified": True} if verified_only else None)

    # Reporter names / emails for the export columns
    reporters = await lookup_reporters(db["users"], (r.user_id for r in reports))

    now = datetime.now(tz=timezone.utc)
    logger.info("Export of %d reports (%s) by %s", len(reports), fmt, admin.email)

    if fmt == "csv":
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(_CSV_HEADERS)
        for r in reports:
            reporter = reporters.get(r.user_id, {})
            writer.writerow([
                r.id,
                r.event_type,
                r.description,
                r.longitude,
                r.latitude,
                r.location_name or "",
                ";".join(r.media_urls),
                str(r.verified).lower(),
                r.timestamp.isoformat(),
                reporter.get("name", ""),
                reporter.get("email", ""),
            ])
        filename = f"hazard_reports_{now.date().isoformat()}.csv"
        return Response(
            content=buf.getvalue(),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    rows = []
    for r in reports:
        reporter = reporters.get(r.user_id, {})
        rows.append({
            **r.model_dump(mode="json"),
            "reporter_name": reporter.get("name"),
            "reporter_email": reporter.get("email"),
        })
    return JSONResponse(content={
        "reports": rows,
        "count": len(rows),
        "exported_at": now.isoformat(),
        "exported_by": admin.email,
    })


@router.get("/connections", response_model=ConnectionStats)
async def get_connections(admin: AdminUser, hub: HubDep):
    """How many realtime clients are connected, and as which roles."""
    by_role = hub.role_counts()
    return ConnectionStats(
        connected=hub.connected_count,
        authenticated=sum(by_role.values()),
        by_role=by_role,
    )
