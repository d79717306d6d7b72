"""
reports.py — Hazard report routes.

Routes:
  GET    /api/v1/reports                 — list reports (filterable, paginated)
  GET    /api/v1/reports/hotspots        — spatial clusters for the map
  GET    /api/v1/reports/mine            — the caller's own reports
  GET    /api/v1/reports/{id}            — single report
  POST   /api/v1/reports                 — submit a report (any signed-in user)
  PATCH  /api/v1/reports/{id}/verify     — verify (analyst / admin)
  DELETE /api/v1/reports/{id}            — delete (owner or admin)

Reads are public. Every mutation is written to MongoDB first; only then is
the realtime broadcast issued, so a client reacting to an event and
re-querying always sees the change. The dashboard recomputation runs in a
background task after the response.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from oceanwatch.core.config import settings
from oceanwatch.core.database import get_db
from oceanwatch.models.dashboard import HotspotParameters, HotspotsResponse
from oceanwatch.models.report import (
    BoundingBox,
    EventType,
    Report,
    ReportCreate,
    ReportFilters,
    ReportListResponse,
)
from oceanwatch.routes.auth import CurrentUser, StaffUser
from oceanwatch.services.hotspots import compute_hotspots
from oceanwatch.services.realtime import RealtimeHub, get_hub
from oceanwatch.services.report_store import (
    ReportAlreadyVerifiedError,
    ReportStore,
    to_object_id,
)
from oceanwatch.services.stats import publish_dashboard_update

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/reports", tags=["reports"])


# ── Dependencies ──────────────────────────────────────────────────────────────

def get_report_store(db=Depends(get_db)) -> ReportStore:
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return ReportStore(db)


StoreDep = Annotated[ReportStore, Depends(get_report_store)]
HubDep = Annotated[RealtimeHub, Depends(get_hub)]


# ── Helpers ───────────────────────────────────────────────────────────────────

def _validate_id(report_id: str) -> str:
    if to_object_id(report_id) is None:
        raise HTTPException(status_code=422, detail="Invalid report ID format")
    return report_id


def _parse_bbox(raw: Optional[str]) -> Optional[BoundingBox]:
    if raw is None:
        return None
    try:
        return BoundingBox.from_query(raw)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid bbox: {exc}")


# ── Routes ────────────────────────────────────────────────────────────────────

@router.get("", response_model=ReportListResponse)
async def list_reports(
    store: StoreDep,
    bbox: Optional[str] = Query(default=None, description="minLon,minLat,maxLon,maxLat"),
    event_type: Optional[EventType] = Query(default=None),
    verified: Optional[bool] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None, description="Event time lower bound (ISO-8601)"),
    end_date: Optional[datetime] = Query(default=None, description="Event time upper bound (ISO-8601)"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    """Return reports newest first (by event time)."""
    filters = ReportFilters(
        bbox=_parse_bbox(bbox),
        event_type=event_type,
        verified=verified,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    reports = await store.list_reports(filters)
    return ReportListResponse(reports=reports, count=len(reports), limit=limit, offset=offset)


@router.get("/hotspots", response_model=HotspotsResponse)
async def get_hotspots(
    store: StoreDep,
    clusters: int = Query(default=settings.hotspot_default_clusters, ge=1, le=50),
    days: int = Query(default=settings.hotspot_window_days, ge=1, le=365),
):
    """Cluster the reports of the last *days* days into at most *clusters* hotspots."""
    min_date = datetime.now(tz=timezone.utc) - timedelta(days=days)
    hotspots = await compute_hotspots(store, cluster_count=clusters, since=min_date)
    return HotspotsResponse(
        hotspots=hotspots,
        parameters=HotspotParameters(cluster_count=clusters, days_back=days, min_date=min_date),
    )


@router.get("/mine", response_model=ReportListResponse)
async def my_reports(
    current_user: CurrentUser,
    store: StoreDep,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    """Reports submitted by the caller."""
    reports = await store.list_reports_by_user(current_user.id, limit=limit, offset=offset)
    return ReportListResponse(reports=reports, count=len(reports), limit=limit, offset=offset)


@router.get("/{report_id}", response_model=Report)
async def get_report(report_id: str, store: StoreDep):
    report = await store.get_report(_validate_id(report_id))
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


@router.post("", response_model=Report, status_code=status.HTTP_201_CREATED)
async def create_report(
    payload: ReportCreate,
    current_user: CurrentUser,
    store: StoreDep,
    hub: HubDep,
    background_tasks: BackgroundTasks,
):
    """Submit a hazard report and push it to live clients."""
    report = await store.create_report(current_user.id, payload)
    hub.broadcast_new_report(report)
    background_tasks.add_task(publish_dashboard_update, store, hub)
    return report


@router.patch("/{report_id}/verify", response_model=Report)
async def verify_report(
    report_id: str,
    current_user: StaffUser,
    store: StoreDep,
    hub: HubDep,
    background_tasks: BackgroundTasks,
):
    """Mark a report verified. A report can only be verified once."""
    try:
        report = await store.verify_report(_validate_id(report_id), current_user.id)
    except ReportAlreadyVerifiedError:
        raise HTTPException(status_code=409, detail="Report is already verified")

    if report is None:
        raise HTTPException(status_code=404, detail="Report not found")

    hub.broadcast_report_verification(report)
    background_tasks.add_task(publish_dashboard_update, store, hub)
    return report


@router.delete("/{report_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_report(
    report_id: str,
    current_user: CurrentUser,
    store: StoreDep,
    hub: HubDep,
    background_tasks: BackgroundTasks,
):
    """Delete a report. Only its author or an admin may do this."""
    report = await store.get_report(_validate_id(report_id))
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found")

    if report.user_id != current_user.id and current_user.role != "admin":
        raise HTTPException(status_code=403, detail="Insufficient permissions to delete this report")

    if not await store.delete_report(report_id):
        raise HTTPException(status_code=404, detail="Report not found")

    logger.info("Report %s deleted by %s", report_id, current_user.id)
    background_tasks.add_task(publish_dashboard_update, store, hub)
