"""
dashboard.py — Pydantic models for hotspots and dashboard aggregates.

Both shapes are derived and never persisted:

  ReportCluster   one hotspot from a single clustering run. cluster_id is
                  the ordinal inside that run only; it is not stable across
                  runs, so clients must not use it as a key between refreshes.
  DashboardStats  report counts + per-type breakdown + current hotspots.
                  Recomputed on every request and pushed to analysts/admins
                  as `dashboard_update`.
  AnalyticsResponse  daily counts, verification turnaround and top
                  reporters over a trailing window (GET /dashboard/analytics).
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from oceanwatch.models.report import EventType


class ReportCluster(BaseModel):
    """A spatial grouping of reports."""

    cluster_id: int
    event_type: EventType   # dominant type among members
    report_count: int = Field(ge=1)
    center_lat: float
    center_lon: float


class DashboardStats(BaseModel):
    """Snapshot returned by GET /api/v1/dashboard/stats."""

    total_reports: int
    unverified_reports: int
    reports_today: int
    reports_this_week: int
    # Only types with at least one report appear here
    event_type_breakdown: dict[str, int] = Field(default_factory=dict)
    hotspots: list[ReportCluster] = Field(default_factory=list)


class HotspotParameters(BaseModel):
    cluster_count: int
    days_back: int
    min_date: datetime


class HotspotsResponse(BaseModel):
    """Response shape for GET /api/v1/reports/hotspots."""

    hotspots: list[ReportCluster]
    parameters: HotspotParameters


class ConnectionStats(BaseModel):
    """Live realtime audience, for GET /api/v1/dashboard/connections."""

    connected: int
    authenticated: int
    by_role: dict[str, int]


class DailyCount(BaseModel):
    """Reports of one event type observed on one calendar day."""

    date: str   # YYYY-MM-DD in settings.stats_timezone
    event_type: EventType
    count: int


class VerificationStat(BaseModel):
    verified: bool
    count: int
    # None for the unverified bucket, or when nothing was verified yet
    avg_verification_time_hours: Optional[float] = None


class TopReporter(BaseModel):
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    report_count: int
    verified_count: int


class AnalyticsResponse(BaseModel):
    """Response shape for GET /api/v1/dashboard/analytics."""

    time_series: list[DailyCount]
    verification_stats: list[VerificationStat]
    top_reporters: list[TopReporter]
    days: int
    period: str   # e.g. "last_30_days"
