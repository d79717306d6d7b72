"""
report.py — Pydantic schemas for hazard reports.

ReportCreate       — what the citizen sends
Report             — stored report returned by the API and pushed over realtime
ReportFilters      — list query (bbox, type, verified, time range, pagination)
BoundingBox        — lat/lon rectangle, used as a filter and a subscription key
ReportListResponse — list envelope
"""

from datetime import datetime, timedelta, timezone
from typing import Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from oceanwatch.core.config import settings

EventType = Literal["high_wave", "flood", "tsunami", "unusual_tide", "other"]
EVENT_TYPES: tuple[str, ...] = get_args(EventType)


# ── Bounding box ──────────────────────────────────────────────────────────────

class BoundingBox(BaseModel):
    """
    Rectangle in lon/lat space. Wire names are camelCase
    (minLat, maxLat, minLon, maxLon), matching the realtime contract.

    Boxes crossing the antimeridian are not supported: min must be <= max
    on both axes, and a malformed box is rejected rather than clamped.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    min_lat: float = Field(alias="minLat", ge=-90, le=90)
    max_lat: float = Field(alias="maxLat", ge=-90, le=90)
    min_lon: float = Field(alias="minLon", ge=-180, le=180)
    max_lon: float = Field(alias="maxLon", ge=-180, le=180)

    @model_validator(mode="after")
    def _check_order(self) -> "BoundingBox":
        if self.min_lat > self.max_lat:
            raise ValueError("minLat must be less than or equal to maxLat")
        if self.min_lon > self.max_lon:
            raise ValueError("minLon must be less than or equal to maxLon")
        return self

    @classmethod
    def from_query(cls, raw: str) -> "BoundingBox":
        """Parse the `minLon,minLat,maxLon,maxLat` query-string form."""
        parts = [p.strip() for p in raw.split(",")]
        if len(parts) != 4:
            raise ValueError("bbox must be 'minLon,minLat,maxLon,maxLat'")
        try:
            min_lon, min_lat, max_lon, max_lat = (float(p) for p in parts)
        except ValueError:
            raise ValueError("bbox values must be numbers") from None
        return cls(minLat=min_lat, maxLat=max_lat, minLon=min_lon, maxLon=max_lon)

    @property
    def key(self) -> str:
        """Deterministic identity: equal bounds always give the same key."""
        # `+ 0.0` folds -0.0 into 0.0
        return ",".join(
            repr(v + 0.0) for v in (self.min_lat, self.min_lon, self.max_lat, self.max_lon)
        )

    def contains(self, longitude: float, latitude: float) -> bool:
        """Inclusive point-in-box test."""
        return (
            self.min_lon <= longitude <= self.max_lon
            and self.min_lat <= latitude <= self.max_lat
        )

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


# ── Request ───────────────────────────────────────────────────────────────────

class ReportCreate(BaseModel):
    """Payload for POST /api/v1/reports."""
    event_type: EventType
    description: str = Field(min_length=10, max_length=2000)
    longitude: float = Field(ge=-180, le=180)
    latitude: float = Field(ge=-90, le=90)
    location_name: Optional[str] = Field(default=None, max_length=500)
    # Media references (URLs or storage keys); uploads are handled elsewhere
    media_urls: list[str] = Field(default_factory=list, max_length=5)
    # When the hazard was observed; defaults to submission time
    timestamp: Optional[datetime] = None

    @field_validator("timestamp")
    @classmethod
    def not_in_the_future(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Naive values are UTC, as in the store
        if value is None:
            return value
        aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        limit = datetime.now(tz=timezone.utc) + timedelta(seconds=settings.report_future_skew_seconds)
        if aware > limit:
            raise ValueError("timestamp cannot be in the future")
        return value


# ── Report ────────────────────────────────────────────────────────────────────

class Report(BaseModel):
    """A stored hazard report."""
    id: str
    user_id: str
    event_type: EventType
    description: str
    longitude: float
    latitude: float
    location_name: Optional[str] = None
    media_urls: list[str] = Field(default_factory=list)
    verified: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    timestamp: datetime
    created_at: datetime
    updated_at: datetime


class ReportFilters(BaseModel):
    """Filters accepted by ReportStore.list_reports()."""
    bbox: Optional[BoundingBox] = None
    event_type: Optional[EventType] = None
    verified: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class ReportListResponse(BaseModel):
    reports: list[Report]
    count: int
    limit: int
    offset: int
