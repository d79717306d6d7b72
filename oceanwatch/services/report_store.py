"""
report_store.py — MongoDB persistence for hazard reports.

The store is the single source of truth for report data. The hotspot
engine and stats aggregator only read through it and never cache.

Document shape in the `reports` collection:

  {
    "_id": ObjectId,
    "user_id": "65f...",
    "event_type": "flood",
    "description": "...",
    "longitude": 80.27, "latitude": 13.08,
    "location": {"type": "Point", "coordinates": [80.27, 13.08]},   ← 2dsphere
    "location_name": "Marina Beach",
    "media_urls": ["https://..."],
    "verified": false, "verified_by": null, "verified_at": null,
    "timestamp": ISODate(...),     ← when the hazard was observed
    "created_at": ISODate(...), "updated_at": ISODate(...)
  }

Bounding-box filters use plain range queries on longitude / latitude,
which keeps box edges exact (no geodesic edges as with $geometry polygons).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId

from oceanwatch.models.report import Report, ReportCreate, ReportFilters
from oceanwatch.services.hotspots import HotspotPoint

logger = logging.getLogger(__name__)

_NEWEST_FIRST = [("timestamp", -1), ("_id", -1)]


class ReportAlreadyVerifiedError(Exception):
    """Raised when verifying a report whose verification fields are already set."""

    def __init__(self, report_id: str):
        super().__init__(f"Report {report_id} is already verified")
        self.report_id = report_id


# ── Helpers ───────────────────────────────────────────────────────────────────

def to_object_id(report_id: str) -> Optional[ObjectId]:
    """Parse a report id, returning None for malformed ids."""
    try:
        return ObjectId(report_id)
    except (InvalidId, TypeError):
        return None


def doc_to_report(doc: dict) -> Report:
    """Convert a raw MongoDB document to a Report model."""
    return Report(
        id=str(doc["_id"]),
        user_id=str(doc["user_id"]),
        event_type=doc["event_type"],
        description=doc.get("description", ""),
        longitude=doc["longitude"],
        latitude=doc["latitude"],
        location_name=doc.get("location_name"),
        media_urls=list(doc.get("media_urls") or []),
        verified=bool(doc.get("verified", False)),
        verified_by=doc.get("verified_by"),
        verified_at=doc.get("verified_at"),
        timestamp=doc["timestamp"],
        created_at=doc["created_at"],
        updated_at=doc.get("updated_at", doc["created_at"]),
    )


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes from clients are taken to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_query(filters: ReportFilters) -> dict[str, Any]:
    """Translate ReportFilters into a MongoDB filter document."""
    query: dict[str, Any] = {}

    if filters.bbox is not None:
        query["longitude"] = {"$gte": filters.bbox.min_lon, "$lte": filters.bbox.max_lon}
        query["latitude"] = {"$gte": filters.bbox.min_lat, "$lte": filters.bbox.max_lat}

    if filters.event_type:
        query["event_type"] = filters.event_type

    if filters.verified is not None:
        query["verified"] = filters.verified

    time_range: dict[str, datetime] = {}
    if filters.start_date:
        time_range["$gte"] = _as_utc(filters.start_date)
    if filters.end_date:
        time_range["$lte"] = _as_utc(filters.end_date)
    if time_range:
        query["timestamp"] = time_range

    return query


# ── Store ─────────────────────────────────────────────────────────────────────

class ReportStore:
    """Async report repository over a Motor database handle."""

    def __init__(self, db):
        self._reports = db["reports"]

    async def create_report(self, user_id: str, payload: ReportCreate) -> Report:
        now = datetime.now(tz=timezone.utc)
        doc = {
            "user_id": user_id,
            "event_type": payload.event_type,
            "description": payload.description,
            "longitude": payload.longitude,
            "latitude": payload.latitude,
            "location": {"type": "Point", "coordinates": [payload.longitude, payload.latitude]},
            "location_name": payload.location_name,
            "media_urls": list(payload.media_urls),
            "verified": False,
            "verified_by": None,
            "verified_at": None,
            "timestamp": _as_utc(payload.timestamp) if payload.timestamp else now,
            "created_at": now,
            "updated_at": now,
        }
        result = await self._reports.insert_one(doc)
        doc["_id"] = result.inserted_id
        logger.info("Report %s created (%s) by %s", result.inserted_id, payload.event_type, user_id)
        return doc_to_report(doc)

    async def list_reports(self, filters: ReportFilters) -> list[Report]:
        cursor = (
            self._reports.find(build_query(filters))
            .sort(_NEWEST_FIRST)
            .skip(filters.offset)
            .limit(filters.limit)
        )
        return await self._collect(cursor)

    async def list_reports_by_user(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Report]:
        cursor = self._reports.find({"user_id": user_id}).sort(_NEWEST_FIRST).skip(offset).limit(limit)
        return await self._collect(cursor)

    async def iter_all(self, query: Optional[dict] = None) -> list[Report]:
        """Every report matching *query*, newest first (used by export)."""
        return await self._collect(self._reports.find(query or {}).sort(_NEWEST_FIRST))

    async def get_report(self, report_id: str) -> Optional[Report]:
        oid = to_object_id(report_id)
        if oid is None:
            return None
        doc = await self._reports.find_one({"_id": oid})
        return doc_to_report(doc) if doc else None

    async def verify_report(self, report_id: str, verifier_id: str) -> Optional[Report]:
        """
        Mark a report verified.

        Returns None if the report does not exist. The update only matches
        unverified reports, so verifier and timestamp are written once;
        a second attempt raises ReportAlreadyVerifiedError.
        """
        oid = to_object_id(report_id)
        if oid is None:
            return None

        now = datetime.now(tz=timezone.utc)
        result = await self._reports.update_one(
            {"_id": oid, "verified": False},
            {"$set": {
                "verified": True,
                "verified_by": verifier_id,
                "verified_at": now,
                "updated_at": now,
            }},
        )
        doc = await self._reports.find_one({"_id": oid})
        if doc is None:
            return None
        if result.matched_count == 0:
            raise ReportAlreadyVerifiedError(report_id)

        logger.info("Report %s verified by %s", report_id, verifier_id)
        return doc_to_report(doc)

    async def delete_report(self, report_id: str) -> bool:
        oid = to_object_id(report_id)
        if oid is None:
            return False
        result = await self._reports.delete_one({"_id": oid})
        return result.deleted_count > 0

    async def count_reports(self, query: Optional[dict] = None) -> int:
        return await self._reports.count_documents(query or {})

    async def aggregate(self, pipeline: list[dict]) -> list[dict]:
        """Run an aggregation pipeline over the reports and return every row."""
        return await self._reports.aggregate(pipeline).to_list(length=None)

    async def cluster_points(self, since: datetime) -> list[HotspotPoint]:
        """Positions of every report whose event timestamp is >= *since*."""
        cursor = self._reports.find(
            {"timestamp": {"$gte": _as_utc(since)}},
            {"longitude": 1, "latitude": 1, "event_type": 1},
        )
        points = []
        async for doc in cursor:
            points.append(HotspotPoint(
                report_id=str(doc["_id"]),
                longitude=float(doc["longitude"]),
                latitude=float(doc["latitude"]),
                event_type=doc["event_type"],
            ))
        return points

    @staticmethod
    async def _collect(cursor) -> list[Report]:
        items = []
        async for doc in cursor:
            try:
                items.append(doc_to_report(doc))
            except Exception as exc:
                logger.warning("Skipping malformed report doc %s: %s", doc.get("_id"), exc)
        return items
