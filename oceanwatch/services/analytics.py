"""
analytics.py — Trailing-window report analytics for the dashboard.

Three MongoDB aggregation pipelines run concurrently over the `reports`
collection:

  time_series         reports per (calendar day, event type), newest day first.
                      Days are cut in settings.stats_timezone on the event
                      timestamp.
  verification_stats  reports created in the window, split by verified flag,
                      with the mean created → verified delay in hours.
  top_reporters       the most active reporters by reports created in the
                      window, with how many of theirs were verified.

Reporter names and emails are joined in Python from the `users` collection
with a single $in lookup, so the pipelines stay within one collection.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from bson import ObjectId

from oceanwatch.core.config import settings
from oceanwatch.models.dashboard import (
    AnalyticsResponse,
    DailyCount,
    TopReporter,
    VerificationStat,
)

logger = logging.getLogger(__name__)

_MS_PER_HOUR = 3_600_000


async def lookup_reporters(users, user_ids: Iterable[str]) -> dict[str, dict]:
    """Map user id → user document for every id that parses and exists."""
    oids = [ObjectId(uid) for uid in set(user_ids) if ObjectId.is_valid(uid)]
    reporters: dict[str, dict] = {}
    if oids:
        async for doc in users.find({"_id": {"$in": oids}}):
            reporters[str(doc["_id"])] = doc
    return reporters


def time_series_pipeline(since: datetime) -> list[dict]:
    return [
        {"$match": {"timestamp": {"$gte": since}}},
        {"$group": {
            "_id": {
                "date": {"$dateToString": {
                    "format": "%Y-%m-%d",
                    "date": "$timestamp",
                    "timezone": settings.stats_timezone,
                }},
                "event_type": "$event_type",
            },
            "count": {"$sum": 1},
        }},
        {"$sort": {"_id.date": -1, "_id.event_type": 1}},
    ]


def verification_pipeline(since: datetime) -> list[dict]:
    # $subtract of two dates is in milliseconds; null verified_at stays null
    # and $avg skips it.
    return [
        {"$match": {"created_at": {"$gte": since}}},
        {"$group": {
            "_id": "$verified",
            "count": {"$sum": 1},
            "avg_ms": {"$avg": {"$subtract": ["$verified_at", "$created_at"]}},
        }},
        {"$sort": {"_id": 1}},
    ]


def top_reporters_pipeline(since: datetime, limit: int) -> list[dict]:
    return [
        {"$match": {"created_at": {"$gte": since}}},
        {"$group": {
            "_id": "$user_id",
            "report_count": {"$sum": 1},
            "verified_count": {"$sum": {"$cond": ["$verified", 1, 0]}},
        }},
        {"$sort": {"report_count": -1, "_id": 1}},
        {"$limit": limit},
    ]


async def compute_analytics(
    store,
    users,
    *,
    days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> AnalyticsResponse:
    """Run the three analytics pipelines over the last *days* days."""
    days = days or settings.analytics_window_days
    now = now or datetime.now(tz=timezone.utc)
    since = now - timedelta(days=days)

    series, verification, top = await asyncio.gather(
        store.aggregate(time_series_pipeline(since)),
        store.aggregate(verification_pipeline(since)),
        store.aggregate(top_reporters_pipeline(since, settings.analytics_top_reporters)),
    )

    reporters = await lookup_reporters(users, (row["_id"] for row in top))

    top_reporters = []
    for row in top:
        user_id = str(row["_id"])
        reporter = reporters.get(user_id, {})
        top_reporters.append(TopReporter(
            user_id=user_id,
            name=reporter.get("name"),
            email=reporter.get("email"),
            report_count=row["report_count"],
            verified_count=row["verified_count"],
        ))

    logger.debug("Analytics over %d days: %d series rows, %d reporters", days, len(series), len(top))
    return AnalyticsResponse(
        time_series=[
            DailyCount(date=row["_id"]["date"], event_type=row["_id"]["event_type"], count=row["count"])
            for row in series
        ],
        verification_stats=[
            VerificationStat(
                verified=bool(row["_id"]),
                count=row["count"],
                avg_verification_time_hours=(
                    row["avg_ms"] / _MS_PER_HOUR if row.get("avg_ms") is not None else None
                ),
            )
            for row in verification
        ],
        top_reporters=top_reporters,
        days=days,
        period=f"last_{days}_days",
    )
