"""
stats.py — Dashboard aggregate counts.

All counts are independent reads issued together with asyncio.gather, so
they reflect (almost) the same instant without any ordering between them.
Small skew between counts is acceptable on this read path.

"Today" and "this week" are calendar boundaries in settings.stats_timezone
(UTC by default); a week starts on Monday. Both compare against the
report's event timestamp.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from oceanwatch.core.config import settings
from oceanwatch.models.dashboard import DashboardStats
from oceanwatch.models.report import EVENT_TYPES
from oceanwatch.services.hotspots import compute_hotspots

logger = logging.getLogger(__name__)


def calendar_bounds(now: datetime, tz: tzinfo) -> tuple[datetime, datetime]:
    """Return (start of today, start of this week) in *tz* for the instant *now*."""
    local = now.astimezone(tz)
    start_of_day = local.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_week = start_of_day - timedelta(days=local.weekday())
    return start_of_day, start_of_week


async def compute_stats(
    store,
    *,
    cluster_count: Optional[int] = None,
    since: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> DashboardStats:
    """Count reports over the whole store and attach the current hotspots."""
    now = now or datetime.now(tz=timezone.utc)
    start_of_day, start_of_week = calendar_bounds(now, ZoneInfo(settings.stats_timezone))

    total, unverified, today, this_week, hotspots, *per_type = await asyncio.gather(
        store.count_reports({}),
        store.count_reports({"verified": False}),
        store.count_reports({"timestamp": {"$gte": start_of_day}}),
        store.count_reports({"timestamp": {"$gte": start_of_week}}),
        compute_hotspots(store, cluster_count=cluster_count, since=since),
        *(store.count_reports({"event_type": event_type}) for event_type in EVENT_TYPES),
    )

    breakdown = {
        event_type: count
        for event_type, count in zip(EVENT_TYPES, per_type)
        if count > 0
    }

    return DashboardStats(
        total_reports=total,
        unverified_reports=unverified,
        reports_today=today,
        reports_this_week=this_week,
        event_type_breakdown=breakdown,
        hotspots=hotspots,
    )


async def publish_dashboard_update(store, hub) -> None:
    """
    Recompute stats and push them to analysts/admins.

    Runs as a background task after a report mutation has been written.
    If the store read fails the update is skipped; dashboards keep their
    last figures until the next refresh.
    """
    try:
        stats = await compute_stats(store)
    except Exception as exc:
        logger.warning("Dashboard update skipped — stats query failed: %s", exc)
        return
    hub.broadcast_dashboard_update(stats)
