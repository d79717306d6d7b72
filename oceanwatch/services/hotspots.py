"""
hotspots.py — Spatial clustering of hazard reports into hotspots.

Groups the reports of a time window into at most `cluster_count` clusters
by position and summarises each one (centroid, member count, dominant
event type). Results are derived on every call and never stored.

ALGORITHM
─────────
scikit-learn KMeans over (longitude, latitude) in native degrees. No
projection correction: at dashboard zoom levels the distortion is
irrelevant.

Determinism: the same report set always gives the same clusters.
  • points are sorted by (lon, lat, report_id) before fitting
  • KMeans runs with a fixed random_state

k is capped at the number of distinct positions, so no cluster starts
empty. Iteration stops at convergence or after `max_iterations`. A
cluster left without members is dropped. Centres are the mean of each
cluster's members.

USAGE
─────
    from oceanwatch.services.hotspots import HotspotPoint, cluster_points

    clusters = cluster_points(points, cluster_count=5)
    # → list[ReportCluster], biggest first, cluster_id = 0, 1, 2 …

    clusters = await compute_hotspots(store, cluster_count=5)   # last 30 days

TESTING
────────
    pytest tests/test_hotspots.py -v
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import numpy as np
from sklearn.cluster import KMeans

from oceanwatch.core.config import settings
from oceanwatch.models.dashboard import ReportCluster

logger = logging.getLogger(__name__)

RANDOM_SEED = 42
N_INIT = 10


@dataclass(frozen=True)
class HotspotPoint:
    """The slice of a report the clustering needs."""

    report_id: str
    longitude: float
    latitude: float
    event_type: str

    @property
    def position(self) -> tuple[float, float]:
        return (self.longitude, self.latitude)


def dominant_event_type(members: Sequence[HotspotPoint]) -> str:
    """Most frequent event type; ties go to the lexicographically smallest name."""
    counts = Counter(p.event_type for p in members)
    return min(counts, key=lambda name: (-counts[name], name))


def cluster_points(
    points: Sequence[HotspotPoint],
    cluster_count: int,
    max_iterations: Optional[int] = None,
) -> list[ReportCluster]:
    """
    Partition *points* into at most *cluster_count* spatial clusters.

    Raises ValueError if cluster_count < 1. Returns [] for no points.
    The member counts of the result always sum to len(points).
    """
    if cluster_count < 1:
        raise ValueError("cluster_count must be a positive integer")
    if not points:
        return []

    iterations = max_iterations if max_iterations is not None else settings.hotspot_max_iterations
    iterations = max(1, iterations)

    ordered = sorted(points, key=lambda p: (p.longitude, p.latitude, p.report_id))
    XY = np.array([p.position for p in ordered], dtype=float)
    k = min(cluster_count, len(np.unique(XY, axis=0)))

    km = KMeans(n_clusters=k, n_init=N_INIT, max_iter=iterations, random_state=RANDOM_SEED)
    labels = km.fit_predict(XY)
    if km.n_iter_ >= iterations:
        logger.debug("k-means hit the iteration cap (%d) with k=%d", iterations, k)

    summaries = []
    for ci in range(k):
        mask = labels == ci
        if not mask.any():
            continue
        center_lon, center_lat = XY[mask].mean(axis=0)
        members = [p for p, member in zip(ordered, mask) if member]
        summaries.append((len(members), float(center_lon), float(center_lat), dominant_event_type(members)))

    summaries.sort(key=lambda s: (-s[0], s[1], s[2]))
    return [
        ReportCluster(
            cluster_id=ordinal,
            event_type=event_type,
            report_count=count,
            center_lat=center_lat,
            center_lon=center_lon,
        )
        for ordinal, (count, center_lon, center_lat, event_type) in enumerate(summaries)
    ]


async def compute_hotspots(
    store,
    cluster_count: Optional[int] = None,
    since: Optional[datetime] = None,
) -> list[ReportCluster]:
    """
    Cluster the reports whose event timestamp is >= *since*.

    Defaults: settings.hotspot_default_clusters clusters over the last
    settings.hotspot_window_days days. Read-only; nothing is cached.
    """
    if cluster_count is None:
        cluster_count = settings.hotspot_default_clusters
    if cluster_count < 1:
        raise ValueError("cluster_count must be a positive integer")
    if since is None:
        since = datetime.now(tz=timezone.utc) - timedelta(days=settings.hotspot_window_days)

    points = await store.cluster_points(since)
    clusters = cluster_points(points, cluster_count)
    logger.debug("Hotspots: %d reports → %d clusters (requested %d)", len(points), len(clusters), cluster_count)
    return clusters
