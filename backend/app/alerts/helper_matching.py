"""
helper_matching.py — Nearby-helper lookup for an active alert.

═══════════════════════════════════════════════════════════════════════════
TWO-PHASE FILTER
═══════════════════════════════════════════════════════════════════════════

    Phase 1 — the helper store returns every helper whose last known
              position lies inside ``bounding_box(center, radius_km)``.
              This is a plain range query the store can index.
    Phase 2 — each candidate is re-checked with the precise Haversine
              distance and kept only when available and
              ``distance_km <= radius_km``.

The box always contains the circle (it wraps at ±180° longitude), so
phase 1 may over-select but never loses a helper that phase 2 would keep.

═══════════════════════════════════════════════════════════════════════════
RADIUS
═══════════════════════════════════════════════════════════════════════════

The search radius is user-selectable and clamped to

    MIN_HELPER_RADIUS_KM (5) ≤ radius ≤ MAX_HELPER_RADIUS_KM (20)

with DEFAULT_HELPER_RADIUS_KM (10) when none is given.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from backend.app.alerts.models import Location, NearbyHelper
from backend.app.alerts.stores.base import HelperStore
from backend.app.core.config import settings
from backend.app.spatial.geo_matcher import (
    bearing_degrees,
    bounding_box,
    compass_direction,
    distance_km,
    estimate_eta_minutes,
)

logger = logging.getLogger(__name__)


def clamp_radius(radius_km: Optional[float] = None) -> float:
    """Clamp a requested search radius into the supported range."""
    if radius_km is None:
        return settings.DEFAULT_HELPER_RADIUS_KM
    return min(
        settings.MAX_HELPER_RADIUS_KM,
        max(settings.MIN_HELPER_RADIUS_KM, float(radius_km)),
    )


async def find_nearby_helpers(
    helper_store: HelperStore,
    center: Location,
    radius_km: float,
    *,
    limit: Optional[int] = None,
    exclude_user_ids: Iterable[str] = (),
) -> List[NearbyHelper]:
    """
    Available helpers within ``radius_km`` of ``center``, nearest first.

    Parameters
    ----------
    helper_store : HelperStore
        Source of helper profiles; must answer bounding-box queries.
    center : Location
        Alert location.
    radius_km : float
        Search radius in km (callers usually pass ``clamp_radius(...)``).
    limit : int | None
        Cap the number of returned helpers.
    exclude_user_ids : iterable of str
        Users never returned (the requester themself).

    Returns
    -------
    list of NearbyHelper
        Each carrying distance, ETA, bearing and compass direction.
    """
    box = bounding_box(center, radius_km)
    candidates = await helper_store.query_helpers_in_box(box)
    excluded = set(exclude_user_ids)

    matched: List[NearbyHelper] = []
    for helper in candidates:
        if helper.user_id in excluded or not helper.is_available:
            continue
        dist = distance_km(center, helper.location)
        if dist > radius_km:
            continue
        bearing = bearing_degrees(center, helper.location)
        matched.append(NearbyHelper(
            helper=helper,
            distance_km=dist,
            eta_minutes=estimate_eta_minutes(dist * 1000.0, settings.ETA_SPEED_KMH),
            bearing_degrees=bearing,
            direction=compass_direction(bearing),
        ))

    matched.sort(key=lambda h: h.distance_km)
    if limit is not None:
        matched = matched[:limit]

    logger.info(
        "Nearby helpers: %d of %d candidates within %.1f km",
        len(matched), len(candidates), radius_km,
    )
    return matched
