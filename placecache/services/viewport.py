from __future__ import annotations

import math
from typing import Optional, Sequence

from placecache.core.contracts import Place

# Zoom tiers for the viewport path.
LOW_ZOOM = 10           # below: reviewed places only
DETAIL_ZOOM = 14        # at or above: everything in view
MEDIUM_ZOOM_MAX_PLACES = 30
MAX_PLACES = 100        # ceiling for the merged in-memory set


def zoom_from_span(longitude_delta: float) -> Optional[float]:
    """Map zoom from the renderer's visible longitude span (degrees)."""
    if not longitude_delta or not math.isfinite(longitude_delta) or longitude_delta <= 0:
        return None
    return math.log2(360.0 / longitude_delta)


def _split_by_reviews(places: Sequence[Place]) -> tuple[list[Place], list[Place]]:
    with_reviews = [p for p in places if p.has_reviews()]
    without_reviews = [p for p in places if not p.has_reviews()]
    return with_reviews, without_reviews


def reduce_by_zoom(places: Sequence[Place], zoom: Optional[float]) -> list[Place]:
    if zoom is None:
        return list(places)

    if zoom < LOW_ZOOM:
        return [p for p in places if p.has_reviews()]

    if zoom < DETAIL_ZOOM and len(places) > MEDIUM_ZOOM_MAX_PLACES:
        with_reviews, without_reviews = _split_by_reviews(places)
        total = min(MEDIUM_ZOOM_MAX_PLACES, len(places))
        fill = max(0, total - len(with_reviews))
        return with_reviews + without_reviews[:fill]

    return list(places)


def cap_places(places: Sequence[Place], limit: int = MAX_PLACES) -> list[Place]:
    """Trim to `limit`, dropping places without reviews first."""
    if len(places) <= limit:
        return list(places)
    with_reviews, without_reviews = _split_by_reviews(places)
    remaining = max(0, limit - len(with_reviews))
    return with_reviews + without_reviews[:remaining]


def merge_places(
    current: Sequence[Place],
    incoming: Sequence[Place],
    zoom: Optional[float],
) -> tuple[list[Place], int]:
    """
    Append places whose id is not already present; existing entries win.
    Returns (merged, added). The cap only applies to viewport merges that
    carry a zoom.
    """
    existing = {p.id for p in current}
    new_places: list[Place] = []
    for p in incoming:
        if p.id in existing:
            continue
        existing.add(p.id)
        new_places.append(p)

    if not new_places:
        return list(current), 0

    combined = list(current) + new_places
    if zoom is not None and len(combined) > MAX_PLACES:
        combined = cap_places(combined)
    return combined, len(new_places)
