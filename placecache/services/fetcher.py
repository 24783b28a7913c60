from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Literal, Optional, Sequence

from placecache.core.contracts import LatLng, Place, Review
from placecache.core.errors import RemoteQueryError, StorageWriteError
from placecache.core.geometry import in_bounds, parse_location
from placecache.core.settings import Settings, settings as default_settings
from placecache.core.storage import CacheStore
from placecache.core.time import utc_now_iso
from placecache.services.review_schema import (
    ReviewSource,
    fetch_review_rows,
    review_sources_from_settings,
)
from placecache.services.row_store import RowStore
from placecache.services.viewport import reduce_by_zoom

logger = logging.getLogger(__name__)

PLACE_COLUMNS: tuple[str, ...] = ("id", "name", "location", "google", "website", "phone")
DEFAULT_RATING = 5


# ──────────────────────────────────────────────────────────────
# Normalisation
# ──────────────────────────────────────────────────────────────

def _coerce_rating(value: Any) -> float:
    # Falsy ratings (None, "", 0) count as missing, same as anything non-numeric.
    if not value or isinstance(value, bool):
        return DEFAULT_RATING
    try:
        f = float(value)
    except (TypeError, ValueError):
        return DEFAULT_RATING
    if not math.isfinite(f):
        return DEFAULT_RATING
    return f


def _first_str(raw: dict[str, Any], *keys: str) -> Optional[str]:
    for k in keys:
        v = raw.get(k)
        if v not in (None, ""):
            return str(v)
    return None


def normalize_review(raw: dict[str, Any], place_id_field: str) -> Review:
    now = utc_now_iso()
    return Review(
        id=_first_str(raw, "id") or f"auto-{uuid.uuid4().hex[:7]}",
        place_id=_first_str(raw, place_id_field, "place_id") or "",
        rating=_coerce_rating(raw.get("rating")),
        created_at=_first_str(raw, "created_at") or now,
        updated_at=_first_str(raw, "updated_at") or now,
        comment=_first_str(raw, "comment", "text", "content"),
        user_id=_first_str(raw, "user_id", "userId", "author"),
    )


def _row_to_place(row: dict[str, Any]) -> Optional[Place]:
    pid = row.get("id")
    if pid in (None, ""):
        return None
    return Place(
        id=str(pid),
        name=str(row.get("name") or ""),
        location=row.get("location"),
        google=row.get("google"),
        website=row.get("website"),
        phone=row.get("phone"),
    )


def group_reviews(reviews: Sequence[Review]) -> dict[str, list[Review]]:
    out: dict[str, list[Review]] = {}
    for r in reviews:
        out.setdefault(r.place_id, []).append(r)
    return out


def attach_reviews(places: Sequence[Place], reviews: Sequence[Review]) -> None:
    grouped = group_reviews(reviews)
    for p in places:
        p.reviews = grouped.get(p.id, [])


# ──────────────────────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────────────────────

@dataclass
class ReviewAttachment:
    """What fetch_reviews_for_places did, so callers can see swallowed failures."""
    places: list[Place]
    source: Literal["remote", "cache", "none"]
    review_count: int = 0
    error: Optional[str] = None
    storage_error: Optional[str] = None


# ──────────────────────────────────────────────────────────────
# Fetcher
# ──────────────────────────────────────────────────────────────

class RemoteFetcher:
    """
    Turns remote rows into Place/Review records.

    Reviews are best-effort: a failed review query never fails a place fetch.
    """

    def __init__(
        self,
        rows: RowStore,
        store: CacheStore,
        *,
        places_table: str = "Place",
        review_sources: Sequence[ReviewSource] | None = None,
        cache_duration_minutes: float = 60,
        row_limit: Optional[int] = None,
    ) -> None:
        self.rows = rows
        self.store = store
        self.places_table = places_table
        self.review_sources = list(review_sources or [ReviewSource(table="Reviews")])
        self.cache_duration_minutes = cache_duration_minutes
        self.row_limit = row_limit

    @classmethod
    def from_settings(cls, rows: RowStore, store: CacheStore, cfg: Settings | None = None) -> "RemoteFetcher":
        cfg = cfg or default_settings
        return cls(
            rows,
            store,
            places_table=cfg.places_table,
            review_sources=review_sources_from_settings(cfg),
            cache_duration_minutes=cfg.cache_duration_minutes,
            row_limit=cfg.remote_row_limit,
        )

    async def _select_places(self) -> list[Place]:
        res = await self.rows.select(self.places_table, PLACE_COLUMNS, limit=self.row_limit)
        if res.error is not None:
            logger.error(
                "[fetcher] %s query FAILED code=%s msg=%s",
                self.places_table, res.error.code, res.error.message,
            )
            raise RemoteQueryError(res.error.code, f"Failed to fetch places: {res.error.message}")

        places: list[Place] = []
        seen: set[str] = set()
        for r in res.rows:
            p = _row_to_place(r)
            # first row wins on a repeated id
            if p is None or p.id in seen:
                continue
            seen.add(p.id)
            places.append(p)
        dropped = len(res.rows) - len(places)
        if dropped:
            logger.warning("[fetcher] dropped %d %s rows without id or with a repeated id", dropped, self.places_table)
        return places

    async def fetch_places(self) -> list[Place]:
        places = await self._select_places()
        if not places:
            raise RemoteQueryError("empty", f"No places found in {self.places_table} table")
        logger.info("[fetcher] loaded %d places from %s", len(places), self.places_table)
        return places

    async def fetch_reviews_for_places(self, places: list[Place]) -> ReviewAttachment:
        resolved = await fetch_review_rows(self.rows, self.review_sources, limit=self.row_limit)

        if resolved.error is not None:
            logger.error(
                "[fetcher] reviews query FAILED code=%s msg=%s",
                resolved.error.code, resolved.error.message,
            )
            return ReviewAttachment(
                places=places,
                source="none",
                error=f"{resolved.error.code}: {resolved.error.message}",
            )

        if resolved.rows:
            reviews = [normalize_review(r, resolved.join_field) for r in resolved.rows]
            storage_error = None
            try:
                self.store.store_reviews(reviews, self.cache_duration_minutes)
            except StorageWriteError as e:
                storage_error = str(e)
                logger.error("[fetcher] caching reviews FAILED: %s", e)

            attach_reviews(places, reviews)
            logger.info(
                "[fetcher] attached %d reviews from %s (join=%s)",
                len(reviews), resolved.source.table if resolved.source else "?", resolved.join_field,
            )
            return ReviewAttachment(
                places=places,
                source="remote",
                review_count=len(reviews),
                storage_error=storage_error,
            )

        cached = self.store.get_reviews()
        logger.info("[fetcher] no remote reviews; using %d cached reviews", len(cached))
        attach_reviews(places, cached)
        return ReviewAttachment(places=places, source="cache", review_count=len(cached))

    async def fetch_places_within_bounds(
        self,
        north_east: LatLng,
        south_west: LatLng,
        zoom: Optional[float] = None,
    ) -> list[Place]:
        """
        Candidates for the viewport: everything from the place table whose
        parsed location falls in the box, with reviews attached, reduced by
        zoom tier. Merging into the published set is the caller's job.
        """
        places = await self._select_places()
        if not places:
            logger.info("[fetcher] no places returned for bounds query")
            return []

        in_view: list[Place] = []
        for p in places:
            loc = parse_location(p.location)
            if loc is None:
                continue
            if in_bounds(loc, north_east, south_west):
                in_view.append(p)

        logger.info(
            "[fetcher] %d/%d places inside bounds ne=(%.5f,%.5f) sw=(%.5f,%.5f)",
            len(in_view), len(places),
            north_east.lat, north_east.lng, south_west.lat, south_west.lng,
        )
        if not in_view:
            return []

        # Reviews go on before the reduction: the zoom tiers select on has_reviews().
        attached = await self.fetch_reviews_for_places(in_view)
        reduced = reduce_by_zoom(attached.places, zoom)
        if zoom is not None:
            logger.info("[fetcher] zoom %.2f: showing %d of %d", zoom, len(reduced), len(in_view))
        return reduced
