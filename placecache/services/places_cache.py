"""
placecache/services/places_cache.py

The cache orchestrator: decides whether callers see cached, live, or
fallback places, and owns the published in-memory place list.

    idle ─load─► loading ─┬─ cache_hit ─► background_refreshing ─► idle
                          └─ miss ─► fetching_fresh ─┬─► idle
                                                     └─► fallback_to_cache ─┬─► idle
                                                                            └─► error

Status changes go through `transition()`, a pure function of
(status, event). Places, flags and errors are published as a fresh
PlacesState each time; the last publish wins.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from placecache.core.contracts import CacheStatus, LatLng, PlacesState
from placecache.core.errors import StorageWriteError
from placecache.core.storage import PLACES_KEY, CacheStore
from placecache.services.fetcher import RemoteFetcher, ReviewAttachment
from placecache.services.viewport import merge_places

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# State machine
# ──────────────────────────────────────────────────────────────

_TRANSITIONS: dict[tuple[str, str], CacheStatus] = {
    ("*", "load"): "loading",
    ("loading", "cache_hit"): "cache_hit",
    ("loading", "cache_miss"): "miss",
    ("cache_hit", "background_start"): "background_refreshing",
    ("background_refreshing", "background_done"): "idle",
    ("background_refreshing", "background_failed"): "idle",
    ("*", "fetch_start"): "fetching_fresh",
    ("fetching_fresh", "fetch_ok"): "idle",
    ("fetching_fresh", "fetch_failed"): "fallback_to_cache",
    ("*", "refresh_failed"): "error",
    ("fallback_to_cache", "fallback_ok"): "idle",
    ("fallback_to_cache", "fallback_empty"): "error",
}


def transition(status: CacheStatus, event: str) -> CacheStatus:
    """Next status; events that don't apply to `status` leave it unchanged."""
    nxt = _TRANSITIONS.get((status, event)) or _TRANSITIONS.get(("*", event))
    return nxt or status


@dataclass
class FetchOutcome:
    skipped: bool = False
    place_count: int = 0
    reviews: Optional[ReviewAttachment] = None
    storage_error: Optional[str] = None


# ──────────────────────────────────────────────────────────────
# Orchestrator
# ──────────────────────────────────────────────────────────────

class PlacesCache:
    def __init__(
        self,
        store: CacheStore,
        fetcher: RemoteFetcher,
        *,
        cache_duration_minutes: float = 60,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.cache_duration_minutes = cache_duration_minutes

        self._state = PlacesState()
        self._in_flight = False
        self._background: Optional[asyncio.Task] = None
        self._closed = False
        self.last_outcome: Optional[FetchOutcome] = None

    # ──────────────────────────────────────────────────────────────
    # Published state
    # ──────────────────────────────────────────────────────────────

    def snapshot(self) -> PlacesState:
        return self._state.model_copy(update={"places": list(self._state.places)})

    @property
    def status(self) -> CacheStatus:
        return self._state.status

    def _publish(self, **changes) -> None:
        if self._closed:
            return
        self._state = self._state.model_copy(update=changes)

    def _emit(self, event: str) -> None:
        nxt = transition(self._state.status, event)
        if nxt != self._state.status:
            logger.debug("[cache] %s --%s--> %s", self._state.status, event, nxt)
        self._publish(status=nxt)

    # ──────────────────────────────────────────────────────────────
    # Fetch → store → publish
    # ──────────────────────────────────────────────────────────────

    async def _fetch_and_store(self) -> FetchOutcome:
        if self._in_flight:
            logger.info("[cache] fetch already in flight; skipping duplicate request")
            return FetchOutcome(skipped=True)

        self._in_flight = True
        self._publish(is_fetching_fresh=True)
        try:
            places = await self.fetcher.fetch_places()
            attached = await self.fetcher.fetch_reviews_for_places(places)

            outcome = FetchOutcome(place_count=len(attached.places), reviews=attached)
            try:
                self.store.store_places(attached.places, self.cache_duration_minutes)
            except StorageWriteError as e:
                # Publish anyway; the next load simply misses the cache.
                outcome.storage_error = str(e)
                logger.error("[cache] caching places FAILED: %s", e)

            self._publish(
                places=attached.places,
                is_cached=False,
                last_updated=self.store.get_timestamp(PLACES_KEY),
            )
            self.last_outcome = outcome
            return outcome
        finally:
            self._in_flight = False
            self._publish(is_fetching_fresh=False)

    def _start_background_refresh(self) -> None:
        if self._background is not None and not self._background.done():
            return
        self._emit("background_start")
        self._background = asyncio.get_running_loop().create_task(self._background_refresh())

    async def _background_refresh(self) -> None:
        # An explicit refresh may have taken over the status since this was scheduled.
        try:
            outcome = await self._fetch_and_store()
        except Exception as e:
            logger.warning("[cache] background refresh FAILED: %r; keeping cached places", e)
            if self.status == "background_refreshing":
                self._emit("background_failed")
            return
        if not outcome.skipped and self.status == "background_refreshing":
            self._emit("background_done")

    # ──────────────────────────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────────────────────────

    async def load(self) -> PlacesState:
        """
        Cache hit → publish cached places now, refresh in the background.
        Otherwise fetch fresh; if that fails, fall back to whatever the
        store still holds (stale is better than empty).
        """
        self._emit("load")
        self._publish(loading=True, error=None)

        try:
            if self.store.is_ready:
                if self.store.is_valid(PLACES_KEY, self.cache_duration_minutes):
                    cached = self.store.get_places()
                    if cached:
                        logger.info("[cache] using %d cached places", len(cached))
                        self._emit("cache_hit")
                        self._publish(
                            places=cached,
                            is_cached=True,
                            loading=False,
                            last_updated=self.store.get_timestamp(PLACES_KEY),
                        )
                        self._start_background_refresh()
                        return self.snapshot()
                    logger.info("[cache] cache valid but empty; fetching fresh data")
                else:
                    logger.info("[cache] cache invalid or expired; fetching fresh data")
            else:
                logger.info("[cache] local store not ready; fetching from network")

            self._emit("cache_miss")
            self._emit("fetch_start")
            await self._fetch_and_store()
            self._emit("fetch_ok")
        except Exception as e:
            logger.error("[cache] load FAILED: %s", e)
            self._fallback_to_cache(e)
        finally:
            self._publish(loading=False)

        return self.snapshot()

    def _fallback_to_cache(self, err: Exception) -> None:
        self._emit("fetch_failed")
        cached = self.store.get_places() if self.store.is_ready else []
        if cached:
            logger.warning("[cache] using %d cached places as fallback", len(cached))
            self._emit("fallback_ok")
            self._publish(
                places=cached,
                is_cached=True,
                error=None,
                last_updated=self.store.get_timestamp(PLACES_KEY),
            )
            return

        logger.error("[cache] no cached data available")
        self._emit("fallback_empty")
        self._publish(places=[], error=str(err))

    async def refresh(self) -> bool:
        """Explicit refresh: always hits the network, never falls back."""
        if self._in_flight:
            logger.info("[cache] refresh requested while a fetch is in flight; skipping")
            return True

        self._emit("fetch_start")
        try:
            await self._fetch_and_store()
        except Exception as e:
            logger.error("[cache] refresh FAILED: %s", e)
            self._emit("refresh_failed")
            self._publish(error=str(e))
            return False

        self._emit("fetch_ok")
        self._publish(error=None)
        return True

    async def clear_cache(self) -> bool:
        if not self.store.is_ready:
            return False
        ok = self.store.clear()
        if ok:
            self._publish(last_updated=None)
        return ok

    async def fetch_places_within_bounds(
        self,
        north_east: LatLng,
        south_west: LatLng,
        zoom: Optional[float] = None,
    ) -> int:
        """Merge viewport candidates into the published set. Returns how many were added."""
        try:
            candidates = await self.fetcher.fetch_places_within_bounds(north_east, south_west, zoom)
        except Exception as e:
            logger.error("[cache] bounds fetch FAILED: %s", e)
            self._publish(bounds_error=str(e))
            return 0

        # Read the published list after the await: whatever landed meanwhile is kept.
        merged, added = merge_places(self._state.places, candidates, zoom)
        logger.info("[cache] adding %d new places to the map (total=%d)", added, len(merged))
        if added:
            self._publish(places=merged, bounds_error=None)
        else:
            self._publish(bounds_error=None)
        return added

    # ──────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────

    async def wait_background(self) -> None:
        task = self._background
        if task is not None and not task.done():
            await task

    async def close(self) -> None:
        task = self._background
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._closed = True
