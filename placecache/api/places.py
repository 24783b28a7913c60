from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from placecache.core.contracts import (
    Annotation,
    BoundsRequest,
    OkResponse,
    PlacesResponse,
)
from placecache.core.errors import bad_request, service_unavailable
from placecache.services.annotations import build_annotations
from placecache.services.places_cache import PlacesCache
from placecache.services.viewport import zoom_from_span

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/places")


def get_places_cache() -> PlacesCache:
    raise RuntimeError("PlacesCache must be provided by app dependency override")


@router.get("", response_model=PlacesResponse)
def places_state(cache: PlacesCache = Depends(get_places_cache)) -> PlacesResponse:
    state = cache.snapshot()
    return PlacesResponse(state=state, count=len(state.places))


@router.get("/annotations", response_model=list[Annotation])
def places_annotations(cache: PlacesCache = Depends(get_places_cache)) -> list[Annotation]:
    return build_annotations(cache.snapshot().places)


@router.post("/refresh", response_model=OkResponse)
async def places_refresh(cache: PlacesCache = Depends(get_places_cache)) -> OkResponse:
    ok = await cache.refresh()
    return OkResponse(ok=ok, error=None if ok else cache.snapshot().error)


@router.post("/bounds", response_model=PlacesResponse)
async def places_bounds(req: BoundsRequest, cache: PlacesCache = Depends(get_places_cache)) -> PlacesResponse:
    ne, sw = req.north_east, req.south_west
    if ne.lat < sw.lat or ne.lng < sw.lng:
        bad_request("bad_bounds", "north_east must be north-east of south_west")

    zoom = req.zoom
    if zoom is None and req.longitude_delta is not None:
        zoom = zoom_from_span(req.longitude_delta)

    added = await cache.fetch_places_within_bounds(ne, sw, zoom)
    state = cache.snapshot()
    logger.info("places_bounds zoom=%s added=%d total=%d", zoom, added, len(state.places))
    return PlacesResponse(state=state, count=len(state.places))


@router.delete("/cache", response_model=OkResponse)
async def places_clear_cache(cache: PlacesCache = Depends(get_places_cache)) -> OkResponse:
    if not cache.store.is_ready:
        service_unavailable("cache_unavailable", str(cache.store.error or "local cache not ready"))
    ok = await cache.clear_cache()
    return OkResponse(ok=ok)
