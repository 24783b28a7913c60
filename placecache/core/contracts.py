from __future__ import annotations

from typing import Any, List, Literal, Optional
from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
# Shared
# ──────────────────────────────────────────────────────────────

class LatLng(BaseModel):
    lat: float
    lng: float


# ──────────────────────────────────────────────────────────────
# Places & reviews
# ──────────────────────────────────────────────────────────────

class Review(BaseModel):
    id: str
    place_id: str = ""
    rating: float = 5
    created_at: Optional[str] = None    # ISO8601 UTC
    updated_at: Optional[str] = None
    comment: Optional[str] = None
    user_id: Optional[str] = None


class Place(BaseModel):
    id: str
    name: str = ""
    location: Any = None                # WKT | EWKB hex | GeoJSON | lat/lng dict
    google: Any = None                  # metadata blob (dict or JSON string)
    website: Optional[str] = None
    phone: Optional[str] = None
    reviews: Optional[List[Review]] = None   # None = never attached

    def has_reviews(self) -> bool:
        return bool(self.reviews)


class CacheTimestamp(BaseModel):
    key: str
    timestamp: int                      # epoch ms
    expires_at: int                     # epoch ms


# ──────────────────────────────────────────────────────────────
# Orchestrator state
# ──────────────────────────────────────────────────────────────

CacheStatus = Literal[
    "idle",
    "loading",
    "cache_hit",
    "miss",
    "error",
    "background_refreshing",
    "fetching_fresh",
    "fallback_to_cache",
]


class PlacesState(BaseModel):
    places: List[Place] = Field(default_factory=list)
    status: CacheStatus = "idle"
    loading: bool = False
    error: Optional[str] = None
    bounds_error: Optional[str] = None
    is_cached: bool = False
    is_fetching_fresh: bool = False
    last_updated: Optional[int] = None  # epoch ms of the "places" cache entry


# ──────────────────────────────────────────────────────────────
# Map surface
# ──────────────────────────────────────────────────────────────

class Annotation(BaseModel):
    id: str
    title: str
    lat: float
    lng: float
    subtitle: Optional[str] = None


class BoundsRequest(BaseModel):
    north_east: LatLng
    south_west: LatLng
    zoom: Optional[float] = None
    longitude_delta: Optional[float] = None   # span; zoom derived when zoom is absent


class PlacesResponse(BaseModel):
    state: PlacesState
    count: int


class OkResponse(BaseModel):
    ok: bool
    error: Optional[str] = None
