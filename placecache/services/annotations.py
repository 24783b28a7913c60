from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import orjson

from placecache.core.contracts import Annotation, Place
from placecache.core.errors import ParseError
from placecache.core.geometry import parse_location

logger = logging.getLogger(__name__)

_ADDRESS_KEYS = ("formatted_address", "address", "vicinity")
_NEIGHBORHOOD_KEYS = ("neighborhood", "neighbourhood")


def decode_metadata(blob: Any) -> dict[str, Any]:
    """The `google` blob as a dict. Raises ParseError for anything else."""
    if blob is None or blob == "":
        return {}
    if isinstance(blob, dict):
        return blob
    if isinstance(blob, (str, bytes)):
        try:
            decoded = orjson.loads(blob)
        except orjson.JSONDecodeError as e:
            raise ParseError(f"metadata is not JSON: {e}") from e
        if isinstance(decoded, dict):
            return decoded
    raise ParseError(f"metadata has unsupported shape: {type(blob).__name__}")


def _first(meta: dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    for k in keys:
        v = meta.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def place_address(place: Place) -> Optional[str]:
    try:
        meta = decode_metadata(place.google)
    except ParseError as e:
        logger.warning("[annotations] place id=%s: %s", place.id, e)
        return None
    return _first(meta, _ADDRESS_KEYS) or _first(meta, _NEIGHBORHOOD_KEYS)


def average_rating(place: Place) -> Optional[float]:
    if not place.reviews:
        return None
    return sum(r.rating for r in place.reviews) / len(place.reviews)


def build_subtitle(place: Place) -> Optional[str]:
    """'★ 4.5 · 123 Main St' — rating first, then address (or phone)."""
    parts: list[str] = []

    avg = average_rating(place)
    if avg is not None:
        parts.append(f"★ {avg:.1f}")

    address = place_address(place)
    if address:
        parts.append(address)
    elif place.phone:
        parts.append(place.phone)

    return " · ".join(parts) or None


def build_annotations(places: Sequence[Place]) -> list[Annotation]:
    out: list[Annotation] = []
    for p in places:
        loc = parse_location(p.location)
        if loc is None:
            continue
        out.append(
            Annotation(
                id=p.id,
                title=p.name or "Unnamed place",
                lat=loc.lat,
                lng=loc.lng,
                subtitle=build_subtitle(p),
            )
        )
    return out
