"""
placecache/core/geometry.py

Point parsing for the place `location` column.

The column arrives in whatever shape the row store hands back:
  - WKT           "POINT(lng lat)"  (optionally "SRID=4326;POINT(...)")
  - EWKB hex      "0101000020E6100000" + two little-endian float64 (lng, lat)
  - GeoJSON       {"type": "Point", "coordinates": [lng, lat]}, or that as a JSON string
  - lat/lng pair  {"lat": .., "lng": ..} and a few spelling variants

`classify()` decides the variant without decoding anything, then
`parse_location()` dispatches to the matching decoder. Decoders never raise:
anything unusable comes back as None ("no location").
"""

from __future__ import annotations

import math
import re
import struct
from dataclasses import dataclass
from typing import Any, Literal, Optional

import orjson

from placecache.core.contracts import LatLng


GeometryKind = Literal["wkt", "wkb_hex", "geojson", "latlng_fields", "unrecognized"]

# byte order (01 = little endian) + type 0x20000001 (point w/ SRID) + SRID 4326
EWKB_POINT_4326_HEADER = "0101000020E6100000"
_EWKB_COORDS_OFFSET = 9            # bytes
_EWKB_POINT_LEN = _EWKB_COORDS_OFFSET + 16

_WKT_POINT_RE = re.compile(
    r"^\s*(?:SRID=\d+;)?\s*POINT\s*\(\s*(\S+)\s+(\S+)\s*\)\s*$",
    re.IGNORECASE,
)

# (lat field, lng field), first match wins
LATLNG_FIELD_PAIRS: tuple[tuple[str, str], ...] = (
    ("lat", "lng"),
    ("lat", "lon"),
    ("latitude", "longitude"),
    ("lat", "long"),
)


@dataclass(frozen=True)
class ClassifiedGeometry:
    kind: GeometryKind
    payload: Any = None


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _finite_point(lat: Any, lng: Any) -> Optional[LatLng]:
    try:
        flat = float(lat)
        flng = float(lng)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(flat) and math.isfinite(flng)):
        return None
    return LatLng(lat=flat, lng=flng)


def _looks_like_geojson_point(obj: Any) -> bool:
    return isinstance(obj, dict) and obj.get("type") == "Point" and "coordinates" in obj


def _latlng_pair(obj: dict) -> Optional[tuple[str, str]]:
    for lat_key, lng_key in LATLNG_FIELD_PAIRS:
        if lat_key in obj and lng_key in obj:
            return lat_key, lng_key
    return None


# ──────────────────────────────────────────────────────────────
# Classification
# ──────────────────────────────────────────────────────────────

def classify(value: Any) -> ClassifiedGeometry:
    if value is None:
        return ClassifiedGeometry("unrecognized")

    if isinstance(value, str):
        s = value.strip()
        if _WKT_POINT_RE.match(s):
            return ClassifiedGeometry("wkt", s)
        if s.upper().startswith(EWKB_POINT_4326_HEADER):
            return ClassifiedGeometry("wkb_hex", s)
        if s.startswith("{"):
            try:
                decoded = orjson.loads(s)
            except orjson.JSONDecodeError:
                return ClassifiedGeometry("unrecognized")
            if _looks_like_geojson_point(decoded):
                return ClassifiedGeometry("geojson", decoded)
            if isinstance(decoded, dict) and _latlng_pair(decoded):
                return ClassifiedGeometry("latlng_fields", decoded)
        return ClassifiedGeometry("unrecognized")

    if isinstance(value, dict):
        if _looks_like_geojson_point(value):
            return ClassifiedGeometry("geojson", value)
        if _latlng_pair(value):
            return ClassifiedGeometry("latlng_fields", value)

    return ClassifiedGeometry("unrecognized")


# ──────────────────────────────────────────────────────────────
# Decoders
# ──────────────────────────────────────────────────────────────

def decode_wkt(text: str) -> Optional[LatLng]:
    m = _WKT_POINT_RE.match(text)
    if not m:
        return None
    lng, lat = m.group(1), m.group(2)
    return _finite_point(lat, lng)


def decode_wkb_hex(text: str) -> Optional[LatLng]:
    hex_len = _EWKB_POINT_LEN * 2
    if len(text) < hex_len:
        return None
    try:
        raw = bytes.fromhex(text[:hex_len])
    except ValueError:
        return None
    lng, lat = struct.unpack_from("<dd", raw, _EWKB_COORDS_OFFSET)
    return _finite_point(lat, lng)


def decode_geojson(obj: dict) -> Optional[LatLng]:
    coords = obj.get("coordinates")
    if not isinstance(coords, (list, tuple)) or len(coords) < 2:
        return None
    lng, lat = coords[0], coords[1]
    if not (_is_number(lng) and _is_number(lat)):
        return None
    return _finite_point(lat, lng)


def decode_latlng_fields(obj: dict) -> Optional[LatLng]:
    pair = _latlng_pair(obj)
    if pair is None:
        return None
    lat, lng = obj[pair[0]], obj[pair[1]]
    for v in (lat, lng):
        if not (_is_number(v) or isinstance(v, str)):
            return None
    return _finite_point(lat, lng)


_DECODERS = {
    "wkt": decode_wkt,
    "wkb_hex": decode_wkb_hex,
    "geojson": decode_geojson,
    "latlng_fields": decode_latlng_fields,
}


def parse_location(value: Any) -> Optional[LatLng]:
    c = classify(value)
    decoder = _DECODERS.get(c.kind)
    if decoder is None:
        return None
    return decoder(c.payload)


def in_bounds(point: LatLng, north_east: LatLng, south_west: LatLng) -> bool:
    return (
        south_west.lat <= point.lat <= north_east.lat
        and south_west.lng <= point.lng <= north_east.lng
    )
