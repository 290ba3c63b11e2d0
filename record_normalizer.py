from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Sequence, Tuple

from dateutil import parser as date_parser

ID_KEYS = ("id", "balloon_id", "balloonId", "name", "serial", "imei", "device", "callsign")
TIME_KEYS = ("t", "ts", "timestamp", "time", "datetime", "date", "observed", "recordedAt")
LAT_KEYS = ("lat", "latitude", "position.lat", "pos.lat", "coords.lat", "location.lat")
LON_KEYS = ("lon", "lng", "longitude", "position.lon", "pos.lon", "coords.lon", "location.lon")
ALT_KEYS = ("alt", "altitude", "elev", "elevation", "height")

GEOJSON_KEYS = ("geometry.coordinates", "geom.coordinates", "coordinates")
COORD_PAIR_KEYS = ("coord", "coords", "coordinate", "coordinates", "position", "pos", "location")
TIME_KEY_PATTERN = re.compile(r"\b(time|timestamp|ts|datetime)\b", re.IGNORECASE)

SOURCE_KEY_FIELD = "__key"
HOUR_MS = 3_600_000
SECONDS_CUTOFF = 1e12
MAX_ABS_LAT = 90.0
MAX_ABS_LON = 180.0


@dataclass(frozen=True)
class Point:
    id: str
    timestamp: int
    iso_time: str
    latitude: float
    longitude: float
    altitude: float | None = None
    wind: Dict[str, object] | None = None
    air: Dict[str, object] | None = None
    enriched: bool = False

    def with_enrichment(self, wind: Dict[str, object] | None, air: Dict[str, object] | None) -> "Point":
        return replace(self, wind=wind, air=air, enriched=True)

    def to_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {
            "id": self.id,
            "ts": self.timestamp,
            "iso": self.iso_time,
            "lat": self.latitude,
            "lon": self.longitude,
            "alt": self.altitude,
        }
        if self.enriched:
            out["wind"] = self.wind
            out["air"] = self.air
        return out


@dataclass(frozen=True)
class Rejected:
    """A record that could not be turned into a Point."""

    reason: str
    detail: str = field(default="", compare=False)


def flatten(value: object, prefix: str = "", out: Dict[str, object] | None = None) -> Dict[str, object]:
    """Flatten nested mappings/sequences into ``{"a.b.0": scalar}`` form.

    Mapping keys and sequence indices are joined with ``.``; scalars (``None``
    included) terminate the walk. A bare scalar lands under the empty key.
    """
    if out is None:
        out = {}
    if isinstance(value, Mapping):
        for key, child in value.items():
            flatten(child, f"{prefix}.{key}" if prefix else str(key), out)
    elif isinstance(value, (list, tuple)):
        for index, child in enumerate(value):
            flatten(child, f"{prefix}.{index}" if prefix else str(index), out)
    else:
        out[prefix] = value
    return out


def resolve(flat: Mapping[str, object], candidates: Sequence[str]) -> object | None:
    for key in candidates:
        hit = flat.get(key)
        if hit is not None:
            return hit
        lowered = key.lower()
        folded = next((k for k in flat if k.lower() == lowered), None)
        if folded is not None and flat[folded] is not None:
            return flat[folded]
    return None


def to_float(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def to_epoch_ms(value: object) -> int | None:
    """Convert a numeric or date-like value to epoch milliseconds.

    Numbers below 1e12 are seconds; larger numbers are already milliseconds.
    Strings that are not numeric go through dateutil, naive values read as UTC.
    """
    if value is None or isinstance(value, bool):
        return None
    number = to_float(value)
    if number is not None:
        millis = number * 1000 if number < SECONDS_CUTOFF else number
        return int(round(millis)) if math.isfinite(millis) else None
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = date_parser.parse(value.strip())
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(round(parsed.timestamp() * 1000))


def iso_from_ms(timestamp_ms: int) -> str | None:
    try:
        dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _in_bounds(lat: float, lon: float) -> bool:
    return abs(lat) <= MAX_ABS_LAT and abs(lon) <= MAX_ABS_LON


def _sequence_at(flat: Mapping[str, object], key: str) -> List[object] | None:
    # Sequences arrive flattened as key.0, key.1, ...; a raw list is accepted too.
    raw = flat.get(key)
    if isinstance(raw, (list, tuple)):
        return list(raw)
    items: List[object] = []
    while f"{key}.{len(items)}" in flat:
        items.append(flat[f"{key}.{len(items)}"])
    return items or None


def _numeric_pair(items: Sequence[object] | None) -> Tuple[float, float] | None:
    if not items or len(items) < 2:
        return None
    a, b = to_float(items[0]), to_float(items[1])
    if a is None or b is None:
        return None
    return a, b


def resolve_geometry(flat: Mapping[str, object]) -> Tuple[float, float] | None:
    """Return ``(lat, lon)`` from geometry-style encodings, or None."""
    for key in GEOJSON_KEYS:
        pair = _numeric_pair(_sequence_at(flat, key))
        if pair is not None:
            lon, lat = pair
            return lat, lon

    for key in COORD_PAIR_KEYS:
        pair = _numeric_pair(_sequence_at(flat, key))
        if pair is not None:
            a, b = pair
            if abs(a) <= MAX_ABS_LAT and abs(b) <= MAX_ABS_LON:
                return a, b
            if abs(b) <= MAX_ABS_LAT and abs(a) <= MAX_ABS_LON:
                return b, a
        raw = flat.get(key)
        if isinstance(raw, str) and "," in raw:
            parts = raw.split(",")
            a, b = to_float(parts[0]), to_float(parts[1])
            if a is not None and b is not None:
                if abs(a) <= MAX_ABS_LAT:
                    return a, b
                return b, a
    return None


def _build_point(
    point_id: str, timestamp: int, lat: float, lon: float, alt: float | None
) -> Point | Rejected:
    iso_time = iso_from_ms(timestamp)
    if iso_time is None:
        return Rejected("bad_timestamp", f"timestamp out of range: {timestamp}")
    return Point(
        id=point_id,
        timestamp=timestamp,
        iso_time=iso_time,
        latitude=lat,
        longitude=lon,
        altitude=alt,
    )


def normalize_tuple(record: object, source_hour: int, index: int, now_ms: int | None = None) -> Point | Rejected:
    """Normalize a ``[lat, lon, alt?]`` tuple from bucket ``source_hour``.

    The feed carries no id or time for tuples: the id is ``HH-index`` and the
    timestamp is the bucket's age subtracted from ``now_ms``.
    """
    if not isinstance(record, (list, tuple)):
        return Rejected("not_a_sequence")
    if len(record) < 2:
        return Rejected("too_short")
    lat, lon = to_float(record[0]), to_float(record[1])
    if lat is None or lon is None:
        return Rejected("bad_coordinates")
    if not _in_bounds(lat, lon):
        return Rejected("out_of_range", f"lat={lat} lon={lon}")
    alt = to_float(record[2]) if len(record) > 2 else None
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    timestamp = int(now_ms) - int(source_hour) * HOUR_MS
    return _build_point(f"{int(source_hour):02d}-{index}", timestamp, lat, lon, alt)


def normalize_object(record: object) -> Point | Rejected:
    if not isinstance(record, Mapping):
        return Rejected("not_an_object")
    flat = flatten(record)

    point_id = resolve(flat, ID_KEYS)
    if point_id is None:
        point_id = flat.get(SOURCE_KEY_FIELD)
    if point_id is None:
        return Rejected("missing_id")

    timestamp = to_epoch_ms(resolve(flat, TIME_KEYS))
    if timestamp is None:
        guess = next((k for k in flat if TIME_KEY_PATTERN.search(k)), None)
        if guess is not None:
            timestamp = to_epoch_ms(flat[guess])
    if timestamp is None:
        return Rejected("bad_timestamp")

    lat = to_float(resolve(flat, LAT_KEYS))
    lon = to_float(resolve(flat, LON_KEYS))
    if lat is None or lon is None:
        geo = resolve_geometry(flat)
        if geo is not None:
            lat, lon = geo
    if lat is None or lon is None:
        return Rejected("bad_coordinates")
    if not _in_bounds(lat, lon):
        return Rejected("out_of_range", f"lat={lat} lon={lon}")

    alt = to_float(resolve(flat, ALT_KEYS))
    return _build_point(str(point_id), timestamp, lat, lon, alt)
