from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

import requests

from record_normalizer import Point, Rejected, SOURCE_KEY_FIELD, normalize_object, normalize_tuple

FEED_URL_TEMPLATE = os.getenv(
    "FEED_URL_TEMPLATE", "https://a.windbornesystems.com/treasure/{hour:02d}.json"
).strip()
WIND_URL = os.getenv("WIND_URL", "https://api.open-meteo.com/v1/forecast").strip()
AIR_URL = os.getenv("AIR_URL", "https://api.openaq.org/v2/latest").strip()
OPENAQ_API_KEY = os.getenv("OPENAQ_API_KEY", "").strip()
BUCKET_COUNT = int(os.getenv("BUCKET_COUNT", "24"))
BUCKET_TIMEOUT_SECONDS = float(os.getenv("BUCKET_TIMEOUT_SECONDS", "12"))
ENRICH_TIMEOUT_SECONDS = float(os.getenv("ENRICH_TIMEOUT_SECONDS", "8"))
ENRICH_BATCH_SIZE = int(os.getenv("ENRICH_BATCH_SIZE", "25"))
ENRICH_ENABLED = os.getenv("ENRICH", "").strip() == "1"
FETCH_WORKERS = int(os.getenv("FETCH_WORKERS", "24"))
CACHE_TTL_SECONDS = float(os.getenv("CACHE_TTL_SECONDS", "300"))
WARM_INTERVAL_SECONDS = float(os.getenv("WARM_INTERVAL_SECONDS", "300"))
WARM_ENABLED = os.getenv("WARM_ENABLED", "1").strip() == "1"
AIR_RADIUS_METERS = 20000
WIND_CURRENT_VARIABLES = "wind_speed_10m,wind_gusts_10m,wind_direction_10m"
WRAPPER_KEYS = ("data", "items", "records", "points", "rows")
MAX_REPORTED_FAILURES = 25
LOGGER = logging.getLogger("balloon_tracker.balloon_data")


class FeedIngestionError(RuntimeError):
    """Base class for feed ingestion failures."""


class FeedRequestError(FeedIngestionError):
    """Raised when a bucket cannot be retrieved."""


class FeedDecodeError(FeedIngestionError):
    """Raised when a bucket body is neither JSON nor newline-delimited JSON."""


@dataclass
class FetchStats:
    files_attempted: int = 0
    files_ok: int = 0
    files_failed: int = 0
    raw_records: int = 0
    normalized: int = 0
    unique_points: int = 0
    rejections: Dict[str, int] = field(default_factory=dict)
    failures: Dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "files_attempted": self.files_attempted,
            "files_ok": self.files_ok,
            "files_failed": self.files_failed,
            "raw_records": self.raw_records,
            "normalized": self.normalized,
            "unique_points": self.unique_points,
            "rejections": dict(self.rejections),
            "failures": {f"{hour:02d}": message for hour, message in self.failures.items()},
        }


@dataclass(frozen=True)
class FetchResult:
    points: List[Point]
    stats: FetchStats


@dataclass(frozen=True)
class CacheEntry:
    fetched_at_ms: int
    points: Tuple[Point, ...]
    enriched: bool = False

    def age_ms(self, now_ms: int) -> int:
        return int(now_ms) - self.fetched_at_ms

    def is_fresh(self, now_ms: int, ttl_ms: float) -> bool:
        return self.age_ms(now_ms) < ttl_ms


def _now_ms() -> int:
    return int(time.time() * 1000)


def _try_json(text: str) -> Tuple[bool, object]:
    try:
        return True, json.loads(text)
    except (ValueError, RecursionError):
        return False, None


def _nonblank_lines(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def _classify_body(body: object) -> Tuple[str, object]:
    """Tag a response body as ``sequence``, ``mapping``, ``raw_string`` or ``scalar``."""
    value = body
    if isinstance(body, str):
        ok, decoded = _try_json(body)
        if ok:
            value = decoded
    if isinstance(value, (list, tuple)):
        return "sequence", value
    if isinstance(value, Mapping):
        return "mapping", value
    if isinstance(body, str):
        return "raw_string", body
    return "scalar", value


def _keyed_record(key: str, item: object) -> Dict[str, object]:
    if isinstance(item, str):
        ok, decoded = _try_json(item)
        if ok and decoded is not None:
            item = decoded
    if isinstance(item, Mapping):
        return {SOURCE_KEY_FIELD: key, **item}
    return {SOURCE_KEY_FIELD: key, "value": item}


def _explode_mapping(body: Mapping[str, object]) -> List[object]:
    for key in WRAPPER_KEYS:
        wrapped = body.get(key)
        if isinstance(wrapped, (list, tuple)):
            return [item for item in wrapped if item is not None]

    records: List[object] = []
    for key, value in body.items():
        if isinstance(value, (list, tuple)):
            records.extend(_keyed_record(str(key), item) for item in value if item is not None)
        elif isinstance(value, Mapping):
            records.append({SOURCE_KEY_FIELD: str(key), **value})
    if not records and body:
        # A flat object with no nested collections is a single record.
        records.append(dict(body))
    return records


def explode_body(body: object) -> List[object]:
    """Extract candidate raw records from a bucket body of any shape.

    Never raises: shapes that cannot be interpreted produce an empty list.
    """
    kind, value = _classify_body(body)
    if kind == "sequence":
        return [item for item in value if item is not None]
    if kind == "mapping":
        return _explode_mapping(value)
    if kind == "raw_string":
        lines = _nonblank_lines(value)
        if len(lines) < 2:
            return []
        records: List[object] = []
        for line in lines:
            ok, decoded = _try_json(line)
            if ok and decoded is not None:
                records.append(decoded)
        return records
    return []


def decode_body(text: str) -> object:
    """Decode a bucket body; multi-line bodies that are not JSON pass through as NDJSON text."""
    ok, decoded = _try_json(text)
    if ok:
        return decoded if isinstance(decoded, (list, tuple, Mapping)) else text
    if len(_nonblank_lines(text)) > 1:
        return text
    raise FeedDecodeError(f"Body is not JSON ({len(text)} bytes)")


def bucket_url(hour: int, url_template: str = FEED_URL_TEMPLATE) -> str:
    return url_template.format(hour=int(hour))


def fetch_bucket(url: str, timeout: float = BUCKET_TIMEOUT_SECONDS) -> object:
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FeedRequestError(f"GET {url} failed: {exc}") from exc
    return decode_body(response.text)


def normalize_batch(
    records: Sequence[object], source_hour: int, now_ms: int
) -> Tuple[List[Point], List[Rejected]]:
    # The first record decides the form for the whole batch.
    points: List[Point] = []
    rejected: List[Rejected] = []
    tuple_form = bool(records) and isinstance(records[0], (list, tuple))
    for index, record in enumerate(records):
        if tuple_form:
            result = normalize_tuple(record, source_hour, index, now_ms=now_ms)
        else:
            result = normalize_object(record)
        if isinstance(result, Point):
            points.append(result)
        else:
            rejected.append(result)
    return points, rejected


def dedupe_and_sort(points: Sequence[Point]) -> List[Point]:
    """Drop repeated ``(id, timestamp)`` pairs, first seen wins, then sort by time (stable)."""
    seen: set[Tuple[str, int]] = set()
    unique: List[Point] = []
    for point in points:
        key = (point.id, point.timestamp)
        if key in seen:
            continue
        seen.add(key)
        unique.append(point)
    unique.sort(key=lambda p: p.timestamp)
    return unique


def _record_failure(stats: FetchStats, hour: int, exc: Exception) -> None:
    stats.files_failed += 1
    if len(stats.failures) < MAX_REPORTED_FAILURES:
        stats.failures[hour] = str(exc) or type(exc).__name__


def fetch_window(
    bucket_count: int = BUCKET_COUNT,
    now_ms: int | None = None,
    url_template: str = FEED_URL_TEMPLATE,
    timeout: float = BUCKET_TIMEOUT_SECONDS,
) -> FetchResult:
    """Fetch buckets ``0..bucket_count-1`` concurrently and normalize them.

    Every bucket settles before results are processed; a failed bucket is
    counted and skipped. Raises FeedIngestionError only when all buckets fail.
    """
    if now_ms is None:
        now_ms = _now_ms()
    stats = FetchStats(files_attempted=max(0, int(bucket_count)))
    urls = [bucket_url(hour, url_template) for hour in range(stats.files_attempted)]

    futures = []
    if urls:
        with ThreadPoolExecutor(
            max_workers=max(1, min(FETCH_WORKERS, len(urls))),
            thread_name_prefix="bucket-fetch",
        ) as executor:
            futures = [executor.submit(fetch_bucket, url, timeout) for url in urls]

    points: List[Point] = []
    for hour, future in enumerate(futures):
        try:
            body = future.result()
            records = explode_body(body)
            accepted, rejected = normalize_batch(records, hour, now_ms)
        except FeedIngestionError as exc:
            _record_failure(stats, hour, exc)
            LOGGER.warning("Bucket fetch failed hour=%02d: %s", hour, exc)
            continue
        except Exception as exc:
            _record_failure(stats, hour, exc)
            LOGGER.exception("Bucket processing failed hour=%02d", hour)
            continue
        stats.files_ok += 1
        stats.raw_records += len(records)
        points.extend(accepted)
        for rejection in rejected:
            stats.rejections[rejection.reason] = stats.rejections.get(rejection.reason, 0) + 1
        LOGGER.debug(
            "Bucket processed hour=%02d raw=%d accepted=%d rejected=%d",
            hour,
            len(records),
            len(accepted),
            len(rejected),
        )

    if stats.files_attempted and stats.files_failed == stats.files_attempted:
        raise FeedIngestionError(f"All {stats.files_attempted} bucket fetches failed")

    stats.normalized = len(points)
    unique = dedupe_and_sort(points)
    stats.unique_points = len(unique)
    LOGGER.info(
        "Fetched window buckets=%d ok=%d failed=%d raw=%d normalized=%d unique=%d",
        stats.files_attempted,
        stats.files_ok,
        stats.files_failed,
        stats.raw_records,
        stats.normalized,
        stats.unique_points,
    )
    return FetchResult(points=unique, stats=stats)


def fetch_wind(lat: float, lon: float, timeout: float = ENRICH_TIMEOUT_SECONDS) -> Dict[str, object] | None:
    params = {"latitude": lat, "longitude": lon, "current": WIND_CURRENT_VARIABLES}
    response = requests.get(WIND_URL, params=params, timeout=timeout)
    response.raise_for_status()
    current = response.json().get("current")
    return current if isinstance(current, dict) else None


def fetch_air_quality(lat: float, lon: float, timeout: float = ENRICH_TIMEOUT_SECONDS) -> Dict[str, object] | None:
    params = {
        "coordinates": f"{lat},{lon}",
        "radius": AIR_RADIUS_METERS,
        "limit": 1,
        "parameter": "pm25",
    }
    headers = {"X-API-Key": OPENAQ_API_KEY} if OPENAQ_API_KEY else {}
    response = requests.get(AIR_URL, params=params, headers=headers, timeout=timeout)
    response.raise_for_status()
    results = response.json().get("results") or []
    if not results:
        return None
    measurements = results[0].get("measurements") or []
    for measurement in measurements:
        if isinstance(measurement, dict) and measurement.get("parameter") == "pm25":
            return {
                "pm25": measurement.get("value"),
                "unit": measurement.get("unit"),
                "lastUpdated": measurement.get("lastUpdated"),
            }
    return None


def _lookup_or_none(
    lookup: Callable[[float, float], Dict[str, object] | None], point: Point
) -> Dict[str, object] | None:
    try:
        return lookup(point.latitude, point.longitude)
    except Exception as exc:
        LOGGER.debug("Enrichment lookup %s failed id=%s: %s", lookup.__name__, point.id, exc)
        return None


def enrich(points: Sequence[Point], batch_size: int = ENRICH_BATCH_SIZE) -> List[Point]:
    """Attach wind and air-quality data to each point, one batch at a time.

    A failed lookup leaves that field None; every input point is returned, in order.
    """
    if not points:
        return []
    batch_size = max(1, int(batch_size))
    out: List[Point] = []
    wind_missing = 0
    air_missing = 0
    with ThreadPoolExecutor(max_workers=batch_size * 2, thread_name_prefix="enrich") as executor:
        for start in range(0, len(points), batch_size):
            batch = points[start : start + batch_size]
            wind_futures = [executor.submit(_lookup_or_none, fetch_wind, p) for p in batch]
            air_futures = [executor.submit(_lookup_or_none, fetch_air_quality, p) for p in batch]
            for point, wind_future, air_future in zip(batch, wind_futures, air_futures):
                wind, air = wind_future.result(), air_future.result()
                wind_missing += wind is None
                air_missing += air is None
                out.append(point.with_enrichment(wind=wind, air=air))
    LOGGER.info("Enriched points=%d wind_missing=%d air_missing=%d", len(out), wind_missing, air_missing)
    return out


class PointCache:
    """Single-entry cell; writers swap the whole entry, readers get a snapshot."""

    def __init__(self, ttl_seconds: float = CACHE_TTL_SECONDS) -> None:
        self._guard = threading.Lock()
        self._entry: CacheEntry | None = None
        self.ttl_ms = float(ttl_seconds) * 1000

    def snapshot(self) -> CacheEntry | None:
        with self._guard:
            return self._entry

    def replace(self, entry: CacheEntry) -> None:
        with self._guard:
            self._entry = entry

    def replace_if_newer(self, entry: CacheEntry) -> bool:
        """Swap in ``entry`` unless the held entry was fetched later."""
        with self._guard:
            if self._entry is not None and self._entry.fetched_at_ms > entry.fetched_at_ms:
                return False
            self._entry = entry
            return True

    def is_fresh(self, now_ms: int | None = None) -> bool:
        entry = self.snapshot()
        if entry is None:
            return False
        return entry.is_fresh(_now_ms() if now_ms is None else now_ms, self.ttl_ms)


class TelemetryStore:
    """Balloon window fetch, optional enrichment and warm cache."""

    def __init__(
        self,
        enrich_enabled: bool | None = None,
        bucket_count: int = BUCKET_COUNT,
        cache_ttl_seconds: float = CACHE_TTL_SECONDS,
        warm_interval_seconds: float = WARM_INTERVAL_SECONDS,
    ) -> None:
        self.enrich_enabled = ENRICH_ENABLED if enrich_enabled is None else bool(enrich_enabled)
        self.bucket_count = int(bucket_count)
        self.warm_interval_seconds = float(warm_interval_seconds)
        self.cache = PointCache(ttl_seconds=cache_ttl_seconds)
        self._warm_guard = threading.Lock()
        self._warm_started = False
        self._warm_thread: threading.Thread | None = None
        self._warm_stop = threading.Event()

    def start_background_warm(self) -> None:
        if not WARM_ENABLED:
            LOGGER.info("Background warm disabled by WARM_ENABLED")
            return
        with self._warm_guard:
            if self._warm_started:
                return
            self._warm_started = True
            self._warm_stop.clear()
            self._warm_thread = threading.Thread(
                target=self._warm_loop,
                name="cache-warm",
                daemon=True,
            )
            self._warm_thread.start()
            LOGGER.info("Started cache warm thread interval=%ss", self.warm_interval_seconds)

    def stop_background_warm(self) -> None:
        with self._warm_guard:
            self._warm_stop.set()
        LOGGER.info("Stopped cache warm thread")

    def _warm_loop(self) -> None:
        while not self._warm_stop.is_set():
            self.warm_once()
            self._warm_stop.wait(self.warm_interval_seconds)

    def warm_once(self) -> bool:
        try:
            result = fetch_window(self.bucket_count)
            points = enrich(result.points) if self.enrich_enabled else result.points
        except Exception:
            LOGGER.exception("Warm cycle failed; keeping previous cache entry")
            return False
        self.cache.replace(
            CacheEntry(fetched_at_ms=_now_ms(), points=tuple(points), enriched=self.enrich_enabled)
        )
        LOGGER.info("Cache warmed points=%d enriched=%s", len(points), self.enrich_enabled)
        return True

    def get_data(self, debug: bool = False, skip_enrich: bool = False, now_ms: int | None = None) -> Dict[str, object]:
        if now_ms is None:
            now_ms = _now_ms()
        want_enrich = self.enrich_enabled and not skip_enrich
        # Only requests matching the warm cycle's shape read or write the cache.
        cacheable = not debug and want_enrich == self.enrich_enabled

        if cacheable:
            entry = self.cache.snapshot()
            if entry is not None and entry.is_fresh(now_ms, self.cache.ttl_ms):
                LOGGER.debug("Serving cached points=%d age_ms=%d", len(entry.points), entry.age_ms(now_ms))
                return {"cached": True, "points": [p.to_dict() for p in entry.points]}

        result = fetch_window(self.bucket_count, now_ms=now_ms)
        points = enrich(result.points) if want_enrich else result.points
        if cacheable:
            entry = CacheEntry(fetched_at_ms=now_ms, points=tuple(points), enriched=want_enrich)
            if not self.cache.replace_if_newer(entry):
                LOGGER.debug("Kept newer cache entry over request fetch started at %d", now_ms)

        payload: Dict[str, object] = {"cached": False, "points": [p.to_dict() for p in points]}
        if debug:
            payload["debug"] = result.stats.to_dict()
            payload["enriched"] = want_enrich
        return payload

    def get_health(self, now_ms: int | None = None) -> Dict[str, object]:
        if now_ms is None:
            now_ms = _now_ms()
        entry = self.cache.snapshot()
        return {
            "ok": True,
            "enrich_enabled": self.enrich_enabled,
            "cached": entry is not None,
            "cached_age_ms": entry.age_ms(now_ms) if entry is not None else None,
        }
