#!/usr/bin/env python3
from __future__ import annotations

from collections import Counter
import json
import time

from balloon_data import (
    BUCKET_COUNT,
    FeedIngestionError,
    bucket_url,
    explode_body,
    fetch_bucket,
    normalize_batch,
)


def _record_form(records: list) -> str:
    if not records:
        return "empty"
    return "tuple" if isinstance(records[0], (list, tuple)) else "object"


def main() -> None:
    now_ms = int(time.time() * 1000)
    rows = []
    for hour in range(BUCKET_COUNT):
        url = bucket_url(hour)
        try:
            body = fetch_bucket(url)
        except FeedIngestionError as exc:  # pragma: no cover - diagnostics script
            rows.append({"hour": hour, "status": "failed", "error": str(exc)})
            continue
        records = explode_body(body)
        points, rejected = normalize_batch(records, hour, now_ms)
        rows.append(
            {
                "hour": hour,
                "status": "ok",
                "body": type(body).__name__,
                "form": _record_form(records),
                "raw": len(records),
                "normalized": len(points),
                "rejections": dict(Counter(r.reason for r in rejected)),
            }
        )

    failed = [r for r in rows if r["status"] == "failed"]
    print(f"total={len(rows)} failed={len(failed)}")
    for row in rows:
        print(json.dumps(row, ensure_ascii=False))


if __name__ == "__main__":
    main()
