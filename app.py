from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from balloon_data import FeedIngestionError, TelemetryStore

DIST_DIR = Path(__file__).resolve().parent / "dist"
PORT = int(os.getenv("PORT", "3000"))


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("balloon_tracker")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("BALLOON_LOG_FILE", "logs/balloon_tracker.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="Balloon Constellation Explorer")


def _allowed_cors_origins() -> List[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "*").strip()
    origins = [v.strip() for v in raw.split(",") if v.strip()]
    return origins or ["*"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

store = TelemetryStore()


def _flag(value: object) -> bool:
    if not isinstance(value, str):
        value = getattr(value, "default", "")
    return str(value or "").strip() == "1"


@app.on_event("startup")
def _startup() -> None:
    LOGGER.info("App startup enrich_enabled=%s", store.enrich_enabled)
    store.start_background_warm()


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    store.stop_background_warm()


@app.get("/api/health")
def health() -> Dict[str, object]:
    return store.get_health()


@app.get("/api/data")
def data(
    debug: str = Query(""),
    noenrich: str = Query(""),
) -> Dict[str, object]:
    want_debug = _flag(debug)
    skip_enrich = _flag(noenrich)
    try:
        payload = store.get_data(debug=want_debug, skip_enrich=skip_enrich)
    except FeedIngestionError as exc:
        LOGGER.warning("Data request failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except Exception as exc:
        LOGGER.exception("Data request unexpected error")
        raise HTTPException(status_code=500, detail=str(exc) or "unknown error") from exc
    LOGGER.debug(
        "Data served cached=%s points=%d debug=%s noenrich=%s",
        payload.get("cached"),
        len(payload.get("points", [])),
        want_debug,
        skip_enrich,
    )
    return payload


if DIST_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(DIST_DIR), html=True), name="client")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
