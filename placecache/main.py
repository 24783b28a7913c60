# placecache/main.py
from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

# Load <repo>/.env (main.py is <repo>/placecache/main.py)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

from placecache.core.errors import service_unavailable
from placecache.core.logging_config import configure_logging
from placecache.core.settings import settings
from placecache.core.storage import SqliteCacheStore
from placecache.api import api_router
from placecache.services.fetcher import RemoteFetcher
from placecache.services.places_cache import PlacesCache
from placecache.services.row_store import RowStore, create_row_store

configure_logging(settings.log_level)

logger = logging.getLogger(__name__)

app = FastAPI(title="Place Cache", version="1.0.0")

# ── Compression (must be added before CORS) ──
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ──────────────────────────────────────────────────────────────
# Composition root
# ──────────────────────────────────────────────────────────────

# Local cache — one SQLite connection for the process lifetime
_store = SqliteCacheStore(settings.cache_db_path if settings.cache_enabled else None)

# Remote rows + orchestrator are built on startup (remote config may be missing)
_rows: RowStore | None = None
_cache: PlacesCache | None = None


@app.on_event("startup")
async def startup():
    global _rows, _cache

    if not _store.initialize():
        logger.warning("[app] local cache unavailable (%s) — remote-only mode", _store.error)

    try:
        _rows = create_row_store(settings)
    except RuntimeError as e:
        logger.error("[app] remote row store not configured: %s", e)
        return

    fetcher = RemoteFetcher.from_settings(_rows, _store, settings)
    _cache = PlacesCache(_store, fetcher, cache_duration_minutes=settings.cache_duration_minutes)
    state = await _cache.load()
    logger.info(
        "[app] initial load: %d places cached=%s error=%s",
        len(state.places), state.is_cached, state.error,
    )


# ──────────────────────────────────────────────────────────────
# Dependency providers
# ──────────────────────────────────────────────────────────────

def provide_cache_store() -> SqliteCacheStore:
    return _store


def provide_places_cache() -> PlacesCache:
    if _cache is None:
        service_unavailable("remote_unconfigured", "remote row store is not configured")
    return _cache


# ──────────────────────────────────────────────────────────────
# Dependency overrides
# ──────────────────────────────────────────────────────────────

from placecache.api import health as health_api
from placecache.api import places as places_api

app.dependency_overrides[health_api.get_cache_store] = provide_cache_store
app.dependency_overrides[places_api.get_places_cache] = provide_places_cache

# Routes
app.include_router(api_router)

# ──────────────────────────────────────────────────────────────
# Shutdown
# ──────────────────────────────────────────────────────────────

@app.on_event("shutdown")
async def shutdown():
    logger.info("[app] Shutting down — closing connections")
    if _cache is not None:
        await _cache.close()
    if _rows is not None:
        try:
            await _rows.aclose()
        except Exception as e:
            logger.warning(f"[app] Error closing row store: {e}")
    _store.close()
