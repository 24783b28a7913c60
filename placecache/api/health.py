from __future__ import annotations

from fastapi import APIRouter, Depends

from placecache.core.storage import CacheStore

router = APIRouter()


def get_cache_store() -> CacheStore:
    raise RuntimeError("CacheStore must be provided by app dependency override")


@router.get("/health")
def health(store: CacheStore = Depends(get_cache_store)) -> dict:
    return {
        "ok": True,
        "cache_ready": store.is_ready,
        "cache_error": str(store.error) if store.error else None,
    }
