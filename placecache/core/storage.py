"""
placecache/core/storage.py

Local structured store: the on-disk mirror of the remote place/review rows.

Three collections, one SQLite database (schema version in PRAGMA user_version):
  - places      keyed by place id
  - reviews     keyed by review id, secondary index on place_id
  - timestamps  keyed by cache-entry name ("places" | "reviews")

Records are orjson blobs so the stored shape is exactly what the fetcher
produced. The connection is opened by whoever owns the store (see main.py)
and shared by every read and write.
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional, Sequence

import orjson

from placecache.core.contracts import CacheTimestamp, Place, Review
from placecache.core.errors import StorageWriteError, UnsupportedEnvironment
from placecache.core.time import now_ms

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

PLACES_KEY = "places"
REVIEWS_KEY = "reviews"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS places (
  id          TEXT PRIMARY KEY,
  record_json BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS reviews (
  id          TEXT PRIMARY KEY,
  place_id    TEXT NOT NULL,
  record_json BLOB NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_reviews_place_id ON reviews(place_id);

CREATE TABLE IF NOT EXISTS timestamps (
  key        TEXT PRIMARY KEY,
  timestamp  INTEGER NOT NULL,    -- epoch ms
  expires_at INTEGER NOT NULL     -- epoch ms
);
"""


# ──────────────────────────────────────────────────────────────
# Connections
# ──────────────────────────────────────────────────────────────

def connect_sqlite(path: str) -> sqlite3.Connection:
    """
    Open a RW SQLite connection with sane pragmas.

    IMPORTANT:
    - SQLite will NOT create parent directories.
    - WAL mode requires the directory to be writable (creates -wal/-shm).
    """
    if path != ":memory:":
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


# ──────────────────────────────────────────────────────────────
# Interface
# ──────────────────────────────────────────────────────────────

class CacheStore(ABC):
    """Four-operation-group contract the cache orchestrator relies on."""

    error: Optional[Exception] = None

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        ...

    @abstractmethod
    def initialize(self) -> bool:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    # freshness
    @abstractmethod
    def set_timestamp(self, key: str, expiry_minutes: float = 60) -> Optional[int]:
        ...

    @abstractmethod
    def is_valid(self, key: str, max_age_minutes: float = 60) -> bool:
        ...

    @abstractmethod
    def get_timestamp(self, key: str) -> Optional[int]:
        ...

    # collections
    @abstractmethod
    def store_places(self, places: Sequence[Place], cache_duration_minutes: float = 60) -> bool:
        ...

    @abstractmethod
    def store_reviews(self, reviews: Sequence[Review], cache_duration_minutes: float = 60) -> bool:
        ...

    @abstractmethod
    def get_places(self) -> list[Place]:
        ...

    @abstractmethod
    def get_reviews(self, place_ids: Optional[Sequence[str]] = None) -> list[Review]:
        ...

    @abstractmethod
    def clear(self) -> bool:
        ...


# ──────────────────────────────────────────────────────────────
# SQLite backend
# ──────────────────────────────────────────────────────────────

class SqliteCacheStore(CacheStore):
    """
    SQLite-backed cache store.

    `path=None` means the host has no local storage: initialize() records
    UnsupportedEnvironment and every operation stays a no-op.

    Reads never raise (errors are logged, result is empty).
    Writes raise StorageWriteError; a failed collection write is rolled back
    with its transaction but callers should still treat the cache as unknown.
    """

    def __init__(self, path: Optional[str], *, clock: Callable[[], int] = now_ms):
        self._path = path
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self.error: Optional[Exception] = None

    @property
    def is_ready(self) -> bool:
        return self._conn is not None

    def initialize(self) -> bool:
        if self._conn is not None:
            return True

        if not self._path:
            self.error = UnsupportedEnvironment("no local storage configured")
            logger.warning("[store] %s; running remote-only", self.error)
            return False

        try:
            conn = connect_sqlite(self._path)
            version = conn.execute("PRAGMA user_version;").fetchone()[0]
            if version < SCHEMA_VERSION:
                conn.executescript(_SCHEMA_SQL)
                conn.execute(f"PRAGMA user_version={SCHEMA_VERSION};")
                conn.commit()
                logger.info("[store] provisioned schema v%d at %s", SCHEMA_VERSION, self._path)
        except (sqlite3.Error, OSError) as e:
            self.error = UnsupportedEnvironment(f"local storage unavailable: {e!r}")
            logger.error("[store] initialize FAILED: %s", self.error)
            return False

        self._conn = conn
        self.error = None
        logger.info("[store] ready: %s", self._path)
        return True

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        finally:
            self._conn = None

    # ──────────────────────────────────────────────────────────────
    # Freshness
    # ──────────────────────────────────────────────────────────────

    def _read_timestamp(self, key: str) -> Optional[CacheTimestamp]:
        cur = self._conn.execute(
            "SELECT key, timestamp, expires_at FROM timestamps WHERE key=?;", (key,)
        )
        row = cur.fetchone()
        if not row:
            return None
        return CacheTimestamp(key=row[0], timestamp=int(row[1]), expires_at=int(row[2]))

    def set_timestamp(self, key: str, expiry_minutes: float = 60) -> Optional[int]:
        if self._conn is None:
            return None

        ts = self._clock()
        expires_at = ts + int(expiry_minutes * 60 * 1000)
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO timestamps (key, timestamp, expires_at) VALUES (?, ?, ?);",
                    (key, ts, expires_at),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(f"set_timestamp key={key} err={e!r}") from e
        return ts

    def is_valid(self, key: str, max_age_minutes: float = 60) -> bool:
        if self._conn is None:
            return False

        try:
            rec = self._read_timestamp(key)
        except sqlite3.Error as e:
            logger.error("[store] is_valid key=%s FAILED: %r", key, e)
            return False
        if rec is None:
            return False

        now = self._clock()
        max_age_ms = max_age_minutes * 60 * 1000
        # Both checks on purpose: max_age may differ from the duration used at write time.
        return now < rec.expires_at and (now - rec.timestamp) < max_age_ms

    def get_timestamp(self, key: str) -> Optional[int]:
        if self._conn is None:
            return None
        try:
            rec = self._read_timestamp(key)
        except sqlite3.Error as e:
            logger.error("[store] get_timestamp key=%s FAILED: %r", key, e)
            return None
        return rec.timestamp if rec else None

    # ──────────────────────────────────────────────────────────────
    # Collections
    # ──────────────────────────────────────────────────────────────

    def store_places(self, places: Sequence[Place], cache_duration_minutes: float = 60) -> bool:
        if self._conn is None:
            return False

        try:
            with self._conn:
                self._conn.execute("DELETE FROM places;")
                for p in places:
                    self._conn.execute(
                        "INSERT INTO places (id, record_json) VALUES (?, ?);",
                        (p.id, orjson.dumps(p.model_dump(mode="json"))),
                    )
        except (sqlite3.Error, TypeError) as e:
            raise StorageWriteError(f"store_places n={len(places)} err={e!r}") from e

        self.set_timestamp(PLACES_KEY, cache_duration_minutes)
        logger.info("[store] cached %d places", len(places))
        return True

    def store_reviews(self, reviews: Sequence[Review], cache_duration_minutes: float = 60) -> bool:
        if self._conn is None:
            return False

        try:
            with self._conn:
                self._conn.execute("DELETE FROM reviews;")
                for r in reviews:
                    self._conn.execute(
                        "INSERT INTO reviews (id, place_id, record_json) VALUES (?, ?, ?);",
                        (r.id, r.place_id, orjson.dumps(r.model_dump(mode="json"))),
                    )
        except (sqlite3.Error, TypeError) as e:
            raise StorageWriteError(f"store_reviews n={len(reviews)} err={e!r}") from e

        self.set_timestamp(REVIEWS_KEY, cache_duration_minutes)
        logger.info("[store] cached %d reviews", len(reviews))
        return True

    def get_places(self) -> list[Place]:
        if self._conn is None:
            return []
        try:
            rows = self._conn.execute("SELECT id, record_json FROM places;").fetchall()
        except sqlite3.Error as e:
            logger.error("[store] get_places FAILED: %r", e)
            return []

        out: list[Place] = []
        for (pid, blob) in rows:
            try:
                out.append(Place.model_validate(orjson.loads(blob)))
            except (orjson.JSONDecodeError, ValueError) as e:
                logger.warning("[store] skipping unreadable place id=%s: %r", pid, e)
        return out

    def get_reviews(self, place_ids: Optional[Sequence[str]] = None) -> list[Review]:
        if self._conn is None:
            return []

        try:
            if not place_ids:
                rows = self._conn.execute("SELECT id, record_json FROM reviews;").fetchall()
            else:
                rows = []
                for pid in place_ids:
                    cur = self._conn.execute(
                        "SELECT id, record_json FROM reviews WHERE place_id=?;", (pid,)
                    )
                    rows.extend(cur.fetchall())
        except sqlite3.Error as e:
            logger.error("[store] get_reviews FAILED: %r", e)
            return []

        out: list[Review] = []
        for (rid, blob) in rows:
            try:
                out.append(Review.model_validate(orjson.loads(blob)))
            except (orjson.JSONDecodeError, ValueError) as e:
                logger.warning("[store] skipping unreadable review id=%s: %r", rid, e)
        return out

    def clear(self) -> bool:
        if self._conn is None:
            return False
        try:
            with self._conn:
                self._conn.execute("DELETE FROM places;")
                self._conn.execute("DELETE FROM reviews;")
                self._conn.execute("DELETE FROM timestamps;")
        except sqlite3.Error as e:
            logger.error("[store] clear FAILED: %r", e)
            return False
        logger.info("[store] cache cleared")
        return True
