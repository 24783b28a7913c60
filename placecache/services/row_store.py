"""
placecache/services/row_store.py

The remote row store, seen through one call:

    select(table, columns, limit) -> QueryResult(rows | error{code, message})

Two backends:
  - SupabaseRowStore  — PostgREST over HTTPS (anon key, RLS applies)
  - PostgresRowStore  — direct Postgres+PostGIS (geometry comes back as EWKB hex)

Factory `create_row_store()` picks one from settings. Backends never raise for
a failed query; the failure is returned in `QueryResult.error`.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import httpx

from placecache.core.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


# ── Data ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class QueryError:
    code: str
    message: str


@dataclass
class QueryResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[QueryError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _columns_param(columns: Sequence[str] | str) -> str:
    if isinstance(columns, str):
        return columns
    return ",".join(columns) if columns else "*"


# ── Abstract interface ───────────────────────────────────────────────

class RowStore(ABC):
    """Read-only row access to the remote place/review tables."""

    @abstractmethod
    async def select(
        self,
        table: str,
        columns: Sequence[str] | str = "*",
        *,
        limit: Optional[int] = None,
    ) -> QueryResult:
        ...

    @abstractmethod
    async def aclose(self) -> None:
        ...


# ── Supabase backend (PostgREST) ─────────────────────────────────────

class SupabaseRowStore(RowStore):
    """
    Minimal Supabase REST reader:
      GET {url}/rest/v1/{table}?select=...&limit=...
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_s: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base = base_url.rstrip("/")
        self.key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Accept": "application/json",
        }

    async def select(
        self,
        table: str,
        columns: Sequence[str] | str = "*",
        *,
        limit: Optional[int] = None,
    ) -> QueryResult:
        params: list[tuple[str, str]] = [("select", _columns_param(columns))]
        if limit is not None:
            params.append(("limit", str(max(1, int(limit)))))

        url = f"{self.base}/rest/v1/{table}"
        try:
            resp = await self._client.get(url, headers=self._headers(), params=params)
            resp.raise_for_status()
            rows = resp.json()
        except httpx.HTTPStatusError as e:
            # PostgREST errors are {code, message, details, hint}
            code = str(e.response.status_code)
            message = ""
            try:
                body = e.response.json()
                code = str(body.get("code") or code)
                message = str(body.get("message") or "")
            except ValueError:
                message = (e.response.text or "")[:800]
            return QueryResult(error=QueryError(code=code, message=message or repr(e)))
        except httpx.HTTPError as e:
            return QueryResult(error=QueryError(code="network", message=repr(e)))
        except ValueError as e:
            return QueryResult(error=QueryError(code="bad_json", message=repr(e)))

        if not isinstance(rows, list):
            return QueryResult(error=QueryError(code="bad_shape", message=f"expected list, got {type(rows).__name__}"))
        return QueryResult(rows=rows)

    async def aclose(self) -> None:
        await self._client.aclose()


# ── Postgres + PostGIS backend ───────────────────────────────────────

class PostgresRowStore(RowStore):
    """
    Queries Postgres directly through a psycopg2 pool.
    Blocking calls run in a worker thread so the event loop keeps going.
    """

    def __init__(self, database_url: str, min_conn: int = 1, max_conn: int = 5):
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            from psycopg2 import sql
        except ImportError:
            raise RuntimeError(
                "psycopg2-binary is required for the Postgres row store. "
                "Install: pip install psycopg2-binary"
            )

        self._psycopg2 = psycopg2
        self._extras = psycopg2.extras
        self._sql = sql
        logger.info("[rows] Connecting to Postgres (pool %d-%d)...", min_conn, max_conn)
        self._pool = psycopg2.pool.ThreadedConnectionPool(min_conn, max_conn, database_url)

    def _select_sync(self, table: str, columns: Sequence[str] | str, limit: Optional[int]) -> QueryResult:
        sql = self._sql
        if columns == "*" or not columns:
            cols = sql.SQL("*")
        else:
            names = columns.split(",") if isinstance(columns, str) else list(columns)
            cols = sql.SQL(", ").join(sql.Identifier(c.strip()) for c in names)

        query = sql.SQL("SELECT {} FROM {}").format(cols, sql.Identifier(table))
        params: tuple = ()
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params = (max(1, int(limit)),)

        conn = self._pool.getconn()
        try:
            cur = conn.cursor(cursor_factory=self._extras.RealDictCursor)
            try:
                cur.execute(query, params)
                rows = [dict(r) for r in cur.fetchall()]
            finally:
                cur.close()
            conn.rollback()
            return QueryResult(rows=rows)
        except self._psycopg2.Error as e:
            conn.rollback()
            return QueryResult(error=QueryError(code=e.pgcode or "postgres", message=str(e).strip()))
        finally:
            self._pool.putconn(conn)

    async def select(
        self,
        table: str,
        columns: Sequence[str] | str = "*",
        *,
        limit: Optional[int] = None,
    ) -> QueryResult:
        return await asyncio.to_thread(self._select_sync, table, columns, limit)

    async def aclose(self) -> None:
        self._pool.closeall()


# ── Factory ──────────────────────────────────────────────────────────

def create_row_store(cfg: Settings | None = None) -> RowStore:
    """
    Pick the row store backend.

    Priority:
      1. REMOTE_BACKEND=postgres + DATABASE_URL → Postgres
      2. SUPA_URL + SUPA_ANON_KEY              → Supabase REST
    """
    cfg = cfg or default_settings
    backend = (cfg.remote_backend or "supabase").strip().lower()

    if backend == "postgres":
        if not cfg.database_url:
            raise RuntimeError("Postgres row store not configured (DATABASE_URL)")
        logger.info("[rows] Using Postgres backend")
        return PostgresRowStore(cfg.database_url)

    if backend == "supabase":
        if not cfg.supa_url or not cfg.supa_anon_key:
            raise RuntimeError("Supabase not configured (SUPA_URL / SUPA_ANON_KEY)")
        logger.info("[rows] Using Supabase backend: %s", cfg.supa_url)
        return SupabaseRowStore(cfg.supa_url, cfg.supa_anon_key, timeout_s=cfg.remote_timeout_s)

    raise RuntimeError(f"Unknown REMOTE_BACKEND={cfg.remote_backend!r} (expected supabase|postgres)")
