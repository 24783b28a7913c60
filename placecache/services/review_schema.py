from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from placecache.core.settings import Settings
from placecache.services.row_store import QueryError, RowStore

# Names seen for the review → place foreign key across schema revisions.
PLACE_ID_FIELD_CANDIDATES: tuple[str, ...] = ("place_id", "placeId", "place", "placeUuid")
DEFAULT_JOIN_FIELD = "place_id"


@dataclass(frozen=True)
class ReviewSource:
    table: str
    join_field_candidates: tuple[str, ...] = PLACE_ID_FIELD_CANDIDATES


@dataclass
class ResolvedReviews:
    source: Optional[ReviewSource] = None
    join_field: str = DEFAULT_JOIN_FIELD
    rows: list[dict[str, Any]] | None = None
    error: Optional[QueryError] = None


def review_sources_from_settings(cfg: Settings) -> list[ReviewSource]:
    return [ReviewSource(table=t) for t in cfg.review_table_names()]


def resolve_join_field(rows: Sequence[dict[str, Any]], candidates: Sequence[str]) -> str:
    """First candidate that carries a value in any row; `place_id` otherwise."""
    for name in candidates:
        for row in rows:
            if row.get(name) not in (None, ""):
                return name
    return DEFAULT_JOIN_FIELD


async def fetch_review_rows(
    rows: RowStore,
    sources: Sequence[ReviewSource],
    *,
    limit: Optional[int] = None,
) -> ResolvedReviews:
    """
    Try each source in order; the first table that answers without an error
    wins, even when it answers with zero rows. When all fail, the last error
    is returned.
    """
    last_error: Optional[QueryError] = None
    for src in sources:
        res = await rows.select(src.table, "*", limit=limit)
        if res.error is not None:
            last_error = res.error
            continue
        return ResolvedReviews(
            source=src,
            join_field=resolve_join_field(res.rows, src.join_field_candidates),
            rows=res.rows,
        )

    if last_error is None:
        last_error = QueryError(code="no_source", message="no review tables configured")
    return ResolvedReviews(error=last_error)
