"""Tests for review normalisation, review joins and the remote fetcher."""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from placecache.core.contracts import LatLng, Review
from placecache.core.errors import RemoteQueryError
from placecache.core.storage import REVIEWS_KEY, SqliteCacheStore
from placecache.services.fetcher import RemoteFetcher, normalize_review
from placecache.services.review_schema import ReviewSource, resolve_join_field
from placecache.services.row_store import QueryError
from tests.mocks.fake_row_store import FakeRowStore, place_row, review_row


@pytest.fixture
def store():
    s = SqliteCacheStore(":memory:")
    s.initialize()
    yield s
    s.close()


def _fetcher(rows: FakeRowStore, store, tables=("Reviews",)) -> RemoteFetcher:
    return RemoteFetcher(
        rows,
        store,
        places_table="Place",
        review_sources=[ReviewSource(table=t) for t in tables],
        cache_duration_minutes=60,
    )


class TestNormalizeReview:
    def test_defaults_for_empty_row(self) -> None:
        r = normalize_review({}, "place_id")
        assert r.rating == 5
        assert r.id
        assert r.id.startswith("auto-")
        assert r.place_id == ""
        assert r.comment is None
        assert r.user_id is None
        # ISO-8601 "now"
        created = datetime.fromisoformat(r.created_at.replace("Z", "+00:00"))
        updated = datetime.fromisoformat(r.updated_at.replace("Z", "+00:00"))
        assert created.tzinfo is not None
        assert abs((updated - created).total_seconds()) < 5

    def test_generated_ids_differ(self) -> None:
        assert normalize_review({}, "place_id").id != normalize_review({}, "place_id").id

    def test_uses_resolved_join_field(self) -> None:
        r = normalize_review({"id": "r1", "placeId": "abc", "rating": "3"}, "placeId")
        assert r.place_id == "abc"
        assert r.rating == 3.0

    def test_falls_back_to_place_id(self) -> None:
        r = normalize_review({"id": "r1", "place_id": "xyz"}, "placeUuid")
        assert r.place_id == "xyz"

    @pytest.mark.parametrize("raw_rating", [None, "", "bad", 0, float("nan")])
    def test_invalid_rating_defaults_to_five(self, raw_rating) -> None:
        assert normalize_review({"rating": raw_rating}, "place_id").rating == 5

    def test_comment_and_author_aliases(self) -> None:
        r = normalize_review({"text": "great", "userId": "u1"}, "place_id")
        assert r.comment == "great"
        assert r.user_id == "u1"
        r = normalize_review({"content": "ok", "author": "bob"}, "place_id")
        assert r.comment == "ok"
        assert r.user_id == "bob"


def test_resolve_join_field_first_candidate_with_values() -> None:
    rows = [{"id": "1", "placeUuid": "a"}, {"id": "2", "placeId": "b"}]
    assert resolve_join_field(rows, ("place_id", "placeId", "place", "placeUuid")) == "placeId"
    assert resolve_join_field([], ("place_id", "placeId")) == "place_id"


class TestFetchPlaces:
    def test_returns_places(self, store) -> None:
        rows = FakeRowStore({"Place": [place_row("a", 37.7, -122.4), place_row("b", 37.8, -122.3)]})
        places = asyncio.run(_fetcher(rows, store).fetch_places())
        assert [p.id for p in places] == ["a", "b"]
        assert places[0].reviews is None

    def test_query_error_raises(self, store) -> None:
        rows = FakeRowStore({"Place": QueryError(code="PGRST301", message="JWT expired")})
        with pytest.raises(RemoteQueryError) as exc:
            asyncio.run(_fetcher(rows, store).fetch_places())
        assert exc.value.code == "PGRST301"
        assert "JWT expired" in exc.value.message

    def test_zero_rows_is_an_error(self, store) -> None:
        rows = FakeRowStore({"Place": []})
        with pytest.raises(RemoteQueryError):
            asyncio.run(_fetcher(rows, store).fetch_places())


class TestFetchReviews:
    def test_attaches_grouped_reviews_and_caches_them(self, store) -> None:
        rows = FakeRowStore(
            {
                "Place": [place_row("a", 1, 1), place_row("b", 2, 2)],
                "Reviews": [review_row("r1", "a", 4), review_row("r2", "a", 2)],
            }
        )
        f = _fetcher(rows, store)

        async def run():
            places = await f.fetch_places()
            return await f.fetch_reviews_for_places(places)

        result = asyncio.run(run())
        by_id = {p.id: p for p in result.places}
        assert [r.id for r in by_id["a"].reviews] == ["r1", "r2"]
        assert by_id["b"].reviews == []
        assert result.source == "remote"
        assert result.review_count == 2
        assert store.is_valid(REVIEWS_KEY, 60)
        assert {r.id for r in store.get_reviews(["a"])} == {"r1", "r2"}

    def test_discovers_camel_case_join_field(self, store) -> None:
        rows = FakeRowStore(
            {
                "Place": [place_row("a", 1, 1)],
                "Reviews": [review_row("r1", "a", 5, field="placeId")],
            }
        )
        f = _fetcher(rows, store)

        async def run():
            return await f.fetch_reviews_for_places(await f.fetch_places())

        result = asyncio.run(run())
        assert [r.place_id for r in result.places[0].reviews] == ["a"]

    def test_first_accessible_table_wins(self, store) -> None:
        rows = FakeRowStore(
            {
                "Place": [place_row("a", 1, 1)],
                "reviews": [review_row("r9", "a")],
            }
        )
        f = _fetcher(rows, store, tables=("Reviews", "reviews"))

        async def run():
            return await f.fetch_reviews_for_places(await f.fetch_places())

        result = asyncio.run(run())
        assert rows.calls == ["Place", "Reviews", "reviews"]
        assert [r.id for r in result.places[0].reviews] == ["r9"]

    def test_query_error_returns_places_unchanged(self, store) -> None:
        rows = FakeRowStore(
            {
                "Place": [place_row("a", 1, 1)],
                "Reviews": QueryError(code="42501", message="permission denied"),
            }
        )
        f = _fetcher(rows, store)

        async def run():
            return await f.fetch_reviews_for_places(await f.fetch_places())

        result = asyncio.run(run())
        assert result.source == "none"
        assert "permission denied" in result.error
        assert result.places[0].reviews is None

    def test_zero_rows_falls_back_to_cached_reviews(self, store) -> None:
        store.store_reviews([Review(id="old", place_id="a", rating=3)], 60)
        rows = FakeRowStore({"Place": [place_row("a", 1, 1), place_row("b", 1, 1)], "Reviews": []})
        f = _fetcher(rows, store)

        async def run():
            return await f.fetch_reviews_for_places(await f.fetch_places())

        result = asyncio.run(run())
        by_id = {p.id: p for p in result.places}
        assert result.source == "cache"
        assert [r.id for r in by_id["a"].reviews] == ["old"]
        assert by_id["b"].reviews == []


class TestFetchWithinBounds:
    NE = LatLng(lat=38.0, lng=-122.0)
    SW = LatLng(lat=37.0, lng=-123.0)

    def test_filters_to_bounds_and_skips_unparseable(self, store) -> None:
        rows = FakeRowStore(
            {
                "Place": [
                    place_row("in", 37.7749, -122.4194),
                    place_row("out", 40.7128, -74.006),
                    place_row("broken", 0, 0, location="garbage"),
                ],
                "Reviews": [],
            }
        )
        got = asyncio.run(_fetcher(rows, store).fetch_places_within_bounds(self.NE, self.SW, 15))
        assert [p.id for p in got] == ["in"]
        assert got[0].reviews == []

    def test_low_zoom_keeps_reviewed_only(self, store) -> None:
        rows = FakeRowStore(
            {
                "Place": [place_row("a", 37.5, -122.5), place_row("b", 37.6, -122.6)],
                "Reviews": [review_row("r1", "b")],
            }
        )
        got = asyncio.run(_fetcher(rows, store).fetch_places_within_bounds(self.NE, self.SW, 8))
        assert [p.id for p in got] == ["b"]

    def test_query_error_raises(self, store) -> None:
        rows = FakeRowStore({"Place": QueryError(code="500", message="boom")})
        with pytest.raises(RemoteQueryError):
            asyncio.run(_fetcher(rows, store).fetch_places_within_bounds(self.NE, self.SW, 12))

    def test_no_rows_is_empty(self, store) -> None:
        rows = FakeRowStore({"Place": []})
        assert asyncio.run(_fetcher(rows, store).fetch_places_within_bounds(self.NE, self.SW, 12)) == []


def test_repeated_place_ids_keep_first_row(store) -> None:
    rows = FakeRowStore(
        {
            "Place": [
                place_row("x", 1, 1, name="first"),
                place_row("x", 2, 2, name="second"),
                place_row("y", 3, 3),
            ]
        }
    )
    places = asyncio.run(_fetcher(rows, store).fetch_places())
    assert [(p.id, p.name) for p in places] == [("x", "first"), ("y", "Place y")]
    assert store.store_places(places, 60) is True


def test_review_write_failure_is_reported_and_reviews_still_attached(store) -> None:
    rows = FakeRowStore(
        {
            "Place": [place_row("a", 1, 1)],
            "Reviews": [review_row("dup", "a", 4), review_row("dup", "a", 2)],
        }
    )
    f = _fetcher(rows, store)

    async def run():
        return await f.fetch_reviews_for_places(await f.fetch_places())

    result = asyncio.run(run())
    assert result.source == "remote"
    assert "UNIQUE" in result.storage_error
    assert [r.rating for r in result.places[0].reviews] == [4, 2]
    assert store.is_valid(REVIEWS_KEY, 60) is False
