"""
Durable Store Tests for the games_cache table

Validates keyed upsert semantics, secondary orderings, staleness queries
and purge against a real SQLite database. Tests ensure:
- Upsert is idempotent on external id and clears the refresh flag
- last_refreshed_at never moves backwards
- Listings order and filter as documented
- Database failures come back as empty results, never exceptions
"""

import pytest
from datetime import datetime, timedelta, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from conftest import START_TIME, make_record
from gamecache.services.metadata_store import MetadataStore, _decode_list


class TestUpsert:
    """Test insert-or-replace keyed by external id"""

    async def test_round_trip(self, store):
        record = make_record(
            "1942",
            title="The Witcher 3",
            summary="Monster hunting",
            cover_image_ref="https://images.igdb.com/a.jpg",
            screenshot_refs=["https://images.igdb.com/s1.jpg"],
            platforms=["PC", "PS4"],
            genres=["RPG"],
            rating=93.4,
            release_timestamp=datetime(2015, 5, 19, tzinfo=timezone.utc),
            popularity_score=3120,
        )

        assert await store.upsert(record) is True
        cached = await store.get("1942")

        assert cached.title == "The Witcher 3"
        assert cached.slug == "the-witcher-3"
        assert cached.platforms == ["PC", "PS4"]
        assert cached.screenshot_refs == ["https://images.igdb.com/s1.jpg"]
        assert cached.video_refs == []
        assert cached.rating == pytest.approx(93.4)
        assert cached.release_timestamp == datetime(2015, 5, 19, tzinfo=timezone.utc)
        assert cached.popularity_score == 3120
        assert cached.last_refreshed_at == START_TIME
        assert cached.force_refresh is False

    async def test_missing_record(self, store):
        assert await store.get("404") is None

    async def test_idempotent_on_external_id(self, store, clock):
        await store.upsert(make_record("1", title="Old title"))
        clock.advance(hours=1)
        await store.upsert(make_record("1", title="New title"))

        rows = await store.list_by_popularity(100)

        assert len(rows) == 1
        assert rows[0].title == "New title"
        assert rows[0].last_refreshed_at == START_TIME + timedelta(hours=1)

    async def test_last_refreshed_never_moves_backwards(self, store, clock):
        clock.advance(hours=5)
        await store.upsert(make_record("1"))

        clock.now = START_TIME
        await store.upsert(make_record("1", title="Late write"))

        cached = await store.get("1")
        assert cached.title == "Late write"
        assert cached.last_refreshed_at == START_TIME + timedelta(hours=5)

    async def test_upsert_clears_force_refresh(self, store):
        await store.upsert(make_record("1"))
        assert await store.mark_force_refresh(["1"]) is True
        assert (await store.get("1")).force_refresh is True

        await store.upsert(make_record("1"))
        assert (await store.get("1")).force_refresh is False

    async def test_upsert_many_last_duplicate_wins(self, store):
        ok = await store.upsert_many([
            make_record("1", title="First"),
            make_record("2"),
            make_record("1", title="Second"),
        ])

        assert ok is True
        assert (await store.get("1")).title == "Second"
        assert len(await store.list_by_popularity(10)) == 2

    async def test_upsert_many_empty(self, store):
        assert await store.upsert_many([]) is True


class TestListings:
    """Test secondary orderings and text search"""

    async def test_popularity_then_freshness(self, store, clock):
        await store.upsert(make_record("low", popularity_score=1))
        await store.upsert(make_record("tie-old", popularity_score=50))
        clock.advance(minutes=5)
        await store.upsert(make_record("tie-new", popularity_score=50))
        await store.upsert(make_record("high", popularity_score=99))

        rows = await store.list_by_popularity(10)

        assert [r.external_id for r in rows] == ["high", "tie-new", "tie-old", "low"]

    async def test_popularity_limit(self, store):
        await store.upsert_many([make_record(str(i), popularity_score=i) for i in range(5)])

        rows = await store.list_by_popularity(2)

        assert [r.external_id for r in rows] == ["4", "3"]

    async def test_recency_excludes_unknown_release(self, store):
        await store.upsert_many([
            make_record("unannounced"),
            make_record("old", release_timestamp=datetime(2001, 1, 1, tzinfo=timezone.utc)),
            make_record("new", release_timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc)),
        ])

        rows = await store.list_by_recency(10)

        assert [r.external_id for r in rows] == ["new", "old"]

    async def test_search_title_and_summary_case_insensitive(self, store):
        await store.upsert_many([
            make_record("1", title="The Legend of Zelda", popularity_score=10),
            make_record("2", title="Hyrule Warriors", summary="A ZELDA spin-off", popularity_score=20),
            make_record("3", title="Metroid"),
        ])

        rows = await store.search_text("zelda", 10)

        assert [r.external_id for r in rows] == ["2", "1"]

    async def test_search_treats_wildcards_literally(self, store):
        await store.upsert_many([
            make_record("1", title="100% Orange Juice"),
            make_record("2", title="100 Balls"),
        ])

        rows = await store.search_text("100%", 10)

        assert [r.external_id for r in rows] == ["1"]


class TestStaleness:
    """Test stale listing and age-based purge"""

    async def test_list_stale_includes_expired_and_flagged(self, store, clock):
        await store.upsert(make_record("expired"))
        clock.advance(hours=12)
        await store.upsert(make_record("flagged"))
        await store.upsert(make_record("fresh"))
        await store.mark_force_refresh(["flagged"])
        clock.advance(hours=13)

        rows = await store.list_stale(timedelta(hours=24), 10)

        assert [r.external_id for r in rows] == ["expired", "flagged"]

    async def test_list_stale_limit_oldest_first(self, store, clock):
        for i in range(3):
            await store.upsert(make_record(str(i)))
            clock.advance(hours=1)
        clock.advance(days=2)

        rows = await store.list_stale(timedelta(hours=24), 2)

        assert [r.external_id for r in rows] == ["0", "1"]

    async def test_purge_older_than(self, store, clock):
        await store.upsert_many([make_record("1"), make_record("2")])
        clock.advance(days=6)
        await store.upsert(make_record("3"))
        clock.advance(days=2)

        deleted = await store.purge_older_than(timedelta(days=7))

        assert deleted == 2
        assert await store.get("1") is None
        assert await store.get("3") is not None

    async def test_mark_force_refresh_unknown_ids_is_noop(self, store):
        assert await store.mark_force_refresh(["nope"]) is True
        assert await store.mark_force_refresh([]) is True


class TestClearAll:
    """Test full cache clear"""

    async def test_clear_runs_dependent_hooks_first(self, store):
        await store.upsert_many([make_record("1"), make_record("2")])
        seen = []

        async def sever_references(db):
            result = await db.execute(text("SELECT COUNT(*) FROM games_cache"))
            seen.append(result.scalar())

        store.add_dependent_reference_hook(sever_references)

        assert await store.clear_all() is True
        assert seen == [2]
        assert await store.list_by_popularity(10) == []

    async def test_failing_hook_keeps_rows(self, store):
        await store.upsert(make_record("1"))

        async def broken_hook(db):
            await db.execute(text("UPDATE missing_table SET game_id = NULL"))

        store.add_dependent_reference_hook(broken_hook)

        assert await store.clear_all() is False
        assert await store.get("1") is not None


class TestStoreErrors:
    """Test that database failures never escape the store"""

    @pytest.fixture
    async def broken_store(self, tmp_path, clock):
        # No tables created: every statement fails
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        yield MetadataStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), clock=clock)
        await engine.dispose()

    async def test_reads_return_empty(self, broken_store):
        assert await broken_store.get("1") is None
        assert await broken_store.list_by_popularity(5) == []
        assert await broken_store.list_by_recency(5) == []
        assert await broken_store.search_text("zelda", 5) == []
        assert await broken_store.list_stale(timedelta(hours=1), 5) == []

    async def test_writes_return_false_or_zero(self, broken_store):
        assert await broken_store.upsert(make_record("1")) is False
        assert await broken_store.upsert_many([make_record("1"), make_record("2")]) is False
        assert await broken_store.mark_force_refresh(["1"]) is False
        assert await broken_store.purge_older_than(timedelta(days=7)) == 0
        assert await broken_store.clear_all() is False


@pytest.mark.parametrize("value,expected", [
    (None, []),
    (["a", None, "b"], ["a", "b"]),
    ('["a", "b"]', ["a", "b"]),
    ("plain", ["plain"]),
    ("", []),
    (42, []),
])
def test_decode_list(value, expected):
    assert _decode_list(value) == expected
