"""
Tests for the hybrid recommendation pipeline, its cache path, the trending
fallback, and similar-book lookups.
"""

from __future__ import annotations

import pytest

from bookrec.models.user import Collection
from bookrec.schemas.recommendation import Recommendation, RecommendationContext
from bookrec.services.recommendation_service import rank_score
from tests.factories import add_to_collection, make_book, make_user


async def _mystery_reader(session_factory, books: int = 8) -> tuple[int, int, list[int]]:
    """A user who loved one mystery, plus a catalog of other mysteries and some noise."""
    user_id = await make_user(session_factory, "sleuth")
    loved = await make_book(
        session_factory, "The Loved One", genres=("Mystery",), authors=("Loved Author",)
    )
    await add_to_collection(session_factory, user_id, loved, Collection.SHELF, rating=5)
    others = [
        await make_book(
            session_factory,
            f"Mystery {i}",
            genres=("Mystery",),
            authors=(f"Writer {i}",),
            internal_rating=3.6 + i * 0.1,
        )
        for i in range(books)
    ]
    for i in range(3):
        await make_book(session_factory, f"Romance {i}", genres=("Romance",), authors=(f"Poet {i}",))
    return user_id, loved, others


class TestHomeRecommendations:
    @pytest.mark.asyncio
    async def test_new_user_gets_trending_fallback(self, container, session_factory):
        user_id = await make_user(session_factory, "newbie")
        for i in range(12):
            await make_book(
                session_factory,
                f"Popular {i}",
                genres=("Fiction",),
                authors=(f"Author {i}",),
                internal_rating=3.0 + i * 0.1,
                read_count=5 + i * 5,
            )

        batch = await container.recommendations.get_recommendations_with_source(user_id, n=10)

        assert batch.source == "trending"
        assert len(batch.recommendations) == 10
        popularity = [
            r.book.internal_rating * r.book.read_count for r in batch.recommendations
        ]
        assert popularity == sorted(popularity, reverse=True)
        assert all(r.score_breakdown.trending == 1.0 for r in batch.recommendations)
        assert all(r.algorithm == "trending" for r in batch.recommendations)
        assert [r.position for r in batch.recommendations] == list(range(1, 11))
        assert batch.recommendations[0].reason == "Popular right now"

    @pytest.mark.asyncio
    async def test_personalized_excludes_owned_books(self, container, session_factory):
        user_id, loved, others = await _mystery_reader(session_factory)

        batch = await container.recommendations.get_recommendations_with_source(user_id, n=5)

        ids = [r.book_id for r in batch.recommendations]
        assert batch.source == "fresh"
        assert loved not in ids
        assert len(ids) == 5
        assert len(set(ids)) == len(ids)
        assert set(ids) <= set(others)
        for rec in batch.recommendations:
            assert 0.0 <= rec.score <= 1.0
            assert rec.algorithm == "hybrid"
            assert rec.reason

    @pytest.mark.asyncio
    async def test_newly_added_book_leaves_candidates(self, container, session_factory):
        user_id, _, _ = await _mystery_reader(session_factory)
        service = container.recommendations
        first = await service.get_recommendations(user_id, n=5)
        picked = first[0].book_id

        await add_to_collection(session_factory, user_id, picked, Collection.TBR)
        await container.cache.invalidate(user_id)
        again = await service.get_recommendations(user_id, n=5)

        assert picked not in [r.book_id for r in again]

    @pytest.mark.asyncio
    async def test_positions_follow_order(self, container, session_factory):
        user_id, _, _ = await _mystery_reader(session_factory)
        recs = await container.recommendations.get_recommendations(user_id, n=4)
        assert [r.position for r in recs] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_second_request_served_from_cache(self, container, session_factory):
        user_id, _, _ = await _mystery_reader(session_factory)
        service = container.recommendations

        first = await service.get_recommendations_with_source(user_id, n=5)
        second = await service.get_recommendations_with_source(user_id, n=5)

        assert first.source == "fresh"
        assert second.source == "cache"
        assert [r.book_id for r in second.recommendations] == [r.book_id for r in first.recommendations]
        assert all(r.book is not None for r in second.recommendations)

    @pytest.mark.asyncio
    async def test_short_list_served_from_cache_for_same_request_size(
        self, container, session_factory
    ):
        user_id, _, others = await _mystery_reader(session_factory, books=3)
        service = container.recommendations

        first = await service.get_recommendations_with_source(user_id, n=20)
        second = await service.get_recommendations_with_source(user_id, n=20)
        await container.queue.join()
        history = await container.log_store.user_history(user_id)

        assert first.source == "fresh"
        assert sorted(r.book_id for r in first.recommendations) == sorted(others)
        assert second.source == "cache"
        assert [r.book_id for r in second.recommendations] == [r.book_id for r in first.recommendations]
        assert len(history) == 3

    @pytest.mark.asyncio
    async def test_invalidated_cache_is_regenerated(self, container, session_factory):
        user_id, _, _ = await _mystery_reader(session_factory)
        service = container.recommendations
        await service.get_recommendations_with_source(user_id, n=5)

        await container.cache.invalidate(user_id)
        batch = await service.get_recommendations_with_source(user_id, n=5)

        assert batch.source == "fresh"

    @pytest.mark.asyncio
    async def test_bypass_cache(self, container, session_factory):
        user_id, _, _ = await _mystery_reader(session_factory)
        service = container.recommendations
        await service.get_recommendations_with_source(user_id, n=5)
        batch = await service.get_recommendations_with_source(user_id, n=5, use_cache=False)
        assert batch.source == "fresh"

    @pytest.mark.asyncio
    async def test_larger_request_than_cached_regenerates(self, container, session_factory):
        user_id, _, _ = await _mystery_reader(session_factory)
        service = container.recommendations
        await service.get_recommendations_with_source(user_id, n=3)
        batch = await service.get_recommendations_with_source(user_id, n=6)
        assert batch.source == "fresh"
        assert len(batch.recommendations) == 6

    @pytest.mark.asyncio
    async def test_unknown_user_gets_empty(self, container):
        batch = await container.recommendations.get_recommendations_with_source(31337, n=5)
        assert batch.source == "empty"
        assert batch.recommendations == []

    @pytest.mark.asyncio
    async def test_non_positive_n(self, container, session_factory):
        user_id, _, _ = await _mystery_reader(session_factory)
        assert await container.recommendations.get_recommendations(user_id, n=0) == []

    @pytest.mark.asyncio
    async def test_failure_serves_retained_stale_list(self, container, session_factory, monkeypatch):
        user_id = await make_user(session_factory, "unlucky")
        book_id = await make_book(session_factory, "Old Favorite", genres=("Fantasy",))
        await container.cache.cache_recommendations(
            user_id, [Recommendation(book_id=book_id, score=0.7, position=1)]
        )
        await container.cache.invalidate(user_id)

        async def broken(*args, **kwargs):
            raise RuntimeError("catalog unavailable")

        monkeypatch.setattr(container.recommendations, "_generate", broken)
        batch = await container.recommendations.get_recommendations_with_source(user_id, n=5)

        assert batch.source == "stale"
        assert [r.book_id for r in batch.recommendations] == [book_id]

    @pytest.mark.asyncio
    async def test_failure_without_stale_falls_back_to_trending(
        self, container, session_factory, monkeypatch
    ):
        user_id = await make_user(session_factory, "unlucky")
        await make_book(session_factory, "Crowd Pleaser", read_count=100)

        async def broken(*args, **kwargs):
            raise RuntimeError("catalog unavailable")

        monkeypatch.setattr(container.recommendations, "_generate", broken)
        batch = await container.recommendations.get_recommendations_with_source(user_id, n=5)

        assert batch.source == "trending"
        assert len(batch.recommendations) == 1

    @pytest.mark.asyncio
    async def test_impressions_logged_in_background(self, container, session_factory):
        user_id, _, _ = await _mystery_reader(session_factory)
        context = RecommendationContext(page="home", session_id="sess-42")
        recs = await container.recommendations.get_recommendations(user_id, n=4, context=context)

        await container.queue.join()
        history = await container.log_store.user_history(user_id)

        assert sorted(row.book_id for row in history) == sorted(r.book_id for r in recs)
        assert {row.session_id for row in history} == {"sess-42"}
        assert {row.algorithm for row in history} == {"hybrid"}


class TestRefreshUser:
    @pytest.mark.asyncio
    async def test_refresh_caches_both_slots(self, container, session_factory):
        user_id, _, _ = await _mystery_reader(session_factory)

        entry = await container.recommendations.refresh_user(user_id)

        assert entry is not None
        assert entry.home
        assert await container.cache.is_fresh(user_id)

    @pytest.mark.asyncio
    async def test_refresh_unknown_user(self, container):
        assert await container.recommendations.refresh_user(5555) is None


class TestSimilarBooks:
    @pytest.mark.asyncio
    async def test_shared_genre_or_author(self, container, session_factory):
        seed = await make_book(
            session_factory, "Murder at Sea", genres=("Mystery",), authors=("Agatha Christie",)
        )
        same_genre = await make_book(
            session_factory, "Cold Case", genres=("Crime",), authors=("Someone Else",)
        )
        same_author = await make_book(
            session_factory, "Love Letters", genres=("Romance",), authors=("Agatha Christie",)
        )
        unrelated = await make_book(
            session_factory, "Starship", genres=("Sci-Fi",), authors=("Space Person",)
        )
        duplicate = await make_book(
            session_factory, "Murder  at Sea", genres=("Mystery",), authors=("Agatha Christie",)
        )

        recs = await container.recommendations.get_similar_books(seed, limit=10)
        ids = [r.book_id for r in recs]

        assert same_genre in ids
        assert same_author in ids
        assert unrelated not in ids
        assert duplicate not in ids
        assert seed not in ids
        assert all(r.algorithm == "similar-books" for r in recs)
        by_id = {r.book_id: r for r in recs}
        assert by_id[same_genre].score_breakdown.genre == 1.0
        assert by_id[same_author].score_breakdown.author == 1.0

    @pytest.mark.asyncio
    async def test_missing_book(self, container):
        assert await container.recommendations.get_similar_books(987654) == []


def test_rank_score():
    assert rank_score(0) == 1.0
    assert rank_score(10) == pytest.approx(0.9)
    assert rank_score(250) == 0.0
