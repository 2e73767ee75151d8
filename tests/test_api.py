"""
Unit and integration tests for the HTTP surface.
Run: pytest tests/ -v
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from bookrec.main import app
from bookrec.schemas.recommendation import Recommendation
from tests.factories import make_book, make_user


@pytest_asyncio.fixture
async def client(container):
    """Test client wired to the per-test service container (lifespan is not run)."""
    app.state.container = container
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.container = None


class TestHealthEndpoints:
    """Test health, readiness, and liveness probes."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "bookrec"

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_readiness(self, client):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "ok", "redis": "ok"}

    @pytest.mark.asyncio
    async def test_not_ready_without_container(self):
        app.state.container = None
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get("/ready")
            assert response.status_code == 503
            response = await ac.get("/recommendations/home", headers={"X-User-Id": "1"})
            assert response.status_code == 503


class TestRecommendationEndpoints:
    @pytest.mark.asyncio
    async def test_requires_user_header(self, client):
        response = await client.get("/recommendations/home")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_home_for_new_user(self, client, session_factory):
        user_id = await make_user(session_factory, "newbie")
        await make_book(session_factory, "Crowd Pleaser", read_count=50)

        response = await client.get(
            "/recommendations/home", params={"limit": 5}, headers={"X-User-Id": str(user_id)}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["source"] == "trending"
        assert data["user_id"] == user_id
        rec = data["recommendations"][0]
        assert rec["algorithm"] == "trending"
        assert rec["book"]["title"] == "Crowd Pleaser"
        assert set(rec["score_breakdown"]) == {
            "genre",
            "author",
            "quality",
            "friends",
            "trending",
            "recency",
            "diversity",
        }

    @pytest.mark.asyncio
    async def test_limit_validated(self, client):
        response = await client.get(
            "/recommendations/home", params={"limit": 500}, headers={"X-User-Id": "1"}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_friends_empty(self, client, session_factory):
        user_id = await make_user(session_factory, "loner")
        response = await client.get("/recommendations/friends", headers={"X-User-Id": str(user_id)})
        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_similar_unknown_book(self, client):
        response = await client.get("/recommendations/similar/999999")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_similar(self, client, session_factory):
        seed = await make_book(session_factory, "Seed", genres=("Mystery",), authors=("A",))
        other = await make_book(session_factory, "Other", genres=("Crime",), authors=("B",))
        response = await client.get(f"/recommendations/similar/{seed}")
        assert response.status_code == 200
        assert [r["book_id"] for r in response.json()] == [other]

    @pytest.mark.asyncio
    async def test_conversion_requires_action(self, client):
        response = await client.post(
            "/recommendations/feedback",
            json={"book_id": 1, "action": "converted"},
            headers={"X-User-Id": "1"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_feedback_updates_log(self, client, container):
        await container.log_store.log_recommendations(1, [Recommendation(book_id=5, score=0.5, position=1)])
        response = await client.post(
            "/recommendations/feedback",
            json={"book_id": 5, "action": "clicked"},
            headers={"X-User-Id": "1"},
        )
        assert response.status_code == 202
        assert response.json() == {"updated": True}

        metrics = await client.get("/recommendations/metrics/hybrid")
        assert metrics.json()["clicks"] == 1
        assert metrics.json()["ctr"] == 100.0


class TestEventEndpoints:
    @pytest.mark.asyncio
    async def test_track_event(self, client):
        response = await client.post(
            "/events",
            json={"type": "book.viewed", "metadata": {"book_id": 3}, "session_id": "s-1"},
            headers={"X-User-Id": "7"},
        )
        assert response.status_code == 202
        data = response.json()
        assert data["tracked"] is True
        assert data["event"]["type"] == "book.viewed"

    @pytest.mark.asyncio
    async def test_unknown_event_type(self, client):
        response = await client.post(
            "/events", json={"type": "book.eaten"}, headers={"X-User-Id": "7"}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_batch_and_activity(self, client):
        response = await client.post(
            "/events/batch",
            json=[
                {"type": "book.rated", "metadata": {"book_id": 3, "rating": 4}},
                {"type": "search.performed", "metadata": {"query": "dune"}},
            ],
            headers={"X-User-Id": "7"},
        )
        assert response.json() == {"tracked": 2}

        activity = await client.get("/events/activity", headers={"X-User-Id": "7"})
        data = activity.json()
        assert data["rated"] == 1
        assert data["searches"] == 1
        assert data["is_active"] is True

    @pytest.mark.asyncio
    async def test_onboarding(self, client, session_factory):
        user_id = await make_user(session_factory, "newcomer")
        response = await client.post(
            "/onboarding",
            json={
                "genres": [{"genre": "Sci-Fi", "weight": 1.0}, {"genre": "Mystery", "weight": 0.5}],
                "authors": ["Ursula K. Le Guin"],
            },
            headers={"X-User-Id": str(user_id)},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["top_genres"] == ["science fiction", "mystery"]
        assert data["top_authors"] == ["Ursula K Le Guin"]


class TestMetrics:
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client):
        await client.get("/health")
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text
