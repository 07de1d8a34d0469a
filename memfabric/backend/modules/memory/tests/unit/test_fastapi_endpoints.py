"""
Unit Tests for the FastAPI server endpoints.

The module-level fabric is patched with a real MemoryFabric over a
temporary SQLite store; requests go through httpx's ASGITransport, which
does not run the lifespan.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from memfabric.backend.modules.memory.errors import StorageError
from memfabric.server.main import AttributedRequest, create_app


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
async def client(app, fabric):
    with patch("memfabric.server.main._fabric", fabric):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


class TestMemoryEndpoints:
    """Test add / queue / search / context."""

    @pytest.mark.asyncio
    async def test_add_then_search(self, client):
        response = await client.post("/api/memories", json={"content": "I like green tea", "entity_id": "u1"})
        assert response.status_code == 200
        memory_id = response.json()["id"]

        response = await client.post("/api/search", json={"query": "I like green tea", "entity_id": "u1"})
        data = response.json()
        assert data["count"] == 1
        assert data["results"][0]["id"] == memory_id
        assert data["results"][0]["metadata"]["entity_id"] == "u1"

    @pytest.mark.asyncio
    async def test_search_respects_attribution(self, client):
        await client.post("/api/memories", json={"content": "alice note", "entity_id": "alice"})
        response = await client.post("/api/search", json={"query": "alice note", "entity_id": "bob"})
        assert response.json()["count"] == 0

    @pytest.mark.asyncio
    async def test_queue_then_wait(self, client, fabric):
        response = await client.post("/api/memories/queue", json={"content": "later", "role": "assistant"})
        assert response.status_code == 200
        assert response.json()["queued"] is True

        response = await client.post("/api/wait")
        assert response.json()["pending"] == 0
        assert await fabric.count() == 1

    @pytest.mark.asyncio
    async def test_context(self, client):
        await client.post("/api/memories", json={"content": "c"})
        response = await client.post("/api/context", json={"query": "c"})
        data = response.json()
        assert data["context"] == "- c (score: 0.0)"
        assert data["stats"]["last_run"]["context_chunks"] == 1

    @pytest.mark.asyncio
    async def test_empty_content_rejected(self, client):
        response = await client.post("/api/memories", json={"content": ""})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_bad_role_rejected(self, client):
        response = await client.post("/api/memories", json={"content": "x", "role": "robot"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_limit_bounds(self, client):
        response = await client.post("/api/search", json={"query": "x", "limit": 0})
        assert response.status_code == 422


class TestHealthAndStats:
    """Test /api/health and /api/stats."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store"] == "SqliteVecStore"

    @pytest.mark.asyncio
    async def test_stats(self, client):
        await client.post("/api/memories", json={"content": "one"})
        response = await client.get("/api/stats")
        data = response.json()
        assert data["memories"] == 1
        assert data["pending_writes"] == 0
        assert data["last_run"] is None

    @pytest.mark.asyncio
    async def test_unhealthy_store(self, app):
        broken = MagicMock()
        broken.closed = False
        broken.count = AsyncMock(side_effect=StorageError("database is locked"))
        with patch("memfabric.server.main._fabric", broken):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                response = await ac.get("/api/health")
        assert response.status_code == 503
        assert "database is locked" in response.json()["detail"]


class TestNotReady:
    """Requests before startup or after shutdown get 503."""

    @pytest.mark.asyncio
    async def test_no_fabric(self, app):
        with patch("memfabric.server.main._fabric", None):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                assert (await ac.post("/api/memories", json={"content": "x"})).status_code == 503
                assert (await ac.get("/api/health")).status_code == 503

    @pytest.mark.asyncio
    async def test_closed_fabric(self, app, fabric):
        await fabric.close()
        with patch("memfabric.server.main._fabric", fabric):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                assert (await ac.post("/api/search", json={"query": "x"})).status_code == 503


class TestRequestModels:
    """Test request -> Attribution conversion."""

    def test_empty_scope_is_none(self):
        assert AttributedRequest().to_attribution() is None

    def test_partial_scope(self):
        attribution = AttributedRequest(entity_id="u1").to_attribution()
        assert attribution.entity_id == "u1"
        assert attribution.process_id is None
