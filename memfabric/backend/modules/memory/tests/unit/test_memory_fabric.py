"""
Unit Tests for MemoryFabric.

Runs the real orchestrator over a temporary SQLite store with the
deterministic HashEmbedding from conftest.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import TEST_DIM, HashEmbedding
from memfabric.backend.modules.memory.chromadb_adapter import ChromaDBAdapter
from memfabric.backend.modules.memory.config import ClaraConfig, FabricConfig
from memfabric.backend.modules.memory.embedding_service import EmbeddingProvider
from memfabric.backend.modules.memory.errors import (
    DimensionMismatchError,
    EmbeddingError,
    StorageError,
    StoreClosedError,
)
from memfabric.backend.modules.memory.memory_fabric import (
    FabricState,
    MemoryFabric,
    ScopedFabric,
    create_store,
)
from memfabric.backend.modules.memory.memory_types import Attribution
from memfabric.backend.modules.memory.postgres_store import PostgresVecStore
from memfabric.backend.modules.memory.sqlite_vec_store import SqliteVecStore


def _llm(compressed="COMPRESSED_CONTENT", reasoned="REASONED_QUERY"):
    """Generation callable answering compression and reasoning prompts."""
    calls = []

    async def generate(prompt):
        calls.append(prompt)
        if "Compress" in prompt:
            return compressed
        return reasoned

    generate.calls = calls
    return generate


class GatedEmbedding(HashEmbedding):
    """HashEmbedding that blocks until `gate` is set."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def embed(self, text):
        self.started.set()
        await self.gate.wait()
        return await super().embed(text)


class TestAddAndSearch:
    """Test the primary write and read paths."""

    @pytest.mark.asyncio
    async def test_self_match_first(self, fabric):
        for text in ["I like green tea", "My dog is called Rex", "I work in Berlin"]:
            await fabric.add_memory(text)

        results = await fabric.search("My dog is called Rex", limit=3)

        assert results[0].content == "My dog is called Rex"
        assert results[0].distance == pytest.approx(0.0)
        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_default_limit(self, fabric):
        for i in range(8):
            await fabric.add_memory(f"memory {i}")
        results = await fabric.search("memory 0")
        assert len(results) == fabric.config.default_search_limit

    @pytest.mark.asyncio
    async def test_role_stored(self, fabric):
        await fabric.add_memory("hello there", role="assistant")
        result = (await fabric.search("hello there", limit=1))[0]
        assert result.metadata["role"] == "assistant"

    @pytest.mark.asyncio
    async def test_delete_and_count(self, fabric):
        keep = await fabric.add_memory("keep me")
        gone = await fabric.add_memory("forget me")
        assert await fabric.count() == 2

        await fabric.delete_memory(gone)

        assert await fabric.count() == 1
        ids = [r.id for r in await fabric.search("forget me", limit=5)]
        assert ids == [keep]

    @pytest.mark.asyncio
    async def test_zero_limit_rejected(self, fabric):
        """An explicit limit of 0 is not replaced by the default."""
        for i in range(6):
            await fabric.add_memory(f"m {i}")
        with pytest.raises(StorageError):
            await fabric.search("m 0", limit=0)

    @pytest.mark.asyncio
    async def test_limit_beyond_knn_maximum(self, fabric):
        await fabric.add_memory("only")
        results = await fabric.search("only", limit=5000)
        assert [r.content for r in results] == ["only"]


class TestAttribution:
    """Test tenant scoping of writes and reads."""

    @pytest.mark.asyncio
    async def test_search_only_sees_own_scope(self, fabric):
        fabric.attribution("alice", "chat")
        await fabric.add_memory("alice secret")
        fabric.attribution("bob", "chat")
        await fabric.add_memory("bob secret")

        results = await fabric.search("alice secret", limit=5)
        assert [r.content for r in results] == ["bob secret"]

        fabric.attribution("alice", "chat")
        results = await fabric.search("bob secret", limit=5)
        assert [r.content for r in results] == ["alice secret"]

    @pytest.mark.asyncio
    async def test_process_scope(self, fabric):
        await fabric.add_memory("from chat", attribution=Attribution("u1", "chat"))
        await fabric.add_memory("from agent", attribution=Attribution("u1", "agent"))

        results = await fabric.search("from chat", limit=5, attribution=Attribution("u1", "agent"))
        assert [r.content for r in results] == ["from agent"]

    @pytest.mark.asyncio
    async def test_unscoped_search_sees_everything(self, fabric):
        await fabric.add_memory("a", attribution=Attribution("u1", "p1"))
        await fabric.add_memory("b", attribution=Attribution("u2", "p2"))
        assert len(await fabric.search("a", limit=5)) == 2

    @pytest.mark.asyncio
    async def test_explicit_attribution_beats_default(self, fabric):
        fabric.attribution("default", "p")
        await fabric.add_memory("explicit", attribution=Attribution("other", "p"))

        result = (await fabric.search("explicit", limit=1, attribution=Attribution("other", "p")))[0]
        assert result.metadata["entity_id"] == "other"
        assert await fabric.search("explicit", limit=5) == []

    @pytest.mark.asyncio
    async def test_attribution_stored_in_metadata(self, fabric):
        fabric.attribution("u1", "p1", session_id="s1")
        await fabric.add_memory("scoped")
        result = (await fabric.search("scoped", limit=1))[0]
        assert result.metadata["entity_id"] == "u1"
        assert result.metadata["process_id"] == "p1"
        assert result.metadata["session_id"] == "s1"

    @pytest.mark.asyncio
    async def test_in_flight_write_keeps_starting_scope(self, fabric_config):
        """Changing the default scope mid-call does not move the record."""
        embedding = GatedEmbedding()
        fab = MemoryFabric(config=fabric_config, embedding=embedding)
        await fab.initialize()

        fab.attribution("alice", "chat")
        task = asyncio.create_task(fab.add_memory("alice note"))
        await embedding.started.wait()
        fab.attribution("bob", "chat")
        embedding.gate.set()
        await task

        results = await fab.search("alice note", limit=5, attribution=Attribution("alice", "chat"))
        assert [r.content for r in results] == ["alice note"]
        await fab.close()

    @pytest.mark.asyncio
    async def test_queue_memory_snapshots_scope(self, fabric):
        fabric.attribution("alice", "chat")
        fabric.queue_memory("queued for alice")
        fabric.attribution("bob", "chat")

        await fabric.wait()

        results = await fabric.search("queued for alice", limit=5, attribution=Attribution("alice", "chat"))
        assert [r.content for r in results] == ["queued for alice"]

    @pytest.mark.asyncio
    async def test_scoped_handle(self, fabric):
        alice = fabric.scoped(Attribution("alice", "chat"))
        bob = fabric.scoped(Attribution("bob", "chat"))
        assert isinstance(alice, ScopedFabric)

        await alice.add_memory("alice fact")
        await bob.add_memory("bob fact")
        bob.queue_memory("bob queued")
        await fabric.wait()

        assert [r.content for r in await alice.search("bob fact")] == ["alice fact"]
        assert len(await bob.search("bob fact")) == 2
        assert await alice.retrieve_context("alice fact") == "- alice fact (score: 0.0)"


class TestRetrieveContext:
    """Test prompt-context formatting and stats."""

    @pytest.mark.asyncio
    async def test_format_and_stats(self, fabric):
        await fabric.add_memory("c")

        context = await fabric.retrieve_context("c")

        assert context == "- c (score: 0.0)"
        run = fabric.stats.last_run
        assert run.context_chunks == 1
        assert run.used_query == "c"
        assert run.processing_time_ms >= 0
        assert run.timestamp

    @pytest.mark.asyncio
    async def test_lines_in_ranked_order(self, fabric):
        for text in ["alpha", "beta", "gamma"]:
            await fabric.add_memory(text)

        lines = (await fabric.retrieve_context("beta")).split("\n")

        assert len(lines) == 3
        assert lines[0] == "- beta (score: 0.0)"
        assert all(line.startswith("- ") for line in lines)

    @pytest.mark.asyncio
    async def test_top_k_respected(self, fabric_config, embedding):
        fabric_config.context_top_k = 2
        fab = MemoryFabric(config=fabric_config, embedding=embedding)
        for i in range(5):
            await fab.add_memory(f"m{i}")
        assert len((await fab.retrieve_context("m0")).split("\n")) == 2
        await fab.close()

    @pytest.mark.asyncio
    async def test_empty_store(self, fabric):
        assert await fabric.retrieve_context("anything") == ""
        assert fabric.stats.last_run.context_chunks == 0

    @pytest.mark.asyncio
    async def test_failure_degrades_to_empty(self, fabric, caplog):
        await fabric.add_memory("x")
        fabric.embedding.embed = AsyncMock(side_effect=RuntimeError("embedding service down"))

        with caplog.at_level(logging.ERROR):
            assert await fabric.retrieve_context("x") == ""

        assert fabric.stats.last_run.context_chunks == 0
        assert "Memory context retrieval failed" in caplog.text

    @pytest.mark.asyncio
    async def test_search_does_not_reason(self, fabric_config, embedding):
        fabric_config.clara = ClaraConfig(enable_reasoning=True)
        llm = _llm()
        fab = MemoryFabric(config=fabric_config, embedding=embedding, llm=llm)

        await fab.search("raw query")

        assert llm.calls == []
        assert embedding.calls == ["raw query"]
        await fab.close()


class TestClaraIntegration:
    """Test compression on write and reasoning on read through the fabric."""

    @pytest.mark.asyncio
    async def test_compression_success(self, fabric_config, embedding):
        fabric_config.clara = ClaraConfig(enable_compression=True)
        fab = MemoryFabric(config=fabric_config, embedding=embedding, llm=_llm())

        await fab.add_memory("This is a very long text that should be compressed")

        result = (await fab.search("COMPRESSED_CONTENT", limit=1))[0]
        assert result.content == "COMPRESSED_CONTENT"
        assert result.metadata["original_content"] == "This is a very long text that should be compressed"
        assert result.metadata["is_compressed"] is True
        assert "COMPRESSED_CONTENT" in embedding.calls
        await fab.close()

    @pytest.mark.asyncio
    async def test_compression_failure_stores_original(self, fabric_config, embedding):
        fabric_config.clara = ClaraConfig(enable_compression=True)

        async def failing(prompt):
            raise RuntimeError("LLM unavailable")

        fab = MemoryFabric(config=fabric_config, embedding=embedding, llm=failing)

        await fab.add_memory("Original text")

        result = (await fab.search("Original text", limit=1))[0]
        assert result.content == "Original text"
        assert "original_content" not in result.metadata
        assert "is_compressed" not in result.metadata
        await fab.close()

    @pytest.mark.asyncio
    async def test_compression_disabled_never_calls_llm(self, fabric_config, embedding):
        llm = _llm()
        fab = MemoryFabric(config=fabric_config, embedding=embedding, llm=llm)
        await fab.add_memory("plain")
        assert llm.calls == []
        await fab.close()

    @pytest.mark.asyncio
    async def test_reasoning_success(self, fabric_config, embedding):
        fabric_config.clara = ClaraConfig(enable_reasoning=True)
        fab = MemoryFabric(config=fabric_config, embedding=embedding, llm=_llm(reasoned="stored fact"))
        await fab.add_memory("stored fact")

        context = await fab.retrieve_context("what did I store?")

        assert context == "- stored fact (score: 0.0)"
        assert fab.stats.last_run.used_query == "stored fact"
        await fab.close()

    @pytest.mark.asyncio
    async def test_reasoning_failure_uses_original_query(self, fabric_config, embedding):
        fabric_config.clara = ClaraConfig(enable_reasoning=True)

        def failing(prompt):
            raise RuntimeError("timeout")

        fab = MemoryFabric(config=fabric_config, embedding=embedding, llm=failing)
        await fab.add_memory("what did I store?")

        context = await fab.retrieve_context("what did I store?")

        assert context == "- what did I store? (score: 0.0)"
        assert fab.stats.last_run.used_query == "what did I store?"
        await fab.close()


class TestBackgroundWrites:
    """Test queue_memory / wait / close draining."""

    @pytest.mark.asyncio
    async def test_queue_then_wait(self, fabric):
        for i in range(3):
            fabric.queue_memory(f"queued {i}")
        await fabric.wait()
        assert fabric.pending_writes == 0
        assert await fabric.count() == 3

    @pytest.mark.asyncio
    async def test_queue_failure_does_not_raise(self, fabric, caplog):
        fabric.embedding.embed = AsyncMock(side_effect=RuntimeError("boom"))
        with caplog.at_level(logging.ERROR):
            fabric.queue_memory("doomed")
            await fabric.wait()
            await asyncio.sleep(0)
        assert "Background memory write failed" in caplog.text

    @pytest.mark.asyncio
    async def test_close_drains_pending_writes(self, fabric_config, embedding):
        fab = MemoryFabric(config=fabric_config, embedding=embedding)
        await fab.initialize()
        for i in range(4):
            fab.queue_memory(f"write {i}")

        await fab.close()

        reopened = SqliteVecStore(fabric_config.db_path, dimension=TEST_DIM)
        await reopened.initialize()
        assert await reopened.count() == 4
        await reopened.close()


class TestLifecycle:
    """Test initialize / close state handling."""

    @pytest.mark.asyncio
    async def test_states(self, fabric_config, embedding):
        fab = MemoryFabric(config=fabric_config, embedding=embedding)
        assert fab.state == FabricState.UNINITIALIZED
        await fab.initialize()
        await fab.initialize()
        assert fab.state == FabricState.READY
        await fab.close()
        await fab.close()
        assert fab.state == FabricState.CLOSED
        assert fab.closed

    @pytest.mark.asyncio
    async def test_auto_initialize_warns(self, fabric_config, embedding, caplog):
        fab = MemoryFabric(config=fabric_config, embedding=embedding)

        with caplog.at_level(logging.WARNING):
            await fab.add_memory("first")

        assert fab.state == FabricState.READY
        assert "auto-initializing" in caplog.text
        await fab.close()

    @pytest.mark.asyncio
    async def test_calls_after_close_raise(self, fabric):
        await fabric.close()

        with pytest.raises(StoreClosedError):
            await fabric.add_memory("x")
        with pytest.raises(StoreClosedError):
            await fabric.search("x")
        with pytest.raises(StoreClosedError):
            await fabric.retrieve_context("x")
        with pytest.raises(StoreClosedError):
            fabric.queue_memory("x")
        with pytest.raises(StoreClosedError):
            await fabric.initialize()


class TestEmbeddingFailures:
    """Embedding errors surface on the direct paths."""

    @pytest.mark.asyncio
    async def test_non_list_vector_rejected(self, fabric):
        fabric.embedding.embed = AsyncMock(return_value="not a vector")
        with pytest.raises(EmbeddingError):
            await fabric.add_memory("x")

    @pytest.mark.asyncio
    async def test_provider_exception_wrapped(self, fabric):
        fabric.embedding.embed = AsyncMock(side_effect=ValueError("bad input"))
        with pytest.raises(EmbeddingError):
            await fabric.search("x")

    @pytest.mark.asyncio
    async def test_wrong_length_vector(self, fabric):
        fabric.embedding.embed = AsyncMock(return_value=[0.1] * (TEST_DIM + 3))
        with pytest.raises(DimensionMismatchError):
            await fabric.add_memory("x")

    @pytest.mark.asyncio
    async def test_tolist_vectors_accepted(self, fabric):
        vector = MagicMock()
        vector.tolist.return_value = [0.5] * TEST_DIM
        fabric.embedding.embed = AsyncMock(return_value=vector)
        memory_id = await fabric.add_memory("array-backed")
        assert memory_id


class TestConstruction:
    """Test store selection and dimension resolution."""

    def test_default_is_sqlite(self, fabric_config, embedding):
        fab = MemoryFabric(config=fabric_config, embedding=embedding)
        assert isinstance(fab.store, SqliteVecStore)
        assert fab.store.dimension == TEST_DIM

    def test_dimension_from_embedding_provider(self, tmp_path):
        fab = MemoryFabric(config=FabricConfig(db_path=str(tmp_path / "x.db")), embedding=HashEmbedding(dimension=16))
        assert fab.store.dimension == 16

    def test_injected_store_used(self, fabric_config, embedding):
        store = MagicMock()
        fab = MemoryFabric(config=fabric_config, embedding=embedding, store=store)
        assert fab.store is store

    def test_create_store_chroma(self, tmp_path):
        config = FabricConfig(store_backend="chroma", chroma_path=str(tmp_path / "chroma"))
        store = create_store(config, 8)
        assert isinstance(store, ChromaDBAdapter)
        assert store.dimension == 8

    def test_create_store_postgres(self):
        config = FabricConfig(store_backend="postgres", postgres_url="postgresql://u@localhost/db")
        store = create_store(config, 8)
        assert isinstance(store, PostgresVecStore)
        assert store.dimension == 8

    def test_embedding_is_an_embedding_provider(self, embedding):
        assert isinstance(embedding, EmbeddingProvider)

    @pytest.mark.asyncio
    async def test_local_model_override_sizes_store(self, tmp_path):
        """The store takes the dimension of the configured local model."""
        with patch("memfabric.backend.modules.memory.embedding_service.SentenceTransformer") as mock_cls:
            model = mock_cls.return_value
            model.get_sentence_embedding_dimension.return_value = 768
            model.encode.return_value = MagicMock(tolist=lambda: [0.1] * 768)

            fab = MemoryFabric(config=FabricConfig(
                db_path=str(tmp_path / "mpnet.db"), embedding_model="all-mpnet-base-v2"
            ))
            assert fab.store.dimension == 768

            await fab.add_memory("hello")
            results = await fab.search("hello", limit=1)
            assert [r.content for r in results] == ["hello"]
            await fab.close()
