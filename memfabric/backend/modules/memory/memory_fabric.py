"""
MemoryFabric - Facade coordinating the memory services

Wires together:
- a VectorStore (SQLite + sqlite-vec, Postgres + pgvector, or ChromaDB)
- an EmbeddingProvider
- the CLaRa pipeline (optional compression on write, reasoning on read)
- the background write queue

Lifecycle: UNINITIALIZED -> READY -> CLOSED. Calls made before initialize()
auto-initialize once; every call after close() raises StoreClosedError.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, List, Optional

from .background_queue import BackgroundQueue
from .clara_service import ClaraPipeline
from .config import FabricConfig, StoreBackend
from .embedding_service import EmbeddingProvider, create_embedding_provider
from .errors import EmbeddingError, StoreClosedError, describe
from .memory_types import (
    ROLE_KEY,
    UNSCOPED,
    Attribution,
    CompressionResult,
    ExecutionStats,
    MemoryResult,
    format_context,
)
from .sqlite_vec_store import SqliteVecStore
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


class FabricState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


def create_store(config: FabricConfig, dimension: int) -> VectorStore:
    """Build the store named by config.store_backend."""
    backend = config.store_backend
    if backend == StoreBackend.POSTGRES:
        from .postgres_store import PostgresVecStore
        return PostgresVecStore(config.postgres_url, table_name=config.table_name, dimension=dimension)
    if backend == StoreBackend.CHROMA:
        from .chromadb_adapter import ChromaDBAdapter
        return ChromaDBAdapter(
            persistence_directory=config.chroma_path,
            collection_name=config.collection_name,
            dimension=dimension,
            use_server=config.chroma_use_server,
            host=config.chroma_host,
            port=config.chroma_port,
        )
    return SqliteVecStore(config.db_path, dimension=dimension)


class MemoryFabric:
    """
    Long-term memory layer for LLM applications.

    Stores snippets as vectors, retrieves the most relevant ones for a
    query, and scopes both by an Attribution (entity / process / session).
    """

    def __init__(
        self,
        config: Optional[FabricConfig] = None,
        store: Optional[VectorStore] = None,
        embedding: Optional[EmbeddingProvider] = None,
        llm: Any = None,
        compressor: Any = None,
        reasoner: Any = None,
    ):
        """
        Args:
            config: Fabric settings (FabricConfig() defaults if None)
            store: Pre-built vector store; built from config if None
            embedding: Embedding provider; built from config if None
            llm: Generation provider (or plain callable) shared by both CLaRa stages
            compressor: Dedicated provider for compression
            reasoner: Dedicated provider for query reasoning
        """
        self.config = config or FabricConfig()
        self.embedding = embedding or create_embedding_provider(self.config)

        if store is None:
            store = create_store(self.config, self._store_dimension())
        self.store = store

        self.clara = ClaraPipeline(self.config.clara, llm=llm, compressor=compressor, reasoner=reasoner)
        self.stats = ExecutionStats()

        self._attribution = UNSCOPED
        self._queue = BackgroundQueue()
        self._state = FabricState.UNINITIALIZED
        self._init_lock = asyncio.Lock()

    def _store_dimension(self) -> int:
        if self.config.embedding_dimension is not None:
            return self.config.embedding_dimension
        dimension = getattr(self.embedding, "dimension", None)
        if isinstance(dimension, int) and dimension > 0:
            return dimension
        return self.config.resolved_dimension

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> FabricState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state == FabricState.CLOSED

    async def initialize(self):
        """Build the storage schema. Safe to call more than once."""
        self._check_open()
        async with self._init_lock:
            if self._state == FabricState.READY:
                return
            await self.store.initialize()
            self._state = FabricState.READY
            logger.info(f"MemoryFabric ready ({type(self.store).__name__})")

    async def _ensure_initialized(self):
        self._check_open()
        if self._state != FabricState.READY:
            logger.warning("MemoryFabric auto-initializing storage (explicit .initialize() was not called).")
            await self.initialize()

    def _check_open(self):
        if self._state == FabricState.CLOSED:
            raise StoreClosedError("MemoryFabric is closed")

    async def close(self):
        """
        Stop accepting background writes, drain every pending write
        (including ones scheduled during the drain), then close the store.
        """
        if self._state == FabricState.CLOSED:
            return
        self._queue.close()
        await self._queue.drain()
        self._state = FabricState.CLOSED
        await self.store.close()
        logger.info("MemoryFabric closed")

    # ------------------------------------------------------------------
    # Attribution
    # ------------------------------------------------------------------

    def attribution(self, entity_id: Optional[str], process_id: Optional[str], session_id: Optional[str] = None):
        """
        Set the default scope for later calls on this instance.

        Calls already in flight keep the scope they started with.
        """
        self._attribution = Attribution(entity_id=entity_id, process_id=process_id, session_id=session_id)

    @property
    def current_attribution(self) -> Attribution:
        return self._attribution

    def _resolve(self, attribution: Optional[Attribution]) -> Attribution:
        # Explicit argument wins; otherwise snapshot the default now
        return attribution if attribution is not None else self._attribution

    def scoped(self, attribution: Attribution) -> "ScopedFabric":
        """Handle that always passes `attribution` explicitly."""
        return ScopedFabric(self, attribution)

    # ------------------------------------------------------------------
    # Memory operations
    # ------------------------------------------------------------------

    async def _embed(self, text: str) -> List[float]:
        try:
            vector = await self.embedding.embed(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding provider failed: {describe(e)}", e) from e
        if hasattr(vector, "tolist"):
            vector = vector.tolist()
        if not isinstance(vector, (list, tuple)):
            raise EmbeddingError(f"Embedding provider returned {type(vector).__name__}, expected a list of floats")
        return list(vector)

    async def add_memory(self, content: str, role: str = "user", attribution: Optional[Attribution] = None) -> str:
        """
        Store a snippet and return its id.

        With compression enabled the stored content is the compressed text and
        the raw text is kept under metadata["original_content"].
        """
        scope = self._resolve(attribution)
        await self._ensure_initialized()

        if self.clara.compression_enabled:
            compressed = await self.clara.compress(content)
        else:
            compressed = CompressionResult(content=content)

        metadata = {ROLE_KEY: role, **scope.to_metadata(), **compressed.metadata}
        vector = await self._embed(compressed.content)
        memory_id = await self.store.insert(compressed.content, vector, metadata)
        logger.debug(f"Stored memory {memory_id} (role={role}, compressed={compressed.is_compressed})")
        return memory_id

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        attribution: Optional[Attribution] = None
    ) -> List[MemoryResult]:
        """Nearest memories to the raw query within the attribution scope."""
        scope = self._resolve(attribution)
        await self._ensure_initialized()
        vector = await self._embed(query)
        if limit is None:
            limit = self.config.default_search_limit
        return await self.store.search(vector, limit, scope.to_filter())

    async def retrieve_context(self, query: str, attribution: Optional[Attribution] = None) -> str:
        """
        Context block for prompt injection, one "- <content> (score: <distance>)"
        line per memory. Returns "" when nothing matches or retrieval fails.
        """
        scope = self._resolve(attribution)
        self._check_open()

        start = time.perf_counter()
        used_query = query
        context = ""
        chunks = 0

        try:
            if self.clara.reasoning_enabled:
                used_query = await self.clara.reason(query)
            results = await self.search(used_query, self.config.context_top_k, scope)
            chunks = len(results)
            context = format_context(results)
        except Exception as e:
            # Context is best-effort; the caller's chat must not fail
            logger.error(f"Memory context retrieval failed: {describe(e)}", exc_info=True)
            context = ""
            chunks = 0

        self.stats.record(
            context_chunks=chunks,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            used_query=used_query,
        )
        return context

    async def delete_memory(self, memory_id: str):
        await self._ensure_initialized()
        await self.store.delete(memory_id)

    async def count(self) -> int:
        await self._ensure_initialized()
        return await self.store.count()

    # ------------------------------------------------------------------
    # Background writes
    # ------------------------------------------------------------------

    def queue_memory(
        self,
        content: str,
        role: str = "user",
        attribution: Optional[Attribution] = None
    ) -> asyncio.Task:
        """
        Schedule add_memory without waiting for it. Failures are logged.

        Raises StoreClosedError once close() has begun.
        """
        self._check_open()
        scope = self._resolve(attribution)
        return self._queue.submit(self.add_memory(content, role, scope))

    @property
    def pending_writes(self) -> int:
        return self._queue.pending

    async def wait(self):
        """Wait for the background writes pending at the moment of the call."""
        await self._queue.wait()


class ScopedFabric:
    """A MemoryFabric bound to one Attribution."""

    def __init__(self, fabric: MemoryFabric, attribution: Attribution):
        self.fabric = fabric
        self.attribution = attribution

    async def add_memory(self, content: str, role: str = "user") -> str:
        return await self.fabric.add_memory(content, role, self.attribution)

    async def search(self, query: str, limit: Optional[int] = None) -> List[MemoryResult]:
        return await self.fabric.search(query, limit, self.attribution)

    async def retrieve_context(self, query: str) -> str:
        return await self.fabric.retrieve_context(query, self.attribution)

    def queue_memory(self, content: str, role: str = "user") -> asyncio.Task:
        return self.fabric.queue_memory(content, role, self.attribution)
