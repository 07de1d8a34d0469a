"""
Memory Fabric - Core memory storage and retrieval

Provides:
- MemoryFabric: Main orchestrator (ScopedFabric for per-tenant handles)
- Vector stores: SqliteVecStore, PostgresVecStore, ChromaDBAdapter
- Embedding providers: local sentence-transformers, OpenAI, Google
- ClaraPipeline: compress on write, reason on read
"""

from .config import ClaraConfig, EmbeddingProviderName, FabricConfig, StoreBackend
from .errors import (
    ConfigurationError,
    DimensionMismatchError,
    EmbeddingError,
    GenerationError,
    MemoryFabricError,
    StorageError,
    StoreClosedError,
)
from .memory_types import (
    Attribution,
    CompressionResult,
    ExecutionStats,
    MemoryFilter,
    MemoryResult,
    RunStats,
)
from .vector_store import VectorStore
from .sqlite_vec_store import SqliteVecStore
from .postgres_store import PostgresVecStore
from .chromadb_adapter import ChromaDBAdapter
from .embedding_service import (
    EmbeddingProvider,
    GoogleEmbedding,
    OpenAIEmbedding,
    SentenceTransformerEmbedding,
    create_embedding_provider,
)
from .clara_service import ClaraPipeline
from .background_queue import BackgroundQueue
from .memory_fabric import FabricState, MemoryFabric, ScopedFabric, create_store

__all__ = [
    # Main system
    "MemoryFabric",
    "ScopedFabric",
    "FabricState",
    # Types and config
    "FabricConfig",
    "ClaraConfig",
    "StoreBackend",
    "EmbeddingProviderName",
    "Attribution",
    "MemoryFilter",
    "MemoryResult",
    "CompressionResult",
    "ExecutionStats",
    "RunStats",
    # Errors
    "MemoryFabricError",
    "ConfigurationError",
    "StorageError",
    "DimensionMismatchError",
    "StoreClosedError",
    "EmbeddingError",
    "GenerationError",
    # Stores
    "VectorStore",
    "SqliteVecStore",
    "PostgresVecStore",
    "ChromaDBAdapter",
    "create_store",
    # Services
    "EmbeddingProvider",
    "SentenceTransformerEmbedding",
    "OpenAIEmbedding",
    "GoogleEmbedding",
    "create_embedding_provider",
    "ClaraPipeline",
    "BackgroundQueue",
]
