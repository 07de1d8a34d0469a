"""
Memory Fabric Configuration

Centralizes all settings for the fabric in typed dataclasses that are
validated once, at construction. Environment overrides are read by
FabricConfig.from_env() using the MEMFABRIC_* variables.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from .errors import ConfigurationError


class StoreBackend(str, Enum):
    """Vector store implementation to use."""
    SQLITE = "sqlite"
    POSTGRES = "postgres"
    CHROMA = "chroma"


class EmbeddingProviderName(str, Enum):
    """Embedding collaborator to use. Always explicit, never guessed from a key."""
    LOCAL = "local"
    OPENAI = "openai"
    GOOGLE = "google"


# Output dimension of each provider's default model
DEFAULT_EMBEDDING_DIMENSIONS = {
    EmbeddingProviderName.LOCAL: 384,
    EmbeddingProviderName.OPENAI: 1536,
    EmbeddingProviderName.GOOGLE: 768,
}

DEFAULT_DB_PATH = "memfabric.db"
DEFAULT_TABLE_NAME = "memories"
DEFAULT_COLLECTION_NAME = "memfabric_memories"

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TRUE_VALUES = ("1", "true", "yes", "on")


def _coerce_enum(enum_cls, value, setting: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"Invalid {setting} '{value}'. Expected one of: {allowed}")


@dataclass
class ClaraConfig:
    """
    Settings for the CLaRa optimization pipeline.

    Both stages are off by default; each can be enabled independently.
    """

    enable_compression: bool = False
    """Compress content with the generation collaborator before indexing"""

    enable_reasoning: bool = False
    """Rewrite queries into richer search keys in retrieve_context"""

    compressor_prompt: Optional[str] = None
    """Instruction placed before the text to compress (default instruction if None)"""

    reasoning_prompt: Optional[str] = None
    """Template for query reasoning; must contain '{query}' (default template if None)"""

    def __post_init__(self):
        if self.reasoning_prompt is not None and "{query}" not in self.reasoning_prompt:
            raise ConfigurationError("reasoning_prompt must contain a '{query}' placeholder")
        if self.compressor_prompt is not None and not self.compressor_prompt.strip():
            raise ConfigurationError("compressor_prompt must not be empty")

    @property
    def enabled(self) -> bool:
        return self.enable_compression or self.enable_reasoning


@dataclass
class FabricConfig:
    """
    Configuration for the memory fabric.

    All values have production defaults. Can be overridden for testing or
    different deployment scenarios.
    """

    # Storage
    store_backend: Union[StoreBackend, str] = StoreBackend.SQLITE
    """Which vector store to build when none is injected"""

    db_path: str = DEFAULT_DB_PATH
    """SQLite database file (':memory:' for an ephemeral store)"""

    postgres_url: Optional[str] = None
    """SQLAlchemy connection string for the Postgres backend"""

    table_name: str = DEFAULT_TABLE_NAME
    """Postgres table holding the memories"""

    chroma_path: str = "./chromadb"
    """Persistence directory for embedded ChromaDB"""

    chroma_use_server: bool = False
    """Connect to a ChromaDB server instead of the embedded client"""

    chroma_host: str = "localhost"
    chroma_port: int = 8000

    collection_name: str = DEFAULT_COLLECTION_NAME
    """ChromaDB collection holding the memories"""

    # Embeddings
    embedding_provider: Union[EmbeddingProviderName, str] = EmbeddingProviderName.LOCAL
    """Which embedding collaborator to build when none is injected"""

    embedding_model: Optional[str] = None
    """Model name override (provider default if None)"""

    embedding_dimension: Optional[int] = None
    """Vector dimension; defaults to the provider's model dimension"""

    api_key: Optional[str] = None
    """API key for remote embedding providers"""

    embedding_base_url: Optional[str] = None
    """Base URL for OpenAI-compatible embedding endpoints"""

    # Retrieval
    context_top_k: int = 5
    """Number of memories injected by retrieve_context"""

    default_search_limit: int = 5
    """Default limit for search()"""

    clara: ClaraConfig = field(default_factory=ClaraConfig)
    """CLaRa optimization pipeline settings"""

    def __post_init__(self):
        self.store_backend = _coerce_enum(StoreBackend, self.store_backend, "store_backend")
        self.embedding_provider = _coerce_enum(
            EmbeddingProviderName, self.embedding_provider, "embedding_provider"
        )

        if self.store_backend == StoreBackend.POSTGRES and not self.postgres_url:
            raise ConfigurationError("Postgres connection string is required for the postgres backend")
        if not IDENTIFIER_RE.match(self.table_name):
            raise ConfigurationError(f"Invalid table name '{self.table_name}'")
        if self.embedding_dimension is not None and self.embedding_dimension <= 0:
            raise ConfigurationError("embedding_dimension must be positive")
        if self.context_top_k <= 0 or self.default_search_limit <= 0:
            raise ConfigurationError("context_top_k and default_search_limit must be positive")
        if self.embedding_provider != EmbeddingProviderName.LOCAL and not self.api_key:
            raise ConfigurationError(
                f"An API key is required for the '{self.embedding_provider.value}' embedding provider. "
                "Set MEMFABRIC_API_KEY or pass an embedding provider explicitly."
            )

    @property
    def resolved_dimension(self) -> int:
        """Dimension used to build the store."""
        if self.embedding_dimension is not None:
            return self.embedding_dimension
        return DEFAULT_EMBEDDING_DIMENSIONS[self.embedding_provider]

    @classmethod
    def from_env(cls, **overrides) -> "FabricConfig":
        """
        Build a config from MEMFABRIC_* environment variables.

        Keyword arguments take precedence over the environment.
        """
        env = os.environ
        values = {}

        if env.get("MEMFABRIC_STORE"):
            values["store_backend"] = env["MEMFABRIC_STORE"]
        if env.get("MEMFABRIC_DB_PATH"):
            values["db_path"] = env["MEMFABRIC_DB_PATH"]
        if env.get("MEMFABRIC_POSTGRES_URL"):
            values["postgres_url"] = env["MEMFABRIC_POSTGRES_URL"]
        if env.get("MEMFABRIC_TABLE"):
            values["table_name"] = env["MEMFABRIC_TABLE"]
        if env.get("MEMFABRIC_CHROMA_PATH"):
            values["chroma_path"] = env["MEMFABRIC_CHROMA_PATH"]
        if env.get("MEMFABRIC_CHROMA_SERVER"):
            values["chroma_use_server"] = env["MEMFABRIC_CHROMA_SERVER"].lower() in _TRUE_VALUES
        if env.get("MEMFABRIC_EMBEDDING_PROVIDER"):
            values["embedding_provider"] = env["MEMFABRIC_EMBEDDING_PROVIDER"]
        if env.get("MEMFABRIC_EMBEDDING_MODEL"):
            values["embedding_model"] = env["MEMFABRIC_EMBEDDING_MODEL"]
        if env.get("MEMFABRIC_API_KEY"):
            values["api_key"] = env["MEMFABRIC_API_KEY"]
        if env.get("MEMFABRIC_EMBEDDING_BASE_URL"):
            values["embedding_base_url"] = env["MEMFABRIC_EMBEDDING_BASE_URL"]

        if env.get("MEMFABRIC_EMBEDDING_DIM"):
            try:
                values["embedding_dimension"] = int(env["MEMFABRIC_EMBEDDING_DIM"])
            except ValueError:
                raise ConfigurationError(
                    f"MEMFABRIC_EMBEDDING_DIM must be an integer, got '{env['MEMFABRIC_EMBEDDING_DIM']}'"
                )

        clara = ClaraConfig(
            enable_compression=env.get("MEMFABRIC_CLARA_COMPRESS", "").lower() in _TRUE_VALUES,
            enable_reasoning=env.get("MEMFABRIC_CLARA_REASON", "").lower() in _TRUE_VALUES,
        )
        values["clara"] = clara

        values.update(overrides)
        return cls(**values)


# Default configuration instance
DEFAULT_CONFIG = FabricConfig()
