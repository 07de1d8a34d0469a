"""
Pytest configuration for memory module tests.

Sets up import paths for memfabric and provides shared fixtures:
- HashEmbedding: deterministic, offline embedding provider
- sqlite_store: initialized SqliteVecStore on a temporary file
- fabric: MemoryFabric over a temporary SQLite store
"""

import sys
import os
import hashlib

import pytest

# Add memfabric root to path
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', '..', '..', '..'))
sys.path.insert(0, PROJECT_ROOT)

from memfabric.backend.modules.memory.config import FabricConfig
from memfabric.backend.modules.memory.embedding_service import EmbeddingProvider
from memfabric.backend.modules.memory.memory_fabric import MemoryFabric
from memfabric.backend.modules.memory.sqlite_vec_store import SqliteVecStore

TEST_DIM = 8


class HashEmbedding(EmbeddingProvider):
    """Same text -> same vector; different texts -> (practically) different vectors."""

    def __init__(self, dimension: int = TEST_DIM):
        self._dimension = dimension
        self.calls = []

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str):
        self.calls.append(text)
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255.0 for b in digest[:self._dimension]]


def unit_vector(index: int, dimension: int = TEST_DIM, scale: float = 1.0):
    """Vector with `scale` at `index` and zeros elsewhere."""
    vec = [0.0] * dimension
    vec[index] = scale
    return vec


@pytest.fixture
def embedding():
    return HashEmbedding()


@pytest.fixture
async def sqlite_store(tmp_path):
    store = SqliteVecStore(str(tmp_path / "memories.db"), dimension=TEST_DIM)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def fabric_config(tmp_path):
    return FabricConfig(db_path=str(tmp_path / "fabric.db"), embedding_dimension=TEST_DIM)


@pytest.fixture
async def fabric(fabric_config, embedding):
    fab = MemoryFabric(config=fabric_config, embedding=embedding)
    await fab.initialize()
    yield fab
    await fab.close()
