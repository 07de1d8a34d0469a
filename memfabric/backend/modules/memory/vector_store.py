"""
Vector Record Store contract

Every backend (SQLite + sqlite-vec, Postgres + pgvector, ChromaDB) implements
VectorStore with identical semantics:

- initialize() is idempotent and must complete before any other call
- insert() commits content, metadata and vector together or not at all
- search() filters first (exact match, AND-combined), then ranks by
  ascending distance, ties broken deterministically
- delete() removes the record and its vector together
- close() is terminal
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from .errors import DimensionMismatchError, StorageError, StoreClosedError
from .memory_types import MemoryFilter, MemoryResult

logger = logging.getLogger(__name__)


class VectorStore(ABC):
    """Abstract base for vector record stores."""

    def __init__(self, dimension: int):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension
        self.initialized = False
        self.closed = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create schema and indexes if absent. Safe to call more than once."""
        self._check_open()
        async with self._init_lock:
            if self.initialized:
                return
            await self._initialize()
            self.initialized = True
            logger.info(f"{type(self).__name__} ready (dimension={self.dimension})")

    async def close(self) -> None:
        """Release underlying resources. Further calls raise StoreClosedError."""
        if self.closed:
            return
        self.closed = True
        await self._close()
        logger.info(f"{type(self).__name__} closed")

    @abstractmethod
    async def _initialize(self) -> None:
        ...

    @abstractmethod
    async def _close(self) -> None:
        ...

    @abstractmethod
    async def insert(
        self,
        content: str,
        vector: Sequence[float],
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """Store a record and return its new id."""

    @abstractmethod
    async def search(
        self,
        vector: Sequence[float],
        limit: int = 5,
        filter: Optional[MemoryFilter] = None
    ) -> List[MemoryResult]:
        """Return at most `limit` records ordered by ascending distance."""

    @abstractmethod
    async def delete(self, record_id: str) -> None:
        """Remove a record and its vector."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored records."""

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------

    def _check_open(self):
        if self.closed:
            raise StoreClosedError(f"{type(self).__name__} is closed")

    def _check_ready(self):
        self._check_open()
        if not self.initialized:
            raise StorageError(f"{type(self).__name__} used before initialize()")

    def _check_vector(self, vector: Sequence[float]) -> List[float]:
        """Validate length and coerce to a list of floats."""
        if vector is None or len(vector) != self.dimension:
            raise DimensionMismatchError(self.dimension, 0 if vector is None else len(vector))
        try:
            return [float(v) for v in vector]
        except (TypeError, ValueError) as e:
            raise StorageError("Vector contains non-numeric values", e) from e

    @staticmethod
    def _check_limit(limit: int) -> int:
        if limit is None or limit <= 0:
            raise StorageError(f"Search limit must be positive, got {limit}")
        return int(limit)
