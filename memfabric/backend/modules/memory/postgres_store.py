"""
Postgres Vector Store

Networked vector store on PostgreSQL with the pgvector extension, accessed
through SQLAlchemy.

One table holds content, a JSONB metadata document, the embedding, and
explicit indexed attribution columns so filters are pushed down to SQL.
An HNSW index (cosine) serves the nearest-neighbor ordering.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import DEFAULT_TABLE_NAME, IDENTIFIER_RE
from .errors import ConfigurationError, StorageError
from .memory_types import (
    COLUMN_KEYS,
    CREATED_AT_KEY,
    ENTITY_ID_KEY,
    PROCESS_ID_KEY,
    SESSION_ID_KEY,
    MemoryFilter,
    MemoryResult,
)
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


def normalize_postgres_url(url: str) -> str:
    """Point bare postgres:// URLs at the psycopg (v3) driver."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def to_pgvector(vector: Sequence[float]) -> str:
    """pgvector text literal, e.g. '[0.1, 0.2]'."""
    return str([float(v) for v in vector])


class PostgresVecStore(VectorStore):
    """
    VectorStore backed by PostgreSQL + pgvector.

    Distances are pgvector cosine distances (`<=>`).
    """

    def __init__(
        self,
        connection_string: str,
        table_name: str = DEFAULT_TABLE_NAME,
        dimension: int = 384,
        engine: Optional[Engine] = None,
    ):
        """
        Args:
            connection_string: SQLAlchemy/libpq URL of the database
            table_name: Table holding the memories (plain identifier)
            dimension: Length of every stored vector
            engine: Pre-built engine (tests, shared pools)
        """
        if not connection_string and engine is None:
            raise ConfigurationError("Postgres connection string is required.")
        if not IDENTIFIER_RE.match(table_name):
            raise ConfigurationError(f"Invalid table name '{table_name}'")
        super().__init__(dimension)
        self.table_name = table_name
        self.engine = engine or create_engine(
            normalize_postgres_url(connection_string),
            pool_pre_ping=True,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _initialize(self) -> None:
        try:
            await asyncio.to_thread(self._initialize_sync)
        except Exception as e:
            raise StorageError("Failed to initialize PostgresVecStore", e) from e

    def _initialize_sync(self):
        t = self.table_name
        with self.engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.execute(text(f"""
                CREATE TABLE IF NOT EXISTS {t} (
                    id SERIAL PRIMARY KEY,
                    content TEXT,
                    metadata JSONB,
                    embedding vector({self.dimension}),
                    entity_id TEXT,
                    process_id TEXT,
                    session_id TEXT,
                    created_at TIMESTAMPTZ DEFAULT now()
                )
            """))
            for col in ("entity_id", "process_id", "session_id"):
                conn.execute(text(f"CREATE INDEX IF NOT EXISTS {t}_{col}_idx ON {t} ({col})"))
            conn.execute(text(f"""
                CREATE INDEX IF NOT EXISTS {t}_embedding_idx
                ON {t}
                USING hnsw (embedding vector_cosine_ops)
            """))

    async def _close(self) -> None:
        try:
            await asyncio.to_thread(self.engine.dispose)
        except Exception as e:
            raise StorageError("Failed to close PostgresVecStore", e) from e

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def insert(
        self,
        content: str,
        vector: Sequence[float],
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        self._check_ready()
        values = self._check_vector(vector)
        metadata = dict(metadata or {})
        params = {
            "content": content,
            "metadata": json.dumps({k: v for k, v in metadata.items() if v is not None}),
            "embedding": to_pgvector(values),
            "entity_id": metadata.get(ENTITY_ID_KEY),
            "process_id": metadata.get(PROCESS_ID_KEY),
            "session_id": metadata.get(SESSION_ID_KEY),
            "created_at": metadata.get(CREATED_AT_KEY),
        }
        try:
            return await asyncio.to_thread(self._insert_sync, params)
        except Exception as e:
            raise StorageError("Failed to insert memory into Postgres", e) from e

    def _insert_sync(self, params: Dict[str, Any]) -> str:
        sql = text(f"""
            INSERT INTO {self.table_name}
                (content, metadata, embedding, entity_id, process_id, session_id, created_at)
            VALUES (
                :content,
                CAST(:metadata AS jsonb),
                CAST(:embedding AS vector),
                :entity_id,
                :process_id,
                :session_id,
                COALESCE(CAST(:created_at AS timestamptz), now())
            )
            RETURNING id
        """)
        with self.engine.begin() as conn:
            new_id = conn.execute(sql, params).scalar_one()
        return str(new_id)

    async def search(
        self,
        vector: Sequence[float],
        limit: int = 5,
        filter: Optional[MemoryFilter] = None
    ) -> List[MemoryResult]:
        self._check_ready()
        values = self._check_vector(vector)
        limit = self._check_limit(limit)
        constraints = (filter or MemoryFilter()).as_dict()
        try:
            return await asyncio.to_thread(self._search_sync, values, limit, constraints)
        except Exception as e:
            raise StorageError("Failed to search memories in Postgres", e) from e

    def _search_sync(self, vector: List[float], limit: int, constraints: Dict[str, str]) -> List[MemoryResult]:
        if constraints:
            where = " AND ".join(f"{col} = :{col}" for col in constraints)
            # HNSW applies WHERE after its candidate scan, which can starve a
            # tenant. The materialized CTE narrows by the btree indexes first,
            # then ranks the tenant's rows exactly.
            sql = text(f"""
                WITH scoped AS MATERIALIZED (
                    SELECT id, content, metadata, entity_id, process_id, session_id, created_at, embedding
                    FROM {self.table_name}
                    WHERE {where}
                )
                SELECT
                    id, content, metadata, entity_id, process_id, session_id, created_at,
                    embedding <=> CAST(:embedding AS vector) AS distance
                FROM scoped
                ORDER BY distance ASC, id ASC
                LIMIT :limit
            """)
        else:
            # Inner ORDER BY lets the HNSW index pick candidates; outer ORDER BY breaks ties by id
            sql = text(f"""
                SELECT * FROM (
                    SELECT
                        id, content, metadata, entity_id, process_id, session_id, created_at,
                        embedding <=> CAST(:embedding AS vector) AS distance
                    FROM {self.table_name}
                    ORDER BY embedding <=> CAST(:embedding AS vector)
                    LIMIT :limit
                ) AS candidates
                ORDER BY distance ASC, id ASC
            """)
        params = {"embedding": to_pgvector(vector), "limit": limit, **constraints}
        with self.engine.begin() as conn:
            rows = conn.execute(sql, params).mappings().all()
        return [self._row_to_result(row) for row in rows]

    @staticmethod
    def _row_to_result(row) -> MemoryResult:
        raw = row["metadata"] or {}
        if isinstance(raw, str):
            raw = json.loads(raw)
        metadata = dict(raw)
        for key in COLUMN_KEYS:
            value = row.get(key)
            if value is None:
                continue
            metadata[key] = value.isoformat() if hasattr(value, "isoformat") else value
        return MemoryResult(
            id=str(row["id"]),
            content=row["content"],
            metadata=metadata,
            distance=float(row["distance"]),
        )

    async def delete(self, record_id: str) -> None:
        self._check_ready()
        try:
            rowid = int(record_id)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Invalid memory id '{record_id}'", e) from e
        try:
            await asyncio.to_thread(self._execute, f"DELETE FROM {self.table_name} WHERE id = :id", {"id": rowid})
        except Exception as e:
            raise StorageError(f"Failed to delete memory {record_id}", e) from e

    async def count(self) -> int:
        self._check_ready()
        try:
            return await asyncio.to_thread(self._count_sync)
        except Exception as e:
            raise StorageError("Failed to count memories in Postgres", e) from e

    def _count_sync(self) -> int:
        with self.engine.begin() as conn:
            return int(conn.execute(text(f"SELECT COUNT(*) FROM {self.table_name}")).scalar_one())

    def _execute(self, sql: str, params: Dict[str, Any]):
        with self.engine.begin() as conn:
            conn.execute(text(sql), params)
