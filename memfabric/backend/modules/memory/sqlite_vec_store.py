"""
SQLite Vector Store

Local, single-file vector store built on SQLite and the sqlite-vec extension.

Schema:
- memories: content and attribution columns keyed by an AUTOINCREMENT id
  (ids are never reused), plus a JSON column for the remaining metadata
- vec_memories: vec0 virtual table holding the embedding under the same rowid
- delete_vec_memory: trigger removing the vector when its row is deleted

One connection serves the whole store; every operation runs in a worker
thread under a single asyncio lock, so writes are applied one transaction
at a time.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence

import sqlite_vec

from .config import DEFAULT_DB_PATH
from .errors import StorageError
from .memory_types import (
    COLUMN_KEYS,
    CREATED_AT_KEY,
    ENTITY_ID_KEY,
    PROCESS_ID_KEY,
    ROLE_KEY,
    SESSION_ID_KEY,
    MemoryFilter,
    MemoryResult,
    utc_now,
)
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

# MemoryFilter field -> memories column
_FILTER_COLUMNS = {
    "entity_id": "m.entity_id",
    "process_id": "m.process_id",
    "session_id": "m.session_id",
}

# sqlite-vec rejects KNN queries with k above this
KNN_MAX_K = 4096

_SELECT_COLUMNS = """
    m.id, m.content, m.role, m.entity_id, m.process_id,
    m.session_id, m.created_at, m.metadata
"""


class SqliteVecStore(VectorStore):
    """
    VectorStore backed by SQLite + sqlite-vec.

    Distances are Euclidean (L2) for both the KNN path and the filtered path.
    """

    def __init__(self, path: str = DEFAULT_DB_PATH, dimension: int = 384):
        """
        Args:
            path: Database file. Use ":memory:" for an ephemeral store.
            dimension: Length of every stored vector.
        """
        super().__init__(dimension)
        self.db_path = str(path)
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _initialize(self) -> None:
        try:
            await asyncio.to_thread(self._initialize_sync)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to initialize SQLite store at {self.db_path}", e) from e

    def _initialize_sync(self):
        if self.conn is None:
            # isolation_level=None: transactions are managed explicitly below
            conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            try:
                conn.enable_load_extension(True)
                sqlite_vec.load(conn)
                conn.enable_load_extension(False)
            except Exception as e:
                conn.close()
                raise StorageError("Failed to load the sqlite-vec extension", e) from e
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=30000")
            self.conn = conn

        with self._transaction() as c:
            c.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS vec_memories USING vec0(
                    embedding float[{self.dimension}]
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    content TEXT,
                    role TEXT,
                    entity_id TEXT,
                    process_id TEXT,
                    session_id TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    metadata TEXT
                )
            """)

            # Databases created before the metadata column existed
            columns = {row["name"] for row in c.execute("PRAGMA table_info(memories)")}
            if "metadata" not in columns:
                c.execute("ALTER TABLE memories ADD COLUMN metadata TEXT")
                logger.info("Migrated memories table: added metadata column")

            for col in ("entity_id", "process_id", "session_id"):
                c.execute(f"CREATE INDEX IF NOT EXISTS idx_memories_{col} ON memories({col})")

            c.execute("""
                CREATE TRIGGER IF NOT EXISTS delete_vec_memory
                AFTER DELETE ON memories
                BEGIN
                    DELETE FROM vec_memories WHERE rowid = old.id;
                END
            """)

    async def _close(self) -> None:
        async with self._lock:
            if self.conn is not None:
                conn, self.conn = self.conn, None
                try:
                    await asyncio.to_thread(conn.close)
                except Exception as e:
                    raise StorageError("Failed to close SQLite store", e) from e

    @contextmanager
    def _transaction(self):
        """BEGIN/COMMIT around a block, ROLLBACK on any error."""
        conn = self.conn
        conn.execute("BEGIN")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    async def _run(self, fn, *args):
        """Run a blocking call on the shared connection, one at a time."""
        async with self._lock:
            self._check_ready()
            return await asyncio.to_thread(fn, *args)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def insert(
        self,
        content: str,
        vector: Sequence[float],
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        values = self._check_vector(vector)
        try:
            return await self._run(self._insert_sync, content, values, dict(metadata or {}))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("Failed to insert memory", e) from e

    def _insert_sync(self, content: str, vector: List[float], metadata: Dict[str, Any]) -> str:
        extra = {k: v for k, v in metadata.items() if k not in COLUMN_KEYS and v is not None}
        with self._transaction() as c:
            cur = c.execute(
                """
                INSERT INTO memories (content, role, entity_id, process_id, session_id, created_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    content,
                    metadata.get(ROLE_KEY) or "user",
                    metadata.get(ENTITY_ID_KEY),
                    metadata.get(PROCESS_ID_KEY),
                    metadata.get(SESSION_ID_KEY),
                    metadata.get(CREATED_AT_KEY) or utc_now(),
                    json.dumps(extra) if extra else None,
                ),
            )
            rowid = cur.lastrowid
            c.execute(
                "INSERT INTO vec_memories(rowid, embedding) VALUES (?, ?)",
                (rowid, sqlite_vec.serialize_float32(vector)),
            )
        logger.debug(f"Inserted memory {rowid}")
        return str(rowid)

    async def search(
        self,
        vector: Sequence[float],
        limit: int = 5,
        filter: Optional[MemoryFilter] = None
    ) -> List[MemoryResult]:
        values = self._check_vector(vector)
        limit = self._check_limit(limit)
        try:
            return await self._run(self._search_sync, values, limit, filter or MemoryFilter())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("Search query failed", e) from e

    def _search_sync(self, vector: List[float], limit: int, filter: MemoryFilter) -> List[MemoryResult]:
        blob = sqlite_vec.serialize_float32(vector)
        constraints = filter.as_dict()

        if not constraints and limit <= KNN_MAX_K:
            # vec0 KNN query; the index only ever holds rows that have a memory
            rows = self.conn.execute(
                f"""
                WITH knn AS (
                    SELECT rowid, distance
                    FROM vec_memories
                    WHERE embedding MATCH ? AND k = ?
                )
                SELECT {_SELECT_COLUMNS}, knn.distance AS distance
                FROM knn
                JOIN memories m ON m.id = knn.rowid
                ORDER BY knn.distance, m.id
                """,
                (blob, limit),
            ).fetchall()
        else:
            # Exact scan: narrow to the tenant's rows first (or take every row
            # when limit is beyond KNN_MAX_K), then rank them
            where = " AND ".join(f"{_FILTER_COLUMNS[k]} = ?" for k in constraints) or "1 = 1"
            rows = self.conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}, vec_distance_l2(v.embedding, ?) AS distance
                FROM memories m
                JOIN vec_memories v ON v.rowid = m.id
                WHERE {where}
                ORDER BY distance, m.id
                LIMIT ?
                """,
                (blob, *constraints.values(), limit),
            ).fetchall()

        return [self._row_to_result(row) for row in rows]

    @staticmethod
    def _row_to_result(row: sqlite3.Row) -> MemoryResult:
        metadata: Dict[str, Any] = {}
        if row["metadata"]:
            try:
                metadata.update(json.loads(row["metadata"]))
            except json.JSONDecodeError:
                logger.warning(f"Memory {row['id']} has unreadable metadata, ignoring it")
        for key in COLUMN_KEYS:
            if row[key] is not None:
                metadata[key] = row[key]
        return MemoryResult(
            id=str(row["id"]),
            content=row["content"],
            metadata=metadata,
            distance=float(row["distance"]),
        )

    async def delete(self, record_id: str) -> None:
        try:
            rowid = int(record_id)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Invalid memory id '{record_id}'", e) from e
        try:
            await self._run(self._delete_sync, rowid)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to delete memory {record_id}", e) from e

    def _delete_sync(self, rowid: int):
        with self._transaction() as c:
            # delete_vec_memory trigger removes the vector in the same transaction
            c.execute("DELETE FROM memories WHERE id = ?", (rowid,))

    async def count(self) -> int:
        try:
            return await self._run(
                lambda: self.conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            )
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("Failed to count memories", e) from e
