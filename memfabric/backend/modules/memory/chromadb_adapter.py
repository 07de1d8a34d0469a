import logging
import os
import uuid
from typing import Any, Dict, List, Optional, Sequence

import chromadb
from chromadb.config import Settings as ChromaSettings

from .config import DEFAULT_COLLECTION_NAME
from .errors import StorageError
from .memory_types import CREATED_AT_KEY, ROLE_KEY, MemoryFilter, MemoryResult, utc_now
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


class ChromaDBAdapter(VectorStore):
    """
    VectorStore backed by ChromaDB.

    Runs embedded (PersistentClient on a local directory) or against a
    ChromaDB server (HttpClient). Embeddings are always supplied by the
    fabric; the collection has no embedding function of its own.
    Distances are squared L2 as reported by the collection's HNSW index.
    """

    def __init__(
        self,
        persistence_directory: str = "./chromadb",
        collection_name: str = DEFAULT_COLLECTION_NAME,
        dimension: int = 384,
        use_server: bool = False,
        host: str = "localhost",
        port: int = 8000,
        client: Optional[Any] = None,
    ):
        super().__init__(dimension)
        self.db_path = str(persistence_directory)
        self.collection_name = collection_name
        self.use_server = use_server
        self.host = host
        self.port = port
        self.client = client
        self.collection: Optional[chromadb.Collection] = None

        # Only create local dirs if not using server
        if not self.use_server and self.client is None:
            os.makedirs(self.db_path, exist_ok=True)

    async def _initialize(self) -> None:
        try:
            if self.client is None:
                if self.use_server:
                    self.client = chromadb.HttpClient(
                        host=self.host,
                        port=self.port,
                        settings=ChromaSettings(anonymized_telemetry=False)
                    )
                    logger.info(f"ChromaDB client connected to server at {self.host}:{self.port}")
                else:
                    self.client = chromadb.PersistentClient(
                        path=self.db_path,
                        settings=ChromaSettings(anonymized_telemetry=False)
                    )
                    logger.info(f"ChromaDB client initialized for local path: {self.db_path}")

            # Embeddings come from the fabric's embedding provider
            self.collection = self.client.get_or_create_collection(
                name=self.collection_name,
                embedding_function=None,
                metadata={"hnsw:space": "l2"}
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize ChromaDB collection '{self.collection_name}'", e) from e
        logger.info(f"ChromaDB collection '{self.collection_name}' ready")

    async def _close(self) -> None:
        # Clients hold no handles that need explicit release
        self.collection = None
        self.client = None

    @staticmethod
    def _clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
        """ChromaDB accepts only scalar, non-None metadata values."""
        cleaned = {}
        for key, value in metadata.items():
            if value is None:
                continue
            if isinstance(value, (str, int, float, bool)):
                cleaned[key] = value
            else:
                cleaned[key] = str(value)
        return cleaned

    @staticmethod
    def _where(filter: Optional[MemoryFilter]) -> Optional[Dict[str, Any]]:
        constraints = (filter or MemoryFilter()).as_dict()
        if not constraints:
            return None
        if len(constraints) == 1:
            return constraints
        return {"$and": [{k: v} for k, v in constraints.items()]}

    async def insert(
        self,
        content: str,
        vector: Sequence[float],
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        self._check_ready()
        values = self._check_vector(vector)
        record = dict(metadata or {})
        record.setdefault(ROLE_KEY, "user")
        record.setdefault(CREATED_AT_KEY, utc_now())

        record_id = uuid.uuid4().hex
        try:
            self.collection.add(
                ids=[record_id],
                embeddings=[values],
                metadatas=[self._clean_metadata(record)],
                documents=[content]
            )
        except Exception as e:
            logger.error(f"Failed to add vector to ChromaDB: {e}", exc_info=True)
            raise StorageError("Failed to insert memory into ChromaDB", e) from e
        logger.debug(f"Inserted memory {record_id} into '{self.collection_name}'")
        return record_id

    async def search(
        self,
        vector: Sequence[float],
        limit: int = 5,
        filter: Optional[MemoryFilter] = None
    ) -> List[MemoryResult]:
        self._check_ready()
        values = self._check_vector(vector)
        limit = self._check_limit(limit)

        try:
            total = self.collection.count()
            if total == 0:
                logger.debug(f"[ChromaDB] Collection '{self.collection_name}' is empty, returning empty results")
                return []

            results = self.collection.query(
                query_embeddings=[values],
                n_results=min(limit, total),
                where=self._where(filter),
                include=["documents", "metadatas", "distances"]
            )
        except Exception as e:
            raise StorageError("ChromaDB query failed", e) from e

        ids = (results.get("ids") or [[]])[0]
        documents = (results.get("documents") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]

        processed = [
            MemoryResult(
                id=str(ids[i]),
                content=documents[i] or "",
                metadata=dict(metadatas[i] or {}),
                distance=float(distances[i]),
            )
            for i in range(len(ids))
        ]
        processed.sort(key=lambda r: (r.distance, r.id))
        return processed[:limit]

    async def delete(self, record_id: str) -> None:
        self._check_ready()
        try:
            self.collection.delete(ids=[str(record_id)])
        except Exception as e:
            raise StorageError(f"Failed to delete memory {record_id}", e) from e
        logger.debug(f"Deleted memory {record_id} from '{self.collection_name}'")

    async def count(self) -> int:
        self._check_ready()
        try:
            return self.collection.count()
        except Exception as e:
            raise StorageError("Failed to count memories in ChromaDB", e) from e
