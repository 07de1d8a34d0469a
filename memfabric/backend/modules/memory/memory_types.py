"""
Memory Fabric Type Definitions

Centralizes the dataclasses and type aliases shared by the stores, the
CLaRa pipeline and the orchestrator.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Literal


Role = Literal["user", "assistant", "system"]

# Metadata keys recognized by every store
ROLE_KEY = "role"
ENTITY_ID_KEY = "entity_id"
PROCESS_ID_KEY = "process_id"
SESSION_ID_KEY = "session_id"
CREATED_AT_KEY = "created_at"
ORIGINAL_CONTENT_KEY = "original_content"
IS_COMPRESSED_KEY = "is_compressed"

# Keys that live in dedicated columns rather than the free-form metadata blob
COLUMN_KEYS = (ROLE_KEY, ENTITY_ID_KEY, PROCESS_ID_KEY, SESSION_ID_KEY, CREATED_AT_KEY)


@dataclass(frozen=True)
class MemoryFilter:
    """
    Exact-match filter applied before ranking.

    Fields left as None impose no constraint; set fields are AND-combined.
    """
    entity_id: Optional[str] = None
    process_id: Optional[str] = None
    session_id: Optional[str] = None

    def as_dict(self) -> Dict[str, str]:
        """Only the fields that constrain the search."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @property
    def is_empty(self) -> bool:
        return not self.as_dict()


@dataclass(frozen=True)
class Attribution:
    """
    Tenant scope for a write or a read.

    Immutable so that a value captured at the start of a call cannot change
    while the call is in flight.
    """
    entity_id: Optional[str] = None
    process_id: Optional[str] = None
    session_id: Optional[str] = None

    def to_filter(self) -> MemoryFilter:
        return MemoryFilter(
            entity_id=self.entity_id,
            process_id=self.process_id,
            session_id=self.session_id,
        )

    def to_metadata(self) -> Dict[str, str]:
        """Attribution fields to merge into a record's metadata."""
        return self.to_filter().as_dict()


# Attribution that scopes nothing
UNSCOPED = Attribution()


@dataclass(frozen=True)
class MemoryResult:
    """
    A stored record as returned by a search.

    `distance` is only meaningful within the search call that produced it:
    smaller is more similar, and values are not comparable across queries
    or backends.
    """
    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    distance: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "metadata": dict(self.metadata),
            "distance": self.distance,
        }


@dataclass
class RunStats:
    """Stats for a single retrieve_context call."""
    context_chunks: int
    processing_time_ms: float
    timestamp: str
    used_query: str


@dataclass
class ExecutionStats:
    """
    Ephemeral stats for the most recent retrieve_context call.

    Overwritten on every call and never persisted.
    """
    last_run: Optional[RunStats] = None

    def record(self, context_chunks: int, processing_time_ms: float, used_query: str):
        self.last_run = RunStats(
            context_chunks=context_chunks,
            processing_time_ms=processing_time_ms,
            timestamp=utc_now(),
            used_query=used_query,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"last_run": asdict(self.last_run) if self.last_run else None}


@dataclass
class CompressionResult:
    """Output of the CLaRa compression stage."""
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_compressed(self) -> bool:
        return bool(self.metadata.get(IS_COMPRESSED_KEY))


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def format_context(results: List[MemoryResult]) -> str:
    """Render search results as one context line per result, in ranked order."""
    return "\n".join(f"- {r.content} (score: {r.distance})" for r in results)
