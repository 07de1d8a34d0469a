"""
memfabric FastAPI Server

Exposes one MemoryFabric over HTTP so non-Python clients can share it.

Provides:
- /api/health: Health check endpoint
- /api/memories: Store a memory (waits for the write)
- /api/memories/queue: Store a memory in the background
- /api/search: Nearest memories for a query
- /api/context: Formatted context block for prompt injection
- /api/wait: Drain background writes pending at call time
- /api/stats: Record count and last retrieval stats

Configuration comes from MEMFABRIC_* environment variables
(see FabricConfig.from_env). MEMFABRIC_LLM selects the CLaRa generator.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from memfabric.backend.modules.memory import Attribution, FabricConfig, MemoryFabric
from memfabric.backend.modules.memory.errors import MemoryFabricError, StoreClosedError
from memfabric.sidecar_service import create_generator

logger = logging.getLogger(__name__)

# Global instance
_fabric: Optional[MemoryFabric] = None

DEFAULT_PORT = 27190


# ==================== Request/Response Models ====================

class AttributedRequest(BaseModel):
    """Optional scope; all fields empty means the fabric's default attribution."""
    entity_id: Optional[str] = Field(None, max_length=200)
    process_id: Optional[str] = Field(None, max_length=200)
    session_id: Optional[str] = Field(None, max_length=200)

    def to_attribution(self) -> Optional[Attribution]:
        if not (self.entity_id or self.process_id or self.session_id):
            return None
        return Attribution(entity_id=self.entity_id, process_id=self.process_id, session_id=self.session_id)


class AddMemoryRequest(AttributedRequest):
    """Request to store a memory."""
    content: str = Field(..., min_length=1)
    role: str = Field("user", pattern="^(user|assistant|system)$")


class AddMemoryResponse(BaseModel):
    id: str


class QueueMemoryResponse(BaseModel):
    queued: bool
    pending: int


class SearchRequest(AttributedRequest):
    """Request for searching memory."""
    query: str = Field(..., max_length=2000)
    limit: int = Field(5, ge=1, le=100)


class SearchResponse(BaseModel):
    query: str
    count: int
    results: List[Dict[str, Any]]


class ContextRequest(AttributedRequest):
    """Request for a prompt context block."""
    query: str = Field(..., max_length=2000)


class ContextResponse(BaseModel):
    context: str
    stats: Dict[str, Any]


def _build_fabric() -> MemoryFabric:
    config = FabricConfig.from_env()
    llm = None
    llm_name = os.environ.get("MEMFABRIC_LLM")
    if config.clara.enabled and llm_name:
        llm = create_generator(llm_name)
    return MemoryFabric(config=config, llm=llm)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage fabric lifecycle."""
    global _fabric
    logger.info("Starting memfabric server...")

    _fabric = _build_fabric()
    await _fabric.initialize()
    logger.info("Memory fabric initialized")

    yield

    # Cleanup - close() drains background writes first
    logger.info("Shutting down memfabric server...")
    if _fabric is not None:
        await _fabric.close()
        _fabric = None


def _require_fabric() -> MemoryFabric:
    if not _fabric or _fabric.closed:
        raise HTTPException(status_code=503, detail="Memory fabric not ready")
    return _fabric


def create_app() -> FastAPI:
    """Create FastAPI application."""
    from memfabric import __version__

    app = FastAPI(
        title="memfabric",
        description="Attributed long-term memory for LLM applications",
        version=__version__,
        lifespan=lifespan
    )

    # CORS - localhost tools only
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )

    @app.post("/api/memories", response_model=AddMemoryResponse)
    async def add_memory(request: AddMemoryRequest):
        """Store a memory and return its id once committed."""
        fabric = _require_fabric()
        try:
            memory_id = await fabric.add_memory(request.content, request.role, request.to_attribution())
            return AddMemoryResponse(id=memory_id)
        except StoreClosedError:
            raise HTTPException(status_code=503, detail="Memory fabric is closed")
        except MemoryFabricError as e:
            logger.error(f"Error storing memory: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/memories/queue", response_model=QueueMemoryResponse)
    async def queue_memory(request: AddMemoryRequest):
        """Schedule a memory write without waiting for it."""
        fabric = _require_fabric()
        try:
            fabric.queue_memory(request.content, request.role, request.to_attribution())
        except StoreClosedError:
            raise HTTPException(status_code=503, detail="Memory fabric is closed")
        return QueueMemoryResponse(queued=True, pending=fabric.pending_writes)

    @app.post("/api/search", response_model=SearchResponse)
    async def search_memory(request: SearchRequest):
        """Nearest memories to the raw query."""
        fabric = _require_fabric()
        try:
            results = await fabric.search(request.query, request.limit, request.to_attribution())
        except StoreClosedError:
            raise HTTPException(status_code=503, detail="Memory fabric is closed")
        except MemoryFabricError as e:
            logger.error(f"Error searching: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return SearchResponse(
            query=request.query,
            count=len(results),
            results=[r.to_dict() for r in results],
        )

    @app.post("/api/context", response_model=ContextResponse)
    async def get_context(request: ContextRequest):
        """Context block for prompt injection ("" when nothing matches)."""
        fabric = _require_fabric()
        try:
            context = await fabric.retrieve_context(request.query, request.to_attribution())
        except StoreClosedError:
            raise HTTPException(status_code=503, detail="Memory fabric is closed")
        return ContextResponse(context=context, stats=fabric.stats.to_dict())

    @app.post("/api/wait")
    async def wait_for_writes():
        """Wait for background writes pending at the moment of the call."""
        fabric = _require_fabric()
        await fabric.wait()
        return {"pending": fabric.pending_writes}

    @app.get("/api/health")
    async def health_check():
        """
        Health check endpoint.

        Returns 503 if the store cannot be queried.
        """
        store_ok = False
        store_error = None

        if _fabric and not _fabric.closed:
            try:
                await _fabric.count()
                store_ok = True
            except Exception as e:
                store_error = str(e)

        if not store_ok:
            raise HTTPException(
                status_code=503,
                detail=f"Memory store unhealthy: {store_error or 'not initialized'}"
            )

        return {
            "status": "healthy",
            "state": _fabric.state.value,
            "store": type(_fabric.store).__name__,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/api/stats")
    async def get_stats():
        """Get memory fabric statistics."""
        fabric = _require_fabric()
        try:
            count = await fabric.count()
        except MemoryFabricError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {
            "memories": count,
            "pending_writes": fabric.pending_writes,
            "store": type(fabric.store).__name__,
            **fabric.stats.to_dict(),
        }

    return app


def start_server(host: str = "127.0.0.1", port: Optional[int] = None):
    """
    Start the memfabric server.

    Args:
        host: Server host
        port: Server port (MEMFABRIC_PORT or 27190 if not specified)
    """
    if port is None:
        port = int(os.environ.get("MEMFABRIC_PORT", DEFAULT_PORT))

    print(f"""
===================================================
  MEMFABRIC SERVER
  Port:  {port}
  Store: {os.environ.get("MEMFABRIC_STORE", "sqlite")}
===================================================
""")

    app = create_app()
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="memfabric FastAPI Server")
    parser.add_argument("--host", default="127.0.0.1", help="Server host")
    parser.add_argument("--port", type=int, default=None, help=f"Server port (default: {DEFAULT_PORT})")
    args = parser.parse_args()

    logging.basicConfig(level=os.environ.get("MEMFABRIC_LOG_LEVEL", "INFO").upper())
    start_server(host=args.host, port=args.port)
