"""
memfabric - Attributed long-term memory for LLM applications

Stores conversation snippets as vectors and injects the relevant ones back
into prompts, scoped per user / process / session.

Usage:
    pip install memfabric
    memfabric init
    memfabric add "I prefer dark roast coffee" --entity user-1
    memfabric context "what coffee do I like?" --entity user-1

How it works:
    1. Chat-client hooks intercept requests BEFORE the model sees them
    2. Relevant memories for the last user message are injected as context
    3. The exchange is written back to memory in the background
    4. Optional CLaRa stages compress what is stored and sharpen what is searched
"""

__version__ = "0.1.0"

from memfabric.backend.modules.memory import (
    Attribution,
    ClaraConfig,
    FabricConfig,
    MemoryFabric,
    ScopedFabric,
)

__all__ = [
    "MemoryFabric",
    "ScopedFabric",
    "FabricConfig",
    "ClaraConfig",
    "Attribution",
    "__version__",
]
