"""
Memory Fabric Exceptions

Error taxonomy for the memory fabric:
- ConfigurationError: invalid setup, raised once at construction
- StorageError: vector store failures (propagated to the caller)
- EmbeddingError: embedding collaborator failures (propagated to the caller)
- GenerationError: generation collaborator failures (always recovered by CLaRa)
"""

from typing import Any, Optional


class MemoryFabricError(Exception):
    """Base exception for all memory fabric errors."""
    pass


class ConfigurationError(MemoryFabricError):
    """
    Invalid fabric configuration.

    Raised when:
    - A required setting is missing (connection string, API key)
    - A setting has an unknown value (backend name, provider name)
    - A numeric setting is out of range
    """
    pass


class StorageError(MemoryFabricError):
    """
    Error reading from or writing to a vector store.

    Wraps the backend's own exception in `original_error`.
    """

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class DimensionMismatchError(StorageError):
    """A vector's length does not match the store's configured dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Vector dimension {actual} does not match store dimension {expected}"
        )
        self.expected = expected
        self.actual = actual


class StoreClosedError(StorageError):
    """Operation attempted on a store or fabric that has been closed."""
    pass


class EmbeddingError(MemoryFabricError):
    """
    Error generating an embedding.

    Raised when:
    - The provider is unreachable or returns an error response
    - The provider returns no vector
    - The local model fails to encode
    """

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class GenerationError(MemoryFabricError):
    """Error from a text-generation collaborator."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


def describe(error: Any) -> str:
    """Short one-line description of an exception for log messages."""
    return f"{type(error).__name__}: {error}"
