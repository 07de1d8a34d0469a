"""
Embedding Service

Turns text into vectors for the stores. The fabric never embeds on its own;
it delegates to one of these providers:

- SentenceTransformerEmbedding: local sentence-transformers model (default)
- OpenAIEmbedding: OpenAI /embeddings API or any compatible endpoint
- GoogleEmbedding: Gemini embedContent API

Providers raise EmbeddingError on any failure.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
from sentence_transformers import SentenceTransformer

from .config import DEFAULT_EMBEDDING_DIMENSIONS, EmbeddingProviderName, FabricConfig
from .errors import ConfigurationError, EmbeddingError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_GOOGLE_MODEL = "text-embedding-004"

OPENAI_BASE_URL = "https://api.openai.com/v1"
GOOGLE_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class EmbeddingProvider(ABC):
    """Text -> fixed-length vector."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        ...

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        ...


class SentenceTransformerEmbedding(EmbeddingProvider):
    """
    Local embeddings with sentence-transformers.

    The model is loaded on first use and encoding runs in a worker thread
    so the event loop is never blocked.
    """

    def __init__(self, model_name: str = DEFAULT_MODEL, dimension: Optional[int] = None):
        """
        Args:
            model_name: Name of sentence-transformers model to use
            dimension: Expected output size (read from the model if None)
        """
        self.model_name = model_name
        self._dimension = dimension
        self._model: Optional[SentenceTransformer] = None

    @property
    def model(self) -> SentenceTransformer:
        """Lazy-load model on first use."""
        if self._model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
            logger.info(f"Embedding model loaded: {self.model_name}")
        return self._model

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension

    async def embed(self, text: str) -> List[float]:
        try:
            embedding = await asyncio.to_thread(lambda: self.model.encode(text, convert_to_numpy=True))
        except Exception as e:
            raise EmbeddingError(f"Local embedding with {self.model_name} failed", e) from e
        return embedding.tolist()

    async def prewarm(self):
        """Pre-warm the model by loading it."""
        await asyncio.to_thread(lambda: self.model)
        logger.info(f"Embedding model pre-warmed: {self.model_name}")


class OpenAIEmbedding(EmbeddingProvider):
    """OpenAI embeddings (or an OpenAI-compatible endpoint via base_url)."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_OPENAI_MODEL,
        dimension: int = DEFAULT_EMBEDDING_DIMENSIONS[EmbeddingProviderName.OPENAI],
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ConfigurationError("OpenAIEmbedding requires an API key")
        self.api_key = api_key
        self.model = model
        self._dimension = dimension
        self.base_url = (base_url or OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._client = client

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> List[float]:
        payload = {"model": self.model, "input": text}
        if self.model.startswith("text-embedding-3"):
            payload["dimensions"] = self._dimension
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self._client is not None:
                resp = await self._client.post(f"{self.base_url}/embeddings", json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(f"{self.base_url}/embeddings", json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise EmbeddingError(f"OpenAI embedding request failed: HTTP {e.response.status_code}", e) from e
        except Exception as e:
            raise EmbeddingError("OpenAI embedding request failed", e) from e

        try:
            return [float(v) for v in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise EmbeddingError("OpenAI embedding response contained no vector", e) from e


class GoogleEmbedding(EmbeddingProvider):
    """Google Gemini embeddings."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_GOOGLE_MODEL,
        dimension: int = DEFAULT_EMBEDDING_DIMENSIONS[EmbeddingProviderName.GOOGLE],
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ConfigurationError("GoogleEmbedding requires an API key")
        self.api_key = api_key
        self.model = model
        self._dimension = dimension
        self.timeout = timeout
        self._client = client

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> List[float]:
        url = f"{GOOGLE_BASE_URL}/models/{self.model}:embedContent"
        payload = {
            "model": f"models/{self.model}",
            "content": {"parts": [{"text": text}]},
        }
        params = {"key": self.api_key}

        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, params=params)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload, params=params)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise EmbeddingError(f"Google embedding request failed: HTTP {e.response.status_code}", e) from e
        except Exception as e:
            raise EmbeddingError("Google embedding request failed", e) from e

        try:
            return [float(v) for v in data["embedding"]["values"]]
        except (KeyError, TypeError, ValueError) as e:
            raise EmbeddingError("Google embedding response contained no vector", e) from e


def create_embedding_provider(config: FabricConfig) -> EmbeddingProvider:
    """Build the provider named by config.embedding_provider."""
    name = config.embedding_provider
    dimension = config.resolved_dimension

    if name == EmbeddingProviderName.OPENAI:
        return OpenAIEmbedding(
            api_key=config.api_key,
            model=config.embedding_model or DEFAULT_OPENAI_MODEL,
            dimension=dimension,
            base_url=config.embedding_base_url,
        )
    if name == EmbeddingProviderName.GOOGLE:
        return GoogleEmbedding(
            api_key=config.api_key,
            model=config.embedding_model or DEFAULT_GOOGLE_MODEL,
            dimension=dimension,
        )
    model_name = config.embedding_model or DEFAULT_MODEL
    if config.embedding_dimension is None and model_name != DEFAULT_MODEL:
        # Only the default model's size is known up front; ask any other model
        dimension = None
    return SentenceTransformerEmbedding(model_name=model_name, dimension=dimension)
