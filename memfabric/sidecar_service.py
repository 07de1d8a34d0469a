"""
Sidecar Service - LLM collaborators for the CLaRa pipeline.

The fabric never runs a model of its own. Compression and query reasoning
are delegated to a generation provider:

  1. AnthropicGenerator: Messages API (requires an API key)
  2. OpenAICompatibleGenerator: any /chat/completions endpoint
     (OpenAI, Groq, LM Studio, Zen free models, OpenRouter...)
  3. OllamaGenerator: local Ollama native /api/generate
  4. CallableGenerator: wraps any sync or async function (tests, custom SDKs)

Every provider raises GenerationError on failure; the pipeline recovers.
"""

import inspect
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from memfabric.backend.modules.memory.errors import ConfigurationError, GenerationError

logger = logging.getLogger(__name__)

# Anthropic API
ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
HAIKU_MODEL = "claude-haiku-4-5-20251001"

# OpenAI-compatible endpoint (env vars override defaults)
OPENAI_URL = os.environ.get("MEMFABRIC_LLM_URL", "https://api.openai.com/v1")
OPENAI_MODEL = os.environ.get("MEMFABRIC_LLM_MODEL", "gpt-4o-mini")

# Ollama default (override with MEMFABRIC_OLLAMA_URL)
OLLAMA_URL = os.environ.get("MEMFABRIC_OLLAMA_URL", "http://localhost:11434")
OLLAMA_MODEL = os.environ.get("MEMFABRIC_OLLAMA_MODEL", "llama3.2:3b")

DEFAULT_MAX_TOKENS = 800
DEFAULT_TIMEOUT = 30.0

SYSTEM_PROMPT = "You are part of a memory system. Reply with the requested text only."


class GenerationProvider(ABC):
    """Prompt -> completion text."""

    name: str = "generator"

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        ...


class _HttpGenerator(GenerationProvider):
    """Shared request handling for the HTTP providers."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise GenerationError(
                f"{self.name} error: HTTP {e.response.status_code}",
                provider=self.name,
                status_code=e.response.status_code,
            ) from e
        except Exception as e:
            raise GenerationError(f"{self.name} request failed: {e}", provider=self.name) from e


class AnthropicGenerator(_HttpGenerator):
    """Anthropic Messages API."""

    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = HAIKU_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        url: str = ANTHROPIC_API_URL,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ConfigurationError("AnthropicGenerator requires an API key (ANTHROPIC_API_KEY)")
        self.model = model
        self.max_tokens = max_tokens
        self.url = url

    async def generate(self, prompt: str) -> str:
        result = await self._post(
            self.url,
            {
                "model": self.model,
                "max_tokens": self.max_tokens,
                "messages": [{"role": "user", "content": prompt}],
            },
            {
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
        )
        text = ""
        for block in result.get("content", []):
            if block.get("type") == "text":
                text += block.get("text", "")
        return text


class OpenAICompatibleGenerator(_HttpGenerator):
    """Any OpenAI-compatible /chat/completions endpoint."""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = OPENAI_MODEL,
        base_url: str = OPENAI_URL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.api_key = api_key or os.environ.get("MEMFABRIC_LLM_KEY") or os.environ.get("OPENAI_API_KEY")
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens

    async def generate(self, prompt: str) -> str:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        result = await self._post(
            f"{self.base_url}/chat/completions",
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "max_tokens": self.max_tokens,
            },
            headers,
        )
        message = (result.get("choices") or [{}])[0].get("message", {})
        # Some reasoning models put content in reasoning_content
        return message.get("content") or message.get("reasoning_content") or ""


class OllamaGenerator(_HttpGenerator):
    """Local Ollama server via the native API."""

    name = "ollama"

    def __init__(self, model: str = OLLAMA_MODEL, base_url: str = OLLAMA_URL, **kwargs):
        super().__init__(**kwargs)
        self.model = model
        self.base_url = base_url.rstrip("/")

    async def generate(self, prompt: str) -> str:
        result = await self._post(
            f"{self.base_url}/api/generate",
            {
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {"num_predict": 500},
            },
            {},
        )
        return result.get("response", "")


class CallableGenerator(GenerationProvider):
    """Adapts a plain function (sync or async) taking a prompt and returning text."""

    name = "callable"

    def __init__(self, fn: Callable[[str], Union[str, Awaitable[str]]]):
        self.fn = fn

    async def generate(self, prompt: str) -> str:
        try:
            result = self.fn(prompt)
            if inspect.isawaitable(result):
                result = await result
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"Generation callable failed: {e}", provider=self.name) from e
        if result is None:
            return ""
        return str(result)


GENERATORS = {
    "anthropic": AnthropicGenerator,
    "openai": OpenAICompatibleGenerator,
    "ollama": OllamaGenerator,
}


def create_generator(name: str, **kwargs) -> GenerationProvider:
    """Build a generation provider by name ("anthropic", "openai", "ollama")."""
    try:
        cls = GENERATORS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown generation provider '{name}'. Expected one of: {', '.join(GENERATORS)}"
        )
    logger.info(f"Using {name} generation provider")
    return cls(**kwargs)


def as_generator(value: Any) -> Optional[GenerationProvider]:
    """Accept a provider, a bare callable, or None."""
    if value is None or isinstance(value, GenerationProvider):
        return value
    if callable(value):
        return CallableGenerator(value)
    raise ConfigurationError(f"Expected a GenerationProvider or callable, got {type(value).__name__}")
