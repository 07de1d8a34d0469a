"""
CLaRa Service - compress on write, reason on read.

Two optional stages wrapped around the fabric's primary paths:

- compress(): condenses content before it is embedded and stored, keeping
  the raw text in the record's metadata
- reason(): rewrites a user query into a richer search key before retrieval

Both stages delegate to a generation provider and never raise: any failure
falls back to the untouched input with a logged warning.
"""

import logging
from typing import Any, Optional

from memfabric.sidecar_service import GenerationProvider, as_generator

from .config import ClaraConfig
from .errors import describe
from .memory_types import IS_COMPRESSED_KEY, ORIGINAL_CONTENT_KEY, CompressionResult

logger = logging.getLogger(__name__)

DEFAULT_COMPRESSOR_PROMPT = (
    "Compress the following text into a short, dense memory. Keep every fact, "
    "name, number and date; drop filler and pleasantries. "
    "Reply with the compressed text only."
)

DEFAULT_REASONING_PROMPT = (
    "The user is asking: \"{query}\"\n\n"
    "Think about what stored facts would help answer this, then write a single "
    "search query that describes them. Reply with the search query only."
)


class ClaraPipeline:
    """
    Optimization pipeline around a generation provider.

    Collaborators are tried in order: the stage's dedicated provider
    (`compressor` / `reasoner`), then the shared `llm`. With neither, the
    stage passes its input through unchanged.
    """

    def __init__(
        self,
        config: Optional[ClaraConfig] = None,
        llm: Any = None,
        compressor: Any = None,
        reasoner: Any = None,
    ):
        self.config = config or ClaraConfig()
        self.llm: Optional[GenerationProvider] = as_generator(llm)
        self.compressor: Optional[GenerationProvider] = as_generator(compressor)
        self.reasoner: Optional[GenerationProvider] = as_generator(reasoner)
        self._warned_missing = set()

    @property
    def compression_enabled(self) -> bool:
        return self.config.enable_compression

    @property
    def reasoning_enabled(self) -> bool:
        return self.config.enable_reasoning

    def _collaborator(self, stage: str, dedicated: Optional[GenerationProvider]) -> Optional[GenerationProvider]:
        provider = dedicated or self.llm
        if provider is None and stage not in self._warned_missing:
            # Once per stage per pipeline, not once per call
            self._warned_missing.add(stage)
            logger.warning(f"CLaRa {stage} is enabled but no generation provider is configured; passing input through")
        return provider

    def build_compression_prompt(self, content: str) -> str:
        instruction = self.config.compressor_prompt or DEFAULT_COMPRESSOR_PROMPT
        return f"{instruction}\n\nText:\n{content}"

    def build_reasoning_prompt(self, query: str) -> str:
        template = self.config.reasoning_prompt or DEFAULT_REASONING_PROMPT
        return template.replace("{query}", query)

    async def compress(self, content: str) -> CompressionResult:
        """
        Compress content for storage.

        Returns the compressed text with {original_content, is_compressed}
        metadata, or the original content with empty metadata on any failure.
        """
        provider = self._collaborator("compression", self.compressor)
        if provider is None:
            return CompressionResult(content=content)

        try:
            compressed = await provider.generate(self.build_compression_prompt(content))
        except Exception as e:
            logger.warning(f"CLaRa compression failed, storing original content: {describe(e)}")
            return CompressionResult(content=content)

        if not compressed or not str(compressed).strip():
            logger.warning("CLaRa compression returned empty output, storing original content")
            return CompressionResult(content=content)

        compressed = str(compressed).strip()
        logger.debug(f"CLaRa compressed {len(content)} -> {len(compressed)} chars")
        return CompressionResult(
            content=compressed,
            metadata={ORIGINAL_CONTENT_KEY: content, IS_COMPRESSED_KEY: True},
        )

    async def reason(self, query: str) -> str:
        """Rewrite a query into a search key, or return it unchanged on failure."""
        provider = self._collaborator("reasoning", self.reasoner)
        if provider is None:
            return query

        try:
            reasoned = await provider.generate(self.build_reasoning_prompt(query))
        except Exception as e:
            logger.warning(f"CLaRa reasoning failed, using original query: {describe(e)}")
            return query

        if not reasoned or not str(reasoned).strip():
            logger.warning("CLaRa reasoning returned empty output, using original query")
            return query

        reasoned = str(reasoned).strip()
        logger.debug(f"CLaRa reasoned query: '{query}' -> '{reasoned}'")
        return reasoned
