"""AI inference client — Claude chat completions plus local text embeddings."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Protocol, runtime_checkable

from anthropic import AsyncAnthropic
from anthropic.types import TextBlock
from chromadb.utils import embedding_functions

logger = logging.getLogger(__name__)

# Haiku: fast and cheap enough to run on every message and label decision.
# Thread summaries and drafts pass the Sonnet model explicitly.
_MODEL = "claude-haiku-4-5-20251001"
_MAX_TOKENS = 1024


class InferenceError(Exception):
    """Raised when the model returns no usable text or embedding."""


@runtime_checkable
class InferenceClient(Protocol):
    """Interface the pipeline steps use for every AI call."""

    async def complete(
        self, system_prompt: str, user_prompt: str, *, model: str | None = None
    ) -> str:
        """Run one chat completion and return its text."""
        ...

    async def embed(self, text: str) -> list[float]:
        """Return a fixed-length embedding vector for ``text``."""
        ...


class AnthropicInferenceClient:
    """Claude for text generation, ChromaDB's embedding model for vectors.

    Anthropic has no embeddings endpoint, so vectors come from the same
    sentence-transformer ChromaDB uses by default (all-MiniLM-L6-v2, run
    locally via ONNX).  The model is CPU-bound, so it runs in a worker thread.

    Usage::

        client = AnthropicInferenceClient()
        summary = await client.complete(SUMMARIZE_MESSAGE, message_xml)
        vector = await client.embed(summary)
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = _MODEL,
        max_tokens: int = _MAX_TOKENS,
        embedding_function: Any = None,
    ) -> None:
        self._client = AsyncAnthropic(
            api_key=api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        )
        self._model = model
        self._max_tokens = max_tokens
        self._embedding_function = (
            embedding_function or embedding_functions.DefaultEmbeddingFunction()
        )

    async def complete(
        self, system_prompt: str, user_prompt: str, *, model: str | None = None
    ) -> str:
        """Return the model's text answer.

        Raises:
            InferenceError: if the response contains no text.
        """
        response = await self._client.messages.create(
            model=model or self._model,
            max_tokens=self._max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        text = "".join(
            block.text for block in response.content if isinstance(block, TextBlock)
        ).strip()
        if not text:
            raise InferenceError(
                f"Model returned no text (stop_reason={response.stop_reason!r})"
            )
        return text

    async def embed(self, text: str) -> list[float]:
        """Embed ``text``; blank input gives an empty vector rather than a call."""
        if not text.strip():
            return []
        vectors = await asyncio.to_thread(self._embedding_function, [text])
        if vectors is None or len(vectors) == 0:
            raise InferenceError("Embedding function returned no vectors")
        return [float(x) for x in vectors[0]]
