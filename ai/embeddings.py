"""Embedding provider for catalog items.

Wraps an OpenAI-compatible embeddings endpoint and normalises its failures
into ``EmbeddingGenerationError`` with a status code and/or transport flag,
so the pipeline can decide whether to retry.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Protocol

import openai
from openai import AsyncOpenAI

from catalog.config import EmbeddingSettings
from catalog.errors import EmbeddingGenerationError

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")

# (label, column) pairs appended to the embedding text when present
OPTIONAL_TEXT_FIELDS: tuple[tuple[str, str], ...] = (
    ("Tags", "tags"),
    ("Brand", "brand"),
    ("Color", "color"),
    ("Size", "size"),
    ("Material", "material"),
)


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]: ...


def build_item_embedding_text(item: Mapping[str, Any]) -> str:
    """Single-line text describing an item, kept short to bound token cost."""
    parts = [
        f"Name: {item.get('name', '')}",
        f"Description: {item.get('description', '')}",
        f"Category: {item.get('category', '')}",
    ]
    for label, key in OPTIONAL_TEXT_FIELDS:
        value = item.get(key)
        if value and str(value).strip():
            parts.append(f"{label}: {value}")
    return _WHITESPACE.sub(" ", " ".join(parts)).strip()


class OpenAIEmbeddingProvider:
    """Embeddings via ``AsyncOpenAI.embeddings.create``."""

    def __init__(self, config: EmbeddingSettings, client: AsyncOpenAI | None = None) -> None:
        self._model = config.model_name
        self._dim = config.dim
        self._client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            # Retries are owned by the pipeline
            max_retries=0,
        )

    async def embed(self, text: str) -> list[float]:
        """Compute one embedding.

        Raises:
            EmbeddingGenerationError: On empty input, provider failure or a
                malformed response
        """
        if not text or not text.strip():
            raise EmbeddingGenerationError("Embedding input text is empty", status_code=400)

        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=text,
                dimensions=self._dim,
                encoding_format="float",
            )
        except openai.APIStatusError as e:
            raise EmbeddingGenerationError(e.message, status_code=e.status_code, code=e.code) from e
        except openai.APIConnectionError as e:
            # APITimeoutError is a subclass
            raise EmbeddingGenerationError(str(e), transport=True) from e
        except openai.OpenAIError as e:
            raise EmbeddingGenerationError(str(e) or "Unknown embedding error") from e

        data = response.data or []
        embedding = data[0].embedding if data else None
        if not embedding or not isinstance(embedding, list):
            raise EmbeddingGenerationError("Invalid embedding response structure")
        if len(embedding) != self._dim:
            logger.warning(f"Embedding has {len(embedding)} dimensions, expected {self._dim}")
        return embedding

    async def close(self) -> None:
        await self._client.close()
