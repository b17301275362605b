"""Per-item embedding with retry, producing vector records for publishing."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from ai.embeddings import EmbeddingProvider, build_item_embedding_text
from catalog.config import PipelineConfig
from catalog.pipelines.retry import Sleeper, call_with_retry
from catalog.vectors import VectorRecord, record_key

logger = logging.getLogger(__name__)

VECTOR_METADATA_FIELDS: tuple[str, ...] = ("brand", "color", "material", "size")


def _optional(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
    return value or None


def vector_metadata(item: Mapping[str, Any], *, provider_id: str, version_id: str) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "provider_id": provider_id,
        "catalog_version_id": version_id,
        "category": item["category"],
        "sku": item["sku"],
    }
    for key in VECTOR_METADATA_FIELDS:
        metadata[key] = _optional(item.get(key))
    tags = [t.strip() for t in str(item.get("tags") or "").split("|") if t.strip()]
    metadata["tags"] = tags or None
    return metadata


class EmbeddingGenerator:
    """Embeds catalog items one at a time.

    Any item that cannot be embedded aborts the whole run: a catalog version
    is never activated with a partial set of vectors.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: PipelineConfig,
        *,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._config = config
        self._sleep = sleep

    async def embed(self, item: Mapping[str, Any]) -> list[float]:
        text = build_item_embedding_text(item)
        return await call_with_retry(
            lambda: self._provider.embed(text),
            config=self._config,
            operation="generate embeddings",
            sleep=self._sleep,
        )

    async def embed_all(
        self,
        items: list[Mapping[str, Any]],
        *,
        provider_id: str,
        version_id: str,
    ) -> list[VectorRecord]:
        records: list[VectorRecord] = []
        for item in items:
            values = await self.embed(item)
            records.append(
                VectorRecord(
                    key=record_key(provider_id, item["sku"]),
                    values=values,
                    metadata=vector_metadata(item, provider_id=provider_id, version_id=version_id),
                )
            )
        logger.info(f"Embedded {len(records)} items for catalog version {version_id}")
        return records
