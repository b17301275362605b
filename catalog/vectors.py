"""Qdrant-backed vector index for catalog items.

One point per provider and SKU. Qdrant only accepts UUID or integer point ids,
so the natural key ``provider_id#sku`` is mapped to a deterministic UUID and
kept in the payload as ``record_key``.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from .config import VectorIndexSettings
from .errors import VectorIndexError

logger = logging.getLogger(__name__)

_POINT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "catalog-items")


def record_key(provider_id: str, sku: str) -> str:
    return f"{provider_id}#{sku}"


def point_id(key: str) -> str:
    """Deterministic point id, so re-ingesting a SKU overwrites its vector."""
    return str(uuid.uuid5(_POINT_NAMESPACE, key))


@dataclass
class VectorRecord:
    """An embedded catalog item ready for the index."""
    key: str
    values: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_point(self) -> PointStruct:
        payload = {k: v for k, v in self.metadata.items() if v is not None}
        payload["record_key"] = self.key
        return PointStruct(id=point_id(self.key), vector=self.values, payload=payload)


def version_filter(provider_id: str, version_id: str) -> Filter:
    return Filter(
        must=[
            FieldCondition(key="provider_id", match=MatchValue(value=provider_id)),
            FieldCondition(key="catalog_version_id", match=MatchValue(value=version_id)),
        ]
    )


def _translate(e: Exception, operation: str) -> VectorIndexError:
    if isinstance(e, VectorIndexError):
        return e
    if isinstance(e, UnexpectedResponse):
        return VectorIndexError(str(e), operation=operation, status_code=e.status_code)
    if isinstance(e, (ResponseHandlingException, httpx.TransportError, ConnectionError, TimeoutError)):
        return VectorIndexError(str(e) or type(e).__name__, operation=operation, transport=True)
    return VectorIndexError(f"Unknown error during vector index {operation}: {e}", operation=operation)


def build_client(config: VectorIndexSettings) -> AsyncQdrantClient:
    if config.location:
        return AsyncQdrantClient(location=config.location)
    return AsyncQdrantClient(url=config.url, api_key=config.api_key, timeout=config.timeout_seconds)


class VectorIndex:
    """Thin async wrapper translating client failures into ``VectorIndexError``."""

    def __init__(self, client: AsyncQdrantClient, collection: str) -> None:
        self._client = client
        self.collection = collection

    async def ensure_collection(self, dim: int) -> bool:
        """Create the collection if missing. Returns True when it was created."""
        if await self._client.collection_exists(self.collection):
            logger.info(f"Vector collection '{self.collection}' already exists, skipping creation")
            return False
        await self._client.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=dim, distance=Distance.COSINE),
        )
        for field_name in ("provider_id", "catalog_version_id", "category"):
            await self._client.create_payload_index(
                collection_name=self.collection,
                field_name=field_name,
                field_schema=PayloadSchemaType.KEYWORD,
            )
        logger.info(f"Created vector collection '{self.collection}' (dim={dim}, cosine)")
        return True

    async def upsert(self, records: list[VectorRecord]) -> None:
        try:
            await self._client.upsert(
                collection_name=self.collection,
                points=[r.to_point() for r in records],
                wait=True,
            )
        except Exception as e:
            raise _translate(e, "upsert") from e

    async def fetch(self, keys: list[str]) -> list[VectorRecord]:
        """Stored records for ``keys``; missing keys are skipped."""
        if not keys:
            return []
        try:
            points = await self._client.retrieve(
                collection_name=self.collection,
                ids=[point_id(key) for key in keys],
                with_payload=True,
                with_vectors=True,
            )
        except Exception as e:
            raise _translate(e, "retrieve") from e
        records = []
        for point in points:
            payload = dict(point.payload or {})
            key = payload.pop("record_key")
            records.append(VectorRecord(key=key, values=list(point.vector), metadata=payload))
        return records

    async def delete_by_version(self, provider_id: str, version_id: str) -> None:
        try:
            await self._client.delete(
                collection_name=self.collection,
                points_selector=FilterSelector(filter=version_filter(provider_id, version_id)),
                wait=True,
            )
        except Exception as e:
            raise _translate(e, "delete") from e

    async def count_by_version(self, provider_id: str, version_id: str) -> int:
        try:
            result = await self._client.count(
                collection_name=self.collection,
                count_filter=version_filter(provider_id, version_id),
                exact=True,
            )
        except Exception as e:
            raise _translate(e, "count") from e
        return result.count

    async def close(self) -> None:
        await self._client.close()
