"""Catalog item document store.

Items are staged per catalog version with ``active=False`` and flipped by the
cutover. Two implementations share one interface: MongoDB for deployments and
an in-memory one for tests and local runs.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from pymongo import ASCENDING
from pymongo.errors import BulkWriteError

logger = logging.getLogger(__name__)


class CatalogItemStore(Protocol):
    async def insert_staged(self, documents: list[dict[str, Any]]) -> int: ...

    async def promote(self, provider_id: str, version_id: str) -> int: ...

    async def demote(self, provider_id: str, version_id: str) -> int: ...

    async def retire(self, provider_id: str, version_id: str) -> int: ...

    async def restore(self, provider_id: str, version_id: str) -> int: ...

    async def delete_staged(self, provider_id: str, version_id: str) -> int: ...

    async def find(
        self,
        provider_id: str,
        *,
        version_id: str | None = None,
        active: bool | None = None,
    ) -> list[dict[str, Any]]: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _version_filter(provider_id: str, version_id: str, **extra: Any) -> dict[str, Any]:
    return {"provider_id": provider_id, "catalog_version_id": version_id, **extra}


class InMemoryCatalogItemStore:
    def __init__(self, documents: list[dict[str, Any]] | None = None) -> None:
        self._documents = documents if documents is not None else []

    def _matching(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        return [d for d in self._documents if all(d.get(k) == v for k, v in query.items())]

    def _update(self, query: dict[str, Any], changes: dict[str, Any], unset: tuple[str, ...] = ()) -> int:
        matched = self._matching(query)
        now = _now()
        for doc in matched:
            doc.update(changes)
            for key in unset:
                doc.pop(key, None)
            doc["updated_at"] = now
        return len(matched)

    async def insert_staged(self, documents: list[dict[str, Any]]) -> int:
        for doc in documents:
            self._documents.append(dict(doc))
        return len(documents)

    async def promote(self, provider_id: str, version_id: str) -> int:
        return self._update(_version_filter(provider_id, version_id), {"active": True})

    async def demote(self, provider_id: str, version_id: str) -> int:
        return self._update(_version_filter(provider_id, version_id), {"active": False})

    async def retire(self, provider_id: str, version_id: str) -> int:
        return self._update(
            _version_filter(provider_id, version_id),
            {"active": False, "archived_at": _now()},
        )

    async def restore(self, provider_id: str, version_id: str) -> int:
        return self._update(_version_filter(provider_id, version_id), {"active": True}, unset=("archived_at",))

    async def delete_staged(self, provider_id: str, version_id: str) -> int:
        doomed = self._matching(_version_filter(provider_id, version_id, active=False))
        doomed_ids = {id(d) for d in doomed}
        self._documents[:] = [d for d in self._documents if id(d) not in doomed_ids]
        return len(doomed)

    async def find(
        self,
        provider_id: str,
        *,
        version_id: str | None = None,
        active: bool | None = None,
    ) -> list[dict[str, Any]]:
        query: dict[str, Any] = {"provider_id": provider_id}
        if version_id is not None:
            query["catalog_version_id"] = version_id
        if active is not None:
            query["active"] = active
        return [dict(d) for d in self._matching(query)]


class MongoCatalogItemStore:
    """``catalog_items`` collection accessed through pymongo's async client."""

    def __init__(self, collection: Any) -> None:
        self._collection = collection

    async def ensure_indexes(self) -> None:
        await self._collection.create_index("provider_id")
        await self._collection.create_index("catalog_version_id")
        await self._collection.create_index("provider_code")
        await self._collection.create_index(
            [("provider_id", ASCENDING), ("catalog_version_id", ASCENDING), ("active", ASCENDING)]
        )

    async def insert_staged(self, documents: list[dict[str, Any]]) -> int:
        if not documents:
            return 0
        # insert_many mutates its input by adding _id
        payload = [dict(doc) for doc in documents]
        try:
            result = await self._collection.insert_many(payload, ordered=False)
        except BulkWriteError as e:
            details = e.details or {}
            if details.get("writeConcernErrors"):
                raise
            rejected = details.get("writeErrors", [])
            inserted = details.get("nInserted", len(payload) - len(rejected))
            logger.warning(f"Staged {inserted} catalog items, {len(rejected)} rejected by the store")
            return inserted
        return len(result.inserted_ids)

    async def _update_many(self, query: dict[str, Any], update: dict[str, Any]) -> int:
        result = await self._collection.update_many(query, update)
        return result.modified_count

    async def promote(self, provider_id: str, version_id: str) -> int:
        return await self._update_many(
            _version_filter(provider_id, version_id),
            {"$set": {"active": True, "updated_at": _now()}},
        )

    async def demote(self, provider_id: str, version_id: str) -> int:
        return await self._update_many(
            _version_filter(provider_id, version_id),
            {"$set": {"active": False, "updated_at": _now()}},
        )

    async def retire(self, provider_id: str, version_id: str) -> int:
        return await self._update_many(
            _version_filter(provider_id, version_id),
            {"$set": {"active": False, "updated_at": _now()}, "$currentDate": {"archived_at": True}},
        )

    async def restore(self, provider_id: str, version_id: str) -> int:
        return await self._update_many(
            _version_filter(provider_id, version_id),
            {"$set": {"active": True, "updated_at": _now()}, "$unset": {"archived_at": ""}},
        )

    async def delete_staged(self, provider_id: str, version_id: str) -> int:
        result = await self._collection.delete_many(_version_filter(provider_id, version_id, active=False))
        return result.deleted_count

    async def find(
        self,
        provider_id: str,
        *,
        version_id: str | None = None,
        active: bool | None = None,
    ) -> list[dict[str, Any]]:
        query: dict[str, Any] = {"provider_id": provider_id}
        if version_id is not None:
            query["catalog_version_id"] = version_id
        if active is not None:
            query["active"] = active
        cursor = self._collection.find(query, {"_id": False})
        return await cursor.to_list(length=None)
