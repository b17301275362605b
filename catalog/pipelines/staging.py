"""Stage parsed catalog rows as inactive documents of a new catalog version."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from catalog.documents import CatalogItemStore
from catalog.pipelines.validation import REQUIRED_FIELDS

logger = logging.getLogger(__name__)


def split_tags(raw: str | None) -> list[str]:
    """``"a | b||c"`` -> ``["a", "b", "c"]``"""
    if not raw:
        return []
    return [tag.strip() for tag in raw.split("|") if tag.strip()]


def build_item_document(row: dict[str, Any], *, provider_id: str, version_id: str) -> dict[str, Any]:
    """Map one CSV row to a catalog item document.

    Required columns become top-level fields; every other column lands in
    ``attributes`` with string values trimmed.
    """
    attributes = {
        key: value.strip() if isinstance(value, str) else value
        for key, value in row.items()
        if key not in REQUIRED_FIELDS
    }
    now = datetime.now(timezone.utc)
    return {
        "provider_id": provider_id,
        "catalog_version_id": version_id,
        "provider_code": row["providerCode"],
        "sku": row["sku"],
        "name": row["name"],
        "description": row["description"],
        "category": row["category"],
        "active": False,
        "tags": split_tags(row.get("tags")),
        "attributes": attributes,
        "created_at": now,
        "updated_at": now,
    }


async def stage_items(
    store: CatalogItemStore,
    items: list[dict[str, Any]],
    *,
    provider_id: str,
    version_id: str,
) -> int:
    """Bulk-insert the version's items unordered; returns how many were stored."""
    documents = [build_item_document(row, provider_id=provider_id, version_id=version_id) for row in items]
    inserted = await store.insert_staged(documents)
    logger.info(f"Staged {inserted}/{len(documents)} items for catalog version {version_id}")
    return inserted
