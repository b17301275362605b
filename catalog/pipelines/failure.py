"""The single rollback primitive for a catalog version that will never go live."""
from __future__ import annotations

import logging

from catalog.audit import AuditAction, AuditTrail
from catalog.documents import CatalogItemStore
from catalog.pipelines.versions import VersionLedger

logger = logging.getLogger(__name__)


class FailureHandler:
    def __init__(self, ledger: VersionLedger, items: CatalogItemStore, audit: AuditTrail) -> None:
        self._ledger = ledger
        self._items = items
        self._audit = audit

    async def fail(self, provider_id: str, version_id: str, file_ref: str, reason: str) -> None:
        """Audit the failure, mark the version FAILED and drop its staged items.

        Safe to call more than once. A version that is still ACTIVE is left
        untouched, items included.
        """
        logger.error(f"Catalog version {version_id} for provider {provider_id} failed: {reason}")
        self._audit.record(
            AuditAction.CATALOG_PROCESSING_FAILED,
            {
                "provider_id": provider_id,
                "catalog_version_id": version_id,
                "file_path": file_ref,
                "reason": reason,
            },
        )

        if not await self._ledger.mark_failed(version_id):
            return

        deleted = await self._items.delete_staged(provider_id, version_id)
        logger.info(f"Deleted {deleted} staged items of failed catalog version {version_id}")
