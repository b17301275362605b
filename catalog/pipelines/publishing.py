"""Publishing embedded items to the vector index and removing superseded ones."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum

from catalog.config import PipelineConfig
from catalog.pipelines.retry import Sleeper, call_with_retry
from catalog.vectors import VectorIndex, VectorRecord

logger = logging.getLogger(__name__)


class DeletionPhase(str, Enum):
    """Why a version's vectors are being removed.

    Cleanup follows a successful cutover; rollback undoes a version that
    never went live and leaves orphans behind when it fails.
    """
    CLEANUP = "cleanup"
    ROLLBACK = "rollback"


class VectorPublisher:
    def __init__(
        self,
        index: VectorIndex,
        config: PipelineConfig,
        *,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._index = index
        self._config = config
        self._sleep = sleep

    async def publish(
        self,
        provider_id: str,
        version_id: str,
        records: list[VectorRecord],
        *,
        displaced: list[VectorRecord] | None = None,
    ) -> int:
        """Upsert ``records`` in fixed-size batches, one batch at a time.

        Each batch gets its own retry budget. Raises on a non-retryable error
        or when a batch exhausts its attempts. When ``displaced`` is given,
        points of other versions about to be overwritten are copied into it
        first so a rollback can put them back.
        """
        size = self._config.vector_batch_size
        batches = [records[i:i + size] for i in range(0, len(records), size)]
        for number, batch in enumerate(batches, start=1):
            if displaced is not None:
                displaced.extend(await self._snapshot(version_id, batch))
            await call_with_retry(
                lambda batch=batch: self._index.upsert(batch),
                config=self._config,
                operation="upsert vectors",
                sleep=self._sleep,
            )
            logger.debug(f"Upserted batch {number}/{len(batches)} ({len(batch)} vectors) for version {version_id}")
        logger.info(f"Published {len(records)} vectors for provider {provider_id}, version {version_id}")
        return len(records)

    async def restore(self, version_id: str, records: list[VectorRecord]) -> bool:
        """Best-effort re-upsert of points displaced by ``version_id``. Never raises."""
        if not records:
            return True
        size = self._config.vector_batch_size
        try:
            for start in range(0, len(records), size):
                batch = records[start:start + size]
                await call_with_retry(
                    lambda batch=batch: self._index.upsert(batch),
                    config=self._config,
                    operation="restore vectors",
                    sleep=self._sleep,
                )
        except Exception as e:
            logger.critical(
                f"Failed to restore {len(records)} vectors displaced by failed catalog version {version_id}: {e}"
            )
            return False
        logger.warning(f"Restored {len(records)} vectors displaced by failed catalog version {version_id}")
        return True

    async def _snapshot(self, version_id: str, batch: list[VectorRecord]) -> list[VectorRecord]:
        existing = await call_with_retry(
            lambda: self._index.fetch([r.key for r in batch]),
            config=self._config,
            operation="read vectors",
            sleep=self._sleep,
        )
        return [r for r in existing if r.metadata.get("catalog_version_id") != version_id]

    async def delete_by_version(
        self,
        provider_id: str,
        version_id: str,
        *,
        phase: DeletionPhase = DeletionPhase.CLEANUP,
    ) -> bool:
        """Best-effort removal of every vector tagged with ``version_id``.

        Never raises. Returns False when the vectors may still be present.
        """
        try:
            await call_with_retry(
                lambda: self._index.delete_by_version(provider_id, version_id),
                config=self._config,
                operation="delete vectors",
                sleep=self._sleep,
            )
        except Exception as e:
            if phase is DeletionPhase.ROLLBACK:
                logger.critical(
                    f"Failed to roll back vectors of failed catalog version {version_id} "
                    f"(provider {provider_id}); orphaned vectors remain: {e}"
                )
            else:
                logger.error(f"Error deleting vectors of superseded catalog version {version_id}: {e}")
            return False
        logger.info(f"Deleted vectors of catalog version {version_id} ({phase.value})")
        return True
