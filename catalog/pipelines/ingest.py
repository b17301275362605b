"""Catalog version ingestion: validate, stage, embed, publish, cut over.

Runs detached from the upload request. Its outcome is observable only
through the catalog version's status and the audit trail.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum

from catalog.audit import AuditAction, AuditTrail
from catalog.documents import CatalogItemStore
from catalog.errors import PreconditionError, VersionConflictError
from catalog.pipelines.cutover import CutoverCoordinator, CutoverState
from catalog.pipelines.embedding import EmbeddingGenerator
from catalog.pipelines.failure import FailureHandler
from catalog.pipelines.publishing import DeletionPhase, VectorPublisher
from catalog.pipelines.saga import SagaAborted, SagaRunner, SagaStep
from catalog.pipelines.staging import stage_items
from catalog.pipelines.validation import PreconditionValidator
from catalog.pipelines.versions import VersionLedger
from catalog.providers import ProviderDirectory
from catalog.vectors import VectorRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogUpload:
    """An accepted catalog file waiting to be ingested."""
    provider_id: str
    file_ref: str
    uploader_user_id: str | None = None


class IngestionStatus(str, Enum):
    REJECTED = "rejected"
    FAILED = "failed"
    ACTIVE = "active"


@dataclass
class IngestionOutcome:
    status: IngestionStatus
    reason: str | None = None
    version_id: str | None = None
    version_number: int | None = None
    previous_version_id: str | None = None


class CatalogIngestionPipeline:
    """Coordinates the three stores for one catalog upload.

    Everything after version creation runs as a saga; any step failure
    compensates what already happened and then hands the version to the
    failure handler.
    """

    def __init__(
        self,
        *,
        validator: PreconditionValidator,
        ledger: VersionLedger,
        items: CatalogItemStore,
        embedder: EmbeddingGenerator,
        publisher: VectorPublisher,
        audit: AuditTrail,
    ) -> None:
        self._validator = validator
        self._ledger = ledger
        self._items = items
        self._embedder = embedder
        self._publisher = publisher
        self._audit = audit
        self._cutover = CutoverCoordinator(ledger, items, publisher)
        self._failures = FailureHandler(ledger, items, audit)

    async def process_catalog(self, upload: CatalogUpload) -> IngestionOutcome:
        logger.info(f"Processing catalog {upload.file_ref} for provider {upload.provider_id}")

        try:
            validated = await self._validator.validate(upload.provider_id, upload.file_ref)
            version = await self._ledger.open_version(validated.provider.id, upload.file_ref)
        except (PreconditionError, VersionConflictError) as e:
            return self._reject(upload, e.reason)

        provider_id = validated.provider.id
        items = validated.items
        state = CutoverState(provider_id=provider_id, version_id=version.id)
        saga = SagaRunner(name=f"catalog-version-{version.id}")

        saga.add_step(
            SagaStep(
                "stage_items",
                lambda: stage_items(self._items, items, provider_id=provider_id, version_id=version.id),
                failure_reason="Error saving items",
            )
        )
        saga.add_step(
            SagaStep(
                "embed_items",
                lambda: self._embedder.embed_all(items, provider_id=provider_id, version_id=version.id),
            )
        )
        displaced: list[VectorRecord] = []

        async def unpublish() -> None:
            await self._publisher.delete_by_version(provider_id, version.id, phase=DeletionPhase.ROLLBACK)
            await self._publisher.restore(version.id, displaced)

        saga.add_step(
            SagaStep(
                "publish_vectors",
                lambda: self._publisher.publish(
                    provider_id, version.id, saga.results["embed_items"], displaced=displaced
                ),
                unpublish,
            )
        )
        for step in self._cutover.steps(state):
            saga.add_step(step)

        try:
            await saga.run()
        except SagaAborted as e:
            await self._failures.fail(provider_id, version.id, upload.file_ref, e.reason)
            return IngestionOutcome(
                status=IngestionStatus.FAILED,
                reason=e.reason,
                version_id=version.id,
                version_number=version.version_number,
            )

        self._audit.record(
            AuditAction.CATALOG_PROCESSING_SUCCEEDED,
            {
                "provider_id": provider_id,
                "catalog_version_id": version.id,
                "file_path": upload.file_ref,
                "uploader_user_id": upload.uploader_user_id,
            },
            user_id=upload.uploader_user_id,
        )
        logger.info(
            f"Catalog version {version.version_number} ({version.id}) is live for provider {provider_id}"
        )
        return IngestionOutcome(
            status=IngestionStatus.ACTIVE,
            version_id=version.id,
            version_number=version.version_number,
            previous_version_id=state.previous_version_id,
        )

    def _reject(self, upload: CatalogUpload, reason: str) -> IngestionOutcome:
        logger.warning(f"Rejected catalog {upload.file_ref} for provider {upload.provider_id}: {reason}")
        self._audit.record(
            AuditAction.CATALOG_PROCESSING_FAILED,
            {"provider_id": upload.provider_id, "file_path": upload.file_ref, "reason": reason},
        )
        return IngestionOutcome(status=IngestionStatus.REJECTED, reason=reason)


class CatalogIngestionRunner:
    """Runs each upload as its own background task.

    Runs for the same provider are serialized by a per-provider lock, so a
    second upload waits for the first to reach ACTIVE or FAILED before it
    opens its version. The lock is keyed by the resolved provider id, so an
    upload addressed by code queues behind one addressed by id. Runs for
    different providers proceed concurrently.
    """

    def __init__(self, pipeline: CatalogIngestionPipeline, providers: ProviderDirectory | None = None) -> None:
        self._pipeline = pipeline
        self._providers = providers
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._tasks: set[asyncio.Task[IngestionOutcome]] = set()

    def submit(self, upload: CatalogUpload) -> asyncio.Task[IngestionOutcome]:
        task = asyncio.create_task(self._run(upload), name=f"catalog-ingest-{upload.provider_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def locked_providers(self) -> set[str]:
        """Provider ids with a run holding or waiting on their lock."""
        return set(self._locks)

    async def wait_idle(self) -> None:
        """Wait for every submitted run; there is no cancellation."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, upload: CatalogUpload) -> IngestionOutcome:
        try:
            key = await self._lock_key(upload)
            async with self._provider_lock(key):
                return await self._pipeline.process_catalog(upload)
        except Exception as e:
            logger.exception(f"Catalog ingestion for provider {upload.provider_id} crashed: {e}")
            return IngestionOutcome(status=IngestionStatus.FAILED, reason=str(e))

    async def _lock_key(self, upload: CatalogUpload) -> str:
        if self._providers is None:
            return upload.provider_id
        provider = await self._providers.get_by_id_or_code(upload.provider_id)
        # Unknown providers are rejected by validation; the raw key is enough
        return provider.id if provider is not None else upload.provider_id

    @asynccontextmanager
    async def _provider_lock(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]
