import asyncio

import pytest

from catalog.audit import AuditAction
from catalog.config import PipelineConfig
from catalog.documents import InMemoryCatalogItemStore
from catalog.errors import EmbeddingGenerationError, VectorIndexError
from catalog.models import CatalogVersionStatus
from catalog.pipelines.ingest import CatalogUpload, IngestionStatus
from catalog.vectors import record_key
from conftest import ScriptedEmbeddingProvider, item_row, write_catalog


class _FailingRetireStore(InMemoryCatalogItemStore):
    async def retire(self, provider_id, version_id):
        raise RuntimeError("document store unavailable")


class _FailingInsertStore(InMemoryCatalogItemStore):
    async def insert_staged(self, documents):
        raise RuntimeError("connection refused")


def _upload(provider, path, user_id="user-1"):
    return CatalogUpload(provider_id=provider.id, file_ref=path, uploader_user_id=user_id)


async def _ingest_live_version(harness, provider, tmp_path, skus=("OLD-1", "OLD-2")):
    path = write_catalog(tmp_path / "previous.csv", [item_row(sku) for sku in skus])
    outcome = await harness.pipeline.process_catalog(_upload(provider, path))
    assert outcome.status is IngestionStatus.ACTIVE
    return outcome


@pytest.mark.asyncio
async def test_precondition_failure_creates_no_version(build_harness, provider, tmp_path):
    harness = build_harness()
    path = write_catalog(tmp_path / "catalog.csv", [item_row("SKU-1"), item_row("")])

    outcome = await harness.pipeline.process_catalog(_upload(provider, path))
    await harness.audit.flush()

    assert outcome.status is IngestionStatus.REJECTED
    assert outcome.reason == "Missing required field sku in item with SKU"
    assert await harness.ledger.list_versions(provider.id) == []
    assert harness.embeddings.calls == []
    [entry] = harness.audit_sink.for_action(AuditAction.CATALOG_PROCESSING_FAILED)
    assert entry["metadata"] == {
        "provider_id": provider.id,
        "file_path": path,
        "reason": "Missing required field sku in item with SKU",
    }


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected(build_harness, tmp_path):
    harness = build_harness()
    path = write_catalog(tmp_path / "catalog.csv", [item_row("SKU-1")])

    outcome = await harness.pipeline.process_catalog(CatalogUpload(provider_id="ghost", file_ref=path))
    await harness.audit.flush()

    assert outcome.reason == "Provider not found"
    assert harness.audit_sink.for_action(AuditAction.CATALOG_PROCESSING_FAILED)[0]["metadata"]["reason"] == (
        "Provider not found"
    )


@pytest.mark.asyncio
async def test_foreign_provider_code_is_rejected(build_harness, provider, tmp_path):
    harness = build_harness()
    path = write_catalog(tmp_path / "catalog.csv", [item_row("SKU-1", provider_code="OTHER")])

    outcome = await harness.pipeline.process_catalog(_upload(provider, path))

    assert outcome.status is IngestionStatus.REJECTED
    assert outcome.reason == "Invalid provider code OTHER in item with SKU SKU-1. Expected provider code: ACME"


@pytest.mark.asyncio
async def test_successful_upload_cuts_over_from_previous_version(build_harness, provider, tmp_path):
    harness = build_harness()
    previous = await _ingest_live_version(harness, provider, tmp_path)
    path = write_catalog(tmp_path / "catalog.csv", [item_row("SKU-1"), item_row("SKU-2")])

    outcome = await harness.pipeline.process_catalog(_upload(provider, path))
    await harness.audit.flush()

    assert outcome.status is IngestionStatus.ACTIVE
    assert outcome.version_number == 2
    assert outcome.previous_version_id == previous.version_id
    assert (await harness.ledger.get(outcome.version_id)).status == CatalogVersionStatus.ACTIVE
    assert (await harness.ledger.get(previous.version_id)).status == CatalogVersionStatus.ARCHIVED

    live = await harness.items.find(provider.id, active=True)
    assert {d["sku"] for d in live} == {"SKU-1", "SKU-2"}
    assert all(d["catalog_version_id"] == outcome.version_id for d in live)
    retired = await harness.items.find(provider.id, version_id=previous.version_id)
    assert all(d["active"] is False and "archived_at" in d for d in retired)

    assert await harness.vector_index.count_by_version(provider.id, outcome.version_id) == 2
    assert await harness.vector_index.count_by_version(provider.id, previous.version_id) == 0

    succeeded = harness.audit_sink.for_action(AuditAction.CATALOG_PROCESSING_SUCCEEDED)
    assert succeeded[-1]["user_id"] == "user-1"
    assert succeeded[-1]["metadata"]["provider_id"] == provider.id
    assert succeeded[-1]["metadata"]["file_path"] == path


@pytest.mark.asyncio
async def test_first_upload_has_no_previous_version(build_harness, provider, tmp_path):
    harness = build_harness()

    outcome = await _ingest_live_version(harness, provider, tmp_path)

    assert outcome.version_number == 1
    assert outcome.previous_version_id is None


@pytest.mark.asyncio
async def test_non_retryable_embedding_failure_fails_version(build_harness, provider, tmp_path):
    harness = build_harness()
    previous = await _ingest_live_version(harness, provider, tmp_path)
    harness.embeddings.script = [EmbeddingGenerationError("Invalid API key", status_code=401)]
    path = write_catalog(tmp_path / "catalog.csv", [item_row("SKU-1"), item_row("SKU-2")])

    outcome = await harness.pipeline.process_catalog(_upload(provider, path))
    await harness.audit.flush()

    assert outcome.status is IngestionStatus.FAILED
    assert outcome.reason == "Non-retryable embedding error: Invalid API key"
    assert (await harness.ledger.get(outcome.version_id)).status == CatalogVersionStatus.FAILED
    assert (await harness.ledger.get(previous.version_id)).status == CatalogVersionStatus.ACTIVE
    assert harness.sleep.delays == []

    assert await harness.items.find(provider.id, version_id=outcome.version_id) == []
    assert len(await harness.items.find(provider.id, active=True)) == 2
    assert await harness.vector_index.count_by_version(provider.id, outcome.version_id) == 0
    assert await harness.vector_index.count_by_version(provider.id, previous.version_id) == 2

    failed = harness.audit_sink.for_action(AuditAction.CATALOG_PROCESSING_FAILED)
    assert failed[-1]["metadata"]["catalog_version_id"] == outcome.version_id
    assert failed[-1]["metadata"]["reason"] == "Non-retryable embedding error: Invalid API key"


@pytest.mark.asyncio
async def test_exhausted_embedding_retries_fail_version(build_harness, provider, tmp_path):
    embeddings = ScriptedEmbeddingProvider(
        [EmbeddingGenerationError("overloaded", status_code=503) for _ in range(3)]
    )
    harness = build_harness(embeddings=embeddings)
    path = write_catalog(tmp_path / "catalog.csv", [item_row("SKU-1")])

    outcome = await harness.pipeline.process_catalog(_upload(provider, path))

    assert outcome.status is IngestionStatus.FAILED
    assert outcome.reason == "Failed to generate embeddings after 3 attempts. Error: overloaded"
    assert harness.sleep.delays == pytest.approx([0.5, 1.0])


@pytest.mark.asyncio
async def test_staging_failure_fails_version(build_harness, provider, tmp_path):
    harness = build_harness(items=_FailingInsertStore())
    path = write_catalog(tmp_path / "catalog.csv", [item_row("SKU-1")])

    outcome = await harness.pipeline.process_catalog(_upload(provider, path))

    assert outcome.status is IngestionStatus.FAILED
    assert outcome.reason == "Error saving items. Error: connection refused"
    assert harness.embeddings.calls == []
    assert (await harness.ledger.get(outcome.version_id)).status == CatalogVersionStatus.FAILED


@pytest.mark.asyncio
async def test_cutover_failure_after_commit_restores_previous_version(build_harness, provider, tmp_path):
    harness = build_harness(items=_FailingRetireStore())
    previous = await _ingest_live_version(harness, provider, tmp_path)
    path = write_catalog(tmp_path / "catalog.csv", [item_row("NEW-1"), item_row("NEW-2")])

    outcome = await harness.pipeline.process_catalog(_upload(provider, path))

    assert outcome.status is IngestionStatus.FAILED
    assert outcome.reason == (
        "Failed to finalize catalog version activation. Error: document store unavailable"
    )
    assert (await harness.ledger.get(outcome.version_id)).status == CatalogVersionStatus.FAILED
    assert (await harness.ledger.get(previous.version_id)).status == CatalogVersionStatus.ACTIVE

    assert await harness.items.find(provider.id, version_id=outcome.version_id) == []
    live = await harness.items.find(provider.id, active=True)
    assert {d["sku"] for d in live} == {"OLD-1", "OLD-2"}

    assert await harness.vector_index.count_by_version(provider.id, outcome.version_id) == 0
    assert await harness.vector_index.count_by_version(provider.id, previous.version_id) == 2


@pytest.mark.asyncio
async def test_runner_serializes_uploads_for_one_provider(build_harness, provider, tmp_path):
    harness = build_harness()
    first = write_catalog(tmp_path / "first.csv", [item_row("SKU-1")])
    second = write_catalog(tmp_path / "second.csv", [item_row("SKU-1"), item_row("SKU-2")])

    tasks = [
        harness.runner.submit(_upload(provider, first)),
        harness.runner.submit(_upload(provider, second)),
    ]
    await harness.runner.wait_idle()
    outcomes = [task.result() for task in tasks]

    assert [o.status for o in outcomes] == [IngestionStatus.ACTIVE, IngestionStatus.ACTIVE]
    assert [o.version_number for o in outcomes] == [1, 2]
    statuses = {v.version_number: v.status for v in await harness.ledger.list_versions(provider.id)}
    assert statuses == {2: CatalogVersionStatus.ACTIVE, 1: CatalogVersionStatus.ARCHIVED}
    assert harness.runner.pending == 0


@pytest.mark.asyncio
async def test_runner_reports_unexpected_errors_as_failed(build_harness, provider, tmp_path):
    harness = build_harness()

    async def explode(upload):
        raise RuntimeError("database unreachable")

    harness.pipeline.process_catalog = explode
    task = harness.runner.submit(_upload(provider, str(tmp_path / "catalog.csv")))
    outcome = await asyncio.wait_for(task, timeout=5)

    assert outcome.status is IngestionStatus.FAILED
    assert outcome.reason == "database unreachable"


class _SlowFirstPromoteStore(InMemoryCatalogItemStore):
    def __init__(self):
        super().__init__()
        self.delayed = False

    async def promote(self, provider_id, version_id):
        if not self.delayed:
            self.delayed = True
            await asyncio.sleep(0.3)
        return await super().promote(provider_id, version_id)


class _FlakyUpsertIndex:
    """Once armed, lets ``allowed`` upserts through and rejects the next one."""

    def __init__(self, inner):
        self._inner = inner
        self.allowed = None

    async def upsert(self, records):
        if self.allowed is not None:
            if self.allowed == 0:
                self.allowed = None
                raise VectorIndexError("bad vector", status_code=400, operation="upsert")
            self.allowed -= 1
        await self._inner.upsert(records)

    async def fetch(self, keys):
        return await self._inner.fetch(keys)

    async def delete_by_version(self, provider_id, version_id):
        await self._inner.delete_by_version(provider_id, version_id)

    async def count_by_version(self, provider_id, version_id):
        return await self._inner.count_by_version(provider_id, version_id)


@pytest.mark.asyncio
async def test_runner_serializes_uploads_addressed_by_id_and_code(build_harness, provider, tmp_path):
    harness = build_harness(items=_SlowFirstPromoteStore())
    first = write_catalog(tmp_path / "first.csv", [item_row("A-1")])
    second = write_catalog(tmp_path / "second.csv", [item_row("B-1")])

    by_id = harness.runner.submit(_upload(provider, first))
    await asyncio.sleep(0.1)
    by_code = harness.runner.submit(CatalogUpload(provider_id=provider.code, file_ref=second))
    await harness.runner.wait_idle()

    outcomes = [by_id.result(), by_code.result()]
    assert [o.status for o in outcomes] == [IngestionStatus.ACTIVE, IngestionStatus.ACTIVE]
    assert [o.version_number for o in outcomes] == [1, 2]
    assert (await harness.ledger.get(outcomes[0].version_id)).status == CatalogVersionStatus.ARCHIVED
    assert (await harness.ledger.get(outcomes[1].version_id)).status == CatalogVersionStatus.ACTIVE

    live = await harness.items.find(provider.id, active=True)
    assert {d["sku"] for d in live} == {"B-1"}
    assert all(d["catalog_version_id"] == outcomes[1].version_id for d in live)
    assert harness.runner.locked_providers == set()


@pytest.mark.asyncio
async def test_vector_failure_on_later_batch_rolls_back_and_keeps_previous_version(
    build_harness, provider, vector_index, tmp_path
):
    index = _FlakyUpsertIndex(vector_index)
    harness = build_harness(
        index=index,
        config=PipelineConfig(max_attempts=3, base_delay_seconds=0.5, vector_batch_size=1),
    )
    previous = await _ingest_live_version(harness, provider, tmp_path)
    index.allowed = 1
    path = write_catalog(tmp_path / "catalog.csv", [item_row("OLD-1"), item_row("NEW-2")])

    outcome = await harness.pipeline.process_catalog(_upload(provider, path))

    assert outcome.status is IngestionStatus.FAILED
    assert outcome.reason == "Non-retryable vector index error: bad vector"
    assert (await harness.ledger.get(outcome.version_id)).status == CatalogVersionStatus.FAILED
    assert (await harness.ledger.get(previous.version_id)).status == CatalogVersionStatus.ACTIVE

    assert await vector_index.count_by_version(provider.id, outcome.version_id) == 0
    assert await vector_index.count_by_version(provider.id, previous.version_id) == 2
    [shared] = await vector_index.fetch([record_key(provider.id, "OLD-1")])
    assert shared.metadata["catalog_version_id"] == previous.version_id

    assert await harness.items.find(provider.id, version_id=outcome.version_id) == []
    live = await harness.items.find(provider.id, active=True)
    assert {d["sku"] for d in live} == {"OLD-1", "OLD-2"}
    assert all(d["catalog_version_id"] == previous.version_id for d in live)
