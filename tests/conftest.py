# Shared fixtures: SQLite relational store, in-memory documents and audit,
# qdrant in local memory mode, scripted embedding provider.

import csv
import os
from dataclasses import dataclass
from pathlib import Path

os.environ.setdefault("DB_URL", "sqlite+aiosqlite://")
os.environ.setdefault("LOG_FORMAT", "text")

import pytest
import pytest_asyncio
from qdrant_client import AsyncQdrantClient
from sqlalchemy.ext.asyncio import create_async_engine

from catalog import models
from catalog.audit import AuditTrail, InMemoryAuditSink
from catalog.config import PipelineConfig
from catalog.db import build_session_factory
from catalog.documents import InMemoryCatalogItemStore
from catalog.pipelines.embedding import EmbeddingGenerator
from catalog.pipelines.ingest import CatalogIngestionPipeline, CatalogIngestionRunner
from catalog.pipelines.publishing import VectorPublisher
from catalog.pipelines.validation import PreconditionValidator
from catalog.pipelines.versions import VersionLedger
from catalog.providers import ProviderDirectory
from catalog.vectors import VectorIndex

DIM = 8

CATALOG_COLUMNS = ["providerCode", "sku", "name", "description", "category", "tags", "brand"]


class RecordingSleep:
    """Stands in for ``asyncio.sleep`` and remembers requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class ScriptedEmbeddingProvider:
    """Returns deterministic vectors; scripted exceptions are raised in order first."""

    def __init__(self, script=None, dim: int = DIM):
        self.script = list(script or [])
        self.dim = dim
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        return [float(len(self.calls) % 5 + 1)] + [0.5] * (self.dim - 1)


def item_row(sku: str, provider_code: str = "ACME", **overrides) -> dict:
    row = {
        "providerCode": provider_code,
        "sku": sku,
        "name": f"Item {sku}",
        "description": f"Description of {sku}",
        "category": "tools",
        "tags": "hardware|garden",
        "brand": "Acme",
    }
    row.update(overrides)
    return row


def write_catalog(path: Path, rows: list[dict], columns=None) -> str:
    columns = columns or CATALOG_COLUMNS
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)
    return str(path)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def pipeline_config():
    return PipelineConfig(max_attempts=3, base_delay_seconds=0.5, vector_batch_size=100)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def provider(session_factory):
    async with session_factory() as session, session.begin():
        provider = models.Provider(code="ACME", name="Acme Supplies")
        session.add(provider)
    return provider


@pytest.fixture
def ledger(session_factory):
    return VersionLedger(session_factory)


@pytest_asyncio.fixture
async def vector_index():
    index = VectorIndex(AsyncQdrantClient(location=":memory:"), "test_catalog_items")
    await index.ensure_collection(DIM)
    yield index
    await index.close()


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest_asyncio.fixture
async def audit(audit_sink):
    trail = AuditTrail(audit_sink)
    trail.start()
    yield trail
    await trail.stop()


@dataclass
class Harness:
    pipeline: CatalogIngestionPipeline
    runner: CatalogIngestionRunner
    ledger: VersionLedger
    items: InMemoryCatalogItemStore
    vector_index: VectorIndex
    embeddings: ScriptedEmbeddingProvider
    audit: AuditTrail
    audit_sink: InMemoryAuditSink
    sleep: RecordingSleep


@pytest.fixture
def build_harness(session_factory, vector_index, audit, audit_sink, recording_sleep, pipeline_config):
    """Factory so tests can swap individual collaborators."""

    def _build(*, embeddings=None, items=None, ledger=None, index=None, config=None):
        embeddings = embeddings or ScriptedEmbeddingProvider()
        items = items if items is not None else InMemoryCatalogItemStore()
        ledger = ledger or VersionLedger(session_factory)
        index = index or vector_index
        config = config or pipeline_config
        providers = ProviderDirectory(session_factory)
        pipeline = CatalogIngestionPipeline(
            validator=PreconditionValidator(providers),
            ledger=ledger,
            items=items,
            embedder=EmbeddingGenerator(embeddings, config, sleep=recording_sleep),
            publisher=VectorPublisher(index, config, sleep=recording_sleep),
            audit=audit,
        )
        return Harness(
            pipeline=pipeline,
            runner=CatalogIngestionRunner(pipeline, providers),
            ledger=ledger,
            items=items,
            vector_index=index,
            embeddings=embeddings,
            audit=audit,
            audit_sink=audit_sink,
            sleep=recording_sleep,
        )

    return _build
