"""Process-wide wiring of stores, providers and the ingestion pipeline."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pymongo import AsyncMongoClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ai.embeddings import EmbeddingProvider, OpenAIEmbeddingProvider
from .audit import AuditSink, AuditTrail, MongoAuditSink
from .config import Settings
from .db import build_engine, build_session_factory
from .documents import CatalogItemStore, MongoCatalogItemStore
from .pipelines.embedding import EmbeddingGenerator
from .pipelines.ingest import CatalogIngestionPipeline, CatalogIngestionRunner
from .pipelines.publishing import VectorPublisher
from .pipelines.validation import PreconditionValidator
from .pipelines.versions import VersionLedger
from .providers import ProviderDirectory
from .vectors import VectorIndex, build_client

logger = logging.getLogger(__name__)


@dataclass
class CatalogServices:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    providers: ProviderDirectory
    ledger: VersionLedger
    items: CatalogItemStore
    vector_index: VectorIndex
    embeddings: EmbeddingProvider
    audit: AuditTrail
    pipeline: CatalogIngestionPipeline
    runner: CatalogIngestionRunner
    mongo_client: Any = None

    def start(self) -> None:
        self.audit.start()

    async def aclose(self) -> None:
        """Drain running ingestions and the audit queue, then release clients."""
        if self.runner.pending:
            logger.info(f"Waiting for {self.runner.pending} catalog ingestions to finish")
        await self.runner.wait_idle()
        await self.audit.stop()

        close = getattr(self.embeddings, "close", None)
        if close is not None:
            await close()
        await self.vector_index.close()
        if self.mongo_client is not None:
            await self.mongo_client.close()
        await self.engine.dispose()


def wire_services(
    settings: Settings,
    *,
    engine: AsyncEngine,
    items: CatalogItemStore,
    audit_sink: AuditSink,
    vector_index: VectorIndex,
    embeddings: EmbeddingProvider,
    mongo_client: Any = None,
) -> CatalogServices:
    """Assemble the pipeline around already-built store clients."""
    session_factory = build_session_factory(engine)
    providers = ProviderDirectory(session_factory)
    ledger = VersionLedger(session_factory)
    audit = AuditTrail(audit_sink, max_queue_size=settings.ingestion.audit_queue_size)
    config = settings.ingestion.pipeline_config()

    pipeline = CatalogIngestionPipeline(
        validator=PreconditionValidator(providers),
        ledger=ledger,
        items=items,
        embedder=EmbeddingGenerator(embeddings, config),
        publisher=VectorPublisher(vector_index, config),
        audit=audit,
    )
    return CatalogServices(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        providers=providers,
        ledger=ledger,
        items=items,
        vector_index=vector_index,
        embeddings=embeddings,
        audit=audit,
        pipeline=pipeline,
        runner=CatalogIngestionRunner(pipeline, providers),
        mongo_client=mongo_client,
    )


def build_services(settings: Settings) -> CatalogServices:
    """Connect to the configured relational store, MongoDB, Qdrant and embedding provider."""
    mongo_client: AsyncMongoClient = AsyncMongoClient(settings.mongo.url, tz_aware=True)
    database = mongo_client[settings.mongo.database]

    return wire_services(
        settings,
        engine=build_engine(settings.db),
        items=MongoCatalogItemStore(database[settings.mongo.items_collection]),
        audit_sink=MongoAuditSink(
            database[settings.mongo.audit_collection],
            ttl_days=settings.mongo.audit_ttl_days,
        ),
        vector_index=VectorIndex(build_client(settings.vector_index), settings.vector_index.collection),
        embeddings=OpenAIEmbeddingProvider(settings.embeddings),
        mongo_client=mongo_client,
    )
