"""Initialize the stores used by catalog ingestion.

Creates the relational tables, the document-store indexes and the vector
collection. Run this before starting the API server.
"""

import asyncio
import sys

from pymongo import AsyncMongoClient

from catalog.audit import MongoAuditSink
from catalog.config import settings
from catalog.db import engine
from catalog.documents import MongoCatalogItemStore
from catalog.models import Base
from catalog.vectors import VectorIndex, build_client


async def init_relational_store():
    """Create all database tables."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print(f"✓ Tables ready: {', '.join(Base.metadata.tables.keys())}")


async def init_document_store():
    """Create the catalog item and audit log indexes."""
    client = AsyncMongoClient(settings.mongo.url)
    try:
        database = client[settings.mongo.database]
        await MongoCatalogItemStore(database[settings.mongo.items_collection]).ensure_indexes()
        await MongoAuditSink(
            database[settings.mongo.audit_collection],
            ttl_days=settings.mongo.audit_ttl_days,
        ).ensure_indexes()
    finally:
        await client.close()
    print(f"✓ Indexes ready on {settings.mongo.items_collection} and {settings.mongo.audit_collection}")


async def init_vector_index():
    """Create the vector collection unless it already exists."""
    index = VectorIndex(build_client(settings.vector_index), settings.vector_index.collection)
    try:
        created = await index.ensure_collection(settings.embeddings.dim)
    finally:
        await index.close()
    state = "created" if created else "already present"
    print(f"✓ Vector collection {settings.vector_index.collection} {state} (dim={settings.embeddings.dim})")


async def main():
    """Main entry point."""
    try:
        await init_relational_store()
        await init_document_store()
        await init_vector_index()
    except Exception as e:
        print(f"\n❌ Error initializing stores: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
    print("\n✅ Store initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
