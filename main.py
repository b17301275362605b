"""Main entry point for running the FastAPI application with auto-reload."""
import uvicorn

from catalog.config import settings
from catalog.logging_config import setup_logging

if __name__ == "__main__":
    setup_logging()
    print(f"Starting {settings.app_name} v{settings.version}")
    print(f"Debug mode: {settings.debug}")
    print(f"Database: {settings.db.url.split('@')[-1] if '@' in settings.db.url else 'SQLite'}")
    print(f"Document store: {settings.mongo.url.split('@')[-1]}/{settings.mongo.database}")
    print(f"Vector index: {settings.vector_index.location or settings.vector_index.url}")
    print(f"Auto-reload: {'Enabled' if settings.debug else 'Disabled'}")
    print("-" * 50)

    uvicorn.run(
        "catalog.api:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        reload_dirs=["catalog", "ai"] if settings.debug else None,
        reload_includes=["*.py"] if settings.debug else None,
        log_level=settings.logging.level.lower(),
    )
