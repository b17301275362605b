"""FastAPI app with health, catalog upload and version listing endpoints.

Uploads are accepted synchronously and ingested in the background; clients
follow progress through the version listing.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from .config import get_settings
from .errors import CatalogIngestionError
from .logging_config import setup_logging
from .models import CatalogVersionStatus
from .pipelines.ingest import CatalogUpload
from .services import CatalogServices, build_services

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".csv"}


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class CatalogUploadResponse(BaseModel):
    """Accepted catalog upload."""
    status: str
    provider_id: str
    file_path: str
    message: str


class CatalogVersionDTO(BaseModel):
    """Catalog version data transfer object."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_id: str
    version_number: int
    status: CatalogVersionStatus
    original_file: str
    created_at: datetime
    updated_at: datetime


class CatalogVersionListResponse(BaseModel):
    provider_id: str
    versions: list[CatalogVersionDTO]


def get_services(request: Request) -> CatalogServices:
    return request.app.state.services


def _store_upload(directory: Path, provider_id: str, filename: str, content: bytes) -> Path:
    target_dir = directory / provider_id
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{uuid.uuid4().hex}_{Path(filename).name}"
    target.write_bytes(content)
    return target


def create_app(services: CatalogServices | None = None) -> FastAPI:
    """Build the API; ``services`` is built from settings at startup when omitted."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown logic."""
        # Startup
        setup_logging()
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(get_settings())
        app.state.services.start()
        logger.info("Application starting up")

        yield

        # Shutdown
        logger.info("Application shutting down")
        await app.state.services.aclose()

    settings = services.settings if services is not None else get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        description="Provider catalog ingestion with versioned cutover",
        lifespan=lifespan,
    )
    app.state.services = services

    # Exception handlers
    @app.exception_handler(CatalogIngestionError)
    async def ingestion_error_handler(request, exc: CatalogIngestionError):
        """Handle ingestion errors that surface synchronously."""
        logger.error(f"Catalog ingestion error: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="catalog_ingestion_error",
                detail=str(exc),
            ).model_dump(),
        )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="ok", version=settings.version)

    @app.post(
        "/providers/{provider_id}/catalog",
        response_model=CatalogUploadResponse,
        status_code=status.HTTP_202_ACCEPTED,
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 413: {"model": ErrorResponse}},
    )
    async def upload_catalog(
        provider_id: str,
        file: UploadFile = File(..., description="Provider catalog CSV"),
        x_user_id: str | None = Header(default=None),
        services: CatalogServices = Depends(get_services),
    ) -> CatalogUploadResponse:
        """Accept a catalog file and start its ingestion in the background.

        The provider must exist. The file is checked for type and size,
        stored under the resolved provider id, and handed to the ingestion
        runner. Validation of its contents happens in the background run.
        """
        upload_settings = services.settings.uploads
        try:
            if not file.filename:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="No file uploaded",
                )

            file_ext = Path(file.filename).suffix.lower()
            if file_ext not in ALLOWED_EXTENSIONS:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Unsupported file type. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}",
                )
            if file.content_type not in upload_settings.allowed_mime_types:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Unsupported content type {file.content_type}. Only CSV files are allowed",
                )

            provider = await services.providers.get_by_id_or_code(provider_id)
            if provider is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")

            limit = upload_settings.max_size_bytes
            if file.size is not None and file.size > limit:
                raise HTTPException(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=f"File exceeds the {limit} byte limit",
                )
            # One byte past the limit is enough to tell an oversized body apart
            content = await file.read(limit + 1)
            if len(content) > limit:
                raise HTTPException(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=f"File exceeds the {limit} byte limit",
                )

            stored = await asyncio.to_thread(
                _store_upload,
                Path(upload_settings.directory),
                provider.id,
                file.filename,
                content,
            )
        finally:
            await file.close()

        logger.info(f"Accepted catalog upload {stored} for provider {provider.id} ({len(content)} bytes)")
        services.runner.submit(
            CatalogUpload(provider_id=provider.id, file_ref=str(stored), uploader_user_id=x_user_id)
        )
        return CatalogUploadResponse(
            status="accepted",
            provider_id=provider.id,
            file_path=str(stored),
            message="Catalog upload accepted for processing",
        )

    @app.get("/providers/{provider_id}/catalog/versions", response_model=CatalogVersionListResponse)
    async def list_catalog_versions(
        provider_id: str,
        services: CatalogServices = Depends(get_services),
    ) -> CatalogVersionListResponse:
        """List a provider's catalog versions, newest first."""
        provider = await services.providers.get_by_id_or_code(provider_id)
        if provider is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
        versions = await services.ledger.list_versions(provider.id)
        return CatalogVersionListResponse(
            provider_id=provider.id,
            versions=[CatalogVersionDTO.model_validate(v) for v in versions],
        )

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "app": settings.app_name,
            "version": settings.version,
            "endpoints": {
                "health": "/health",
                "upload_catalog": "/providers/{provider_id}/catalog",
                "list_versions": "/providers/{provider_id}/catalog/versions",
                "docs": "/docs",
            },
        }

    return app


app = create_app()
