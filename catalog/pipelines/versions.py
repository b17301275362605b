"""Catalog version ledger over the relational store.

Owns every status change of a ``CatalogVersion``. The two multi-statement
operations (opening a version, activating one) each run in a single
transaction; activation is the commit point of a cutover.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog import models
from catalog.errors import InvalidStatusTransition, VersionConflictError
from catalog.models import CatalogVersionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Activation:
    """Outcome of the activation commit."""
    version_id: str
    previous_version_id: str | None


def _conflict_reason(error: IntegrityError) -> str:
    detail = str(error.orig).lower()
    if "foreign key" in detail:
        return "Foreign key constraint failed"
    return "Duplicate version number"


class VersionLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def open_version(self, provider_id: str, file_ref: str) -> models.CatalogVersion:
        """Insert a PROCESSING version numbered after every existing one.

        The provider row is locked for the duration of the transaction so
        concurrent uploads for one provider queue up instead of racing for
        the same number.

        Raises:
            VersionConflictError: If the provider is missing or the number is taken
        """
        try:
            async with self._session_factory() as session, session.begin():
                provider = (
                    await session.execute(
                        select(models.Provider)
                        .where(models.Provider.id == provider_id)
                        .with_for_update()
                    )
                ).scalar_one_or_none()
                if provider is None:
                    raise VersionConflictError("Foreign key constraint failed", provider_id=provider_id)

                version = models.CatalogVersion(
                    provider_id=provider_id,
                    version_number=await self._next_number(session, provider_id),
                    original_file=file_ref,
                    status=CatalogVersionStatus.PROCESSING,
                )
                session.add(version)
                await session.flush()
        except IntegrityError as e:
            reason = _conflict_reason(e)
            logger.error(f"Could not open catalog version for provider {provider_id}: {reason}")
            raise VersionConflictError(reason, provider_id=provider_id) from e

        logger.info(
            f"Opened catalog version {version.version_number} ({version.id}) for provider {provider_id}"
        )
        return version

    async def activate(self, version_id: str) -> Activation:
        """Archive the provider's current ACTIVE version and activate ``version_id``.

        This is the single commit point of a cutover.
        """
        async with self._session_factory() as session, session.begin():
            await self._lock_provider_of(session, version_id)
            version = await self._load_for_update(session, version_id)
            current = (
                await session.execute(
                    select(models.CatalogVersion)
                    .where(
                        models.CatalogVersion.provider_id == version.provider_id,
                        models.CatalogVersion.status == CatalogVersionStatus.ACTIVE,
                    )
                    .order_by(models.CatalogVersion.created_at.desc())
                    .with_for_update()
                )
            ).scalars().all()

            previous_id = None
            for other in current:
                if other.id != version.id:
                    other.transition_to(CatalogVersionStatus.ARCHIVED)
                    previous_id = previous_id or other.id
            version.transition_to(CatalogVersionStatus.ACTIVE)

        logger.info(f"Catalog version {version_id} is now ACTIVE (previous: {previous_id})")
        return Activation(version_id=version_id, previous_version_id=previous_id)

    async def revert_activation(self, activation: Activation) -> None:
        """Undo ``activate``: the new version fails, the previous one is live again."""
        async with self._session_factory() as session, session.begin():
            await self._lock_provider_of(session, activation.version_id)
            version = await self._load_for_update(session, activation.version_id)
            if version.status == CatalogVersionStatus.ACTIVE:
                version.transition_to(CatalogVersionStatus.FAILED, compensating=True)
            if activation.previous_version_id:
                previous = await self._load_for_update(session, activation.previous_version_id)
                if previous.status == CatalogVersionStatus.ARCHIVED:
                    previous.transition_to(CatalogVersionStatus.ACTIVE, compensating=True)

        logger.warning(
            f"Reverted activation of catalog version {activation.version_id}; "
            f"restored {activation.previous_version_id}"
        )

    async def mark_failed(self, version_id: str) -> bool:
        """Set a version FAILED. Idempotent; refuses to touch ACTIVE or ARCHIVED versions.

        Returns:
            True when the version is FAILED afterwards
        """
        async with self._session_factory() as session, session.begin():
            version = await self._load_for_update(session, version_id)
            if version.status == CatalogVersionStatus.FAILED:
                return True
            try:
                version.transition_to(CatalogVersionStatus.FAILED)
            except InvalidStatusTransition as e:
                logger.critical(f"Refusing to fail catalog version: {e}")
                return False
        logger.info(f"Catalog version {version_id} marked FAILED")
        return True

    async def get(self, version_id: str) -> models.CatalogVersion | None:
        async with self._session_factory() as session:
            return await session.get(models.CatalogVersion, version_id)

    async def list_versions(self, provider_id: str) -> list[models.CatalogVersion]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(models.CatalogVersion)
                .where(models.CatalogVersion.provider_id == provider_id)
                .order_by(models.CatalogVersion.version_number.desc())
            )
            return list(result.scalars().all())

    @staticmethod
    async def _next_number(session: AsyncSession, provider_id: str) -> int:
        last_number = (
            await session.execute(
                select(func.max(models.CatalogVersion.version_number)).where(
                    models.CatalogVersion.provider_id == provider_id
                )
            )
        ).scalar_one_or_none()
        return (last_number or 0) + 1

    @staticmethod
    async def _lock_provider_of(session: AsyncSession, version_id: str) -> None:
        """Take the provider row lock before touching any of its versions."""
        provider_id = (
            await session.execute(
                select(models.CatalogVersion.provider_id).where(models.CatalogVersion.id == version_id)
            )
        ).scalar_one_or_none()
        if provider_id is None:
            raise LookupError(f"Catalog version {version_id} does not exist")
        await session.execute(
            select(models.Provider.id).where(models.Provider.id == provider_id).with_for_update()
        )

    @staticmethod
    async def _load_for_update(session: AsyncSession, version_id: str) -> models.CatalogVersion:
        version = (
            await session.execute(
                select(models.CatalogVersion)
                .where(models.CatalogVersion.id == version_id)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if version is None:
            raise LookupError(f"Catalog version {version_id} does not exist")
        return version
