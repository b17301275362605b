"""Provider directory lookups used by the ingestion pipeline."""
from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models


class ProviderDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_by_id_or_code(self, key: str) -> models.Provider | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(models.Provider).where(
                    or_(models.Provider.id == key, models.Provider.code == key)
                )
            )
            return result.scalars().first()
