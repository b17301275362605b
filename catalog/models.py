"""Core SQLAlchemy models (2.x style) for the relational metadata store.

Providers are owned by the provider-management side of the backend; this
package only reads them. Catalog versions are the authoritative record of
which catalog snapshot is live for a provider.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .errors import InvalidStatusTransition


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class CatalogVersionStatus(str, Enum):
    """Lifecycle of a catalog version.

    PROCESSING -> ACTIVE | FAILED, and ACTIVE -> ARCHIVED once a newer
    version is activated. ARCHIVED and FAILED are terminal.
    """
    PROCESSING = "PROCESSING"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self]


# Every status must appear as a key; tests enforce this.
TRANSITIONS: dict[CatalogVersionStatus, frozenset[CatalogVersionStatus]] = {
    CatalogVersionStatus.PROCESSING: frozenset({CatalogVersionStatus.ACTIVE, CatalogVersionStatus.FAILED}),
    CatalogVersionStatus.ACTIVE: frozenset({CatalogVersionStatus.ARCHIVED}),
    CatalogVersionStatus.ARCHIVED: frozenset(),
    CatalogVersionStatus.FAILED: frozenset(),
}

# Only used when rolling back a cutover whose commit already happened.
COMPENSATING_TRANSITIONS: dict[CatalogVersionStatus, frozenset[CatalogVersionStatus]] = {
    CatalogVersionStatus.PROCESSING: frozenset(),
    CatalogVersionStatus.ACTIVE: frozenset({CatalogVersionStatus.FAILED}),
    CatalogVersionStatus.ARCHIVED: frozenset({CatalogVersionStatus.ACTIVE}),
    CatalogVersionStatus.FAILED: frozenset(),
}


class Provider(Base):
    """Catalog providers (read-only here)."""
    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    catalog_versions: Mapped[list[CatalogVersion]] = relationship("CatalogVersion", back_populates="provider")


class CatalogVersion(Base):
    """One numbered snapshot of a provider's catalog."""
    __tablename__ = "catalog_versions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    provider_id: Mapped[str] = mapped_column(
        ForeignKey("providers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    original_file: Mapped[str] = mapped_column(String(1024), nullable=False)
    status: Mapped[CatalogVersionStatus] = mapped_column(
        SAEnum(CatalogVersionStatus, native_enum=False, length=20),
        default=CatalogVersionStatus.PROCESSING,
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationship
    provider: Mapped[Provider] = relationship("Provider", back_populates="catalog_versions")

    __table_args__ = (
        UniqueConstraint("provider_id", "version_number", name="uq_catalog_versions_provider_number"),
        Index("ix_catalog_versions_provider_status", "provider_id", "status"),
    )

    def transition_to(self, target: CatalogVersionStatus, *, compensating: bool = False) -> None:
        """Move to ``target`` or raise ``InvalidStatusTransition``."""
        table = COMPENSATING_TRANSITIONS if compensating else TRANSITIONS
        if target not in table[self.status]:
            raise InvalidStatusTransition(self.id, self.status.value, target.value)
        self.status = target
