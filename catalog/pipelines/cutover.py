"""Cutover from the provider's live catalog version to a freshly published one.

Order matters for zero downtime: the relational commit comes first, then the
new items are promoted, then the old items are retired, and only then are
the old vectors deleted. Readers always see at least one complete version.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from catalog.documents import CatalogItemStore
from catalog.pipelines.publishing import DeletionPhase, VectorPublisher
from catalog.pipelines.saga import SagaStep
from catalog.pipelines.versions import Activation, VersionLedger

logger = logging.getLogger(__name__)

ACTIVATION_FAILURE = "Failed to finalize catalog version activation"


@dataclass
class CutoverState:
    provider_id: str
    version_id: str
    activation: Activation | None = None

    @property
    def previous_version_id(self) -> str | None:
        return self.activation.previous_version_id if self.activation else None


class CutoverCoordinator:
    def __init__(self, ledger: VersionLedger, items: CatalogItemStore, publisher: VectorPublisher) -> None:
        self._ledger = ledger
        self._items = items
        self._publisher = publisher

    def steps(self, state: CutoverState) -> list[SagaStep]:
        return [
            SagaStep(
                "activate_version",
                lambda: self._activate(state),
                lambda: self._revert_activation(state),
                failure_reason=ACTIVATION_FAILURE,
            ),
            SagaStep(
                "promote_items",
                lambda: self._items.promote(state.provider_id, state.version_id),
                lambda: self._items.demote(state.provider_id, state.version_id),
                failure_reason=ACTIVATION_FAILURE,
            ),
            SagaStep(
                "retire_previous_items",
                lambda: self._retire_previous(state),
                lambda: self._restore_previous(state),
                failure_reason=ACTIVATION_FAILURE,
            ),
            SagaStep(
                "delete_previous_vectors",
                lambda: self._delete_previous_vectors(state),
            ),
        ]

    async def _activate(self, state: CutoverState) -> Activation:
        state.activation = await self._ledger.activate(state.version_id)
        return state.activation

    async def _revert_activation(self, state: CutoverState) -> None:
        if state.activation is not None:
            await self._ledger.revert_activation(state.activation)

    async def _retire_previous(self, state: CutoverState) -> int:
        if state.previous_version_id is None:
            return 0
        retired = await self._items.retire(state.provider_id, state.previous_version_id)
        logger.info(f"Retired {retired} items of catalog version {state.previous_version_id}")
        return retired

    async def _restore_previous(self, state: CutoverState) -> None:
        if state.previous_version_id is not None:
            await self._items.restore(state.provider_id, state.previous_version_id)

    async def _delete_previous_vectors(self, state: CutoverState) -> bool:
        if state.previous_version_id is None:
            return True
        return await self._publisher.delete_by_version(
            state.provider_id,
            state.previous_version_id,
            phase=DeletionPhase.CLEANUP,
        )
