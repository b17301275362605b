"""Fire-and-forget audit trail.

Pipeline code calls ``AuditTrail.record`` which only enqueues; a background
worker writes entries to a sink. Sink failures are logged and dropped so the
audit trail never blocks or fails an ingestion run.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    CATALOG_PROCESSING_FAILED = "CATALOG_PROCESSING_FAILED"
    CATALOG_PROCESSING_SUCCEEDED = "CATALOG_PROCESSING_SUCCEEDED"


class AuditSink(Protocol):
    async def write(self, entry: dict[str, Any]) -> None: ...


class InMemoryAuditSink:
    def __init__(self, entries: list[dict[str, Any]] | None = None) -> None:
        self.entries = entries if entries is not None else []

    async def write(self, entry: dict[str, Any]) -> None:
        self.entries.append(dict(entry))

    def for_action(self, action: AuditAction) -> list[dict[str, Any]]:
        return [e for e in self.entries if e.get("action") == action.value]


class MongoAuditSink:
    """Writes audit entries to the ``audit_logs`` collection."""

    def __init__(self, collection: Any, *, ttl_days: int = 90) -> None:
        self._collection = collection
        self._ttl = timedelta(days=ttl_days)

    async def ensure_indexes(self) -> None:
        await self._collection.create_index("action")
        await self._collection.create_index("user_id")
        await self._collection.create_index(
            "created_at",
            expireAfterSeconds=int(self._ttl.total_seconds()),
        )

    async def write(self, entry: dict[str, Any]) -> None:
        await self._collection.insert_one(dict(entry))


class AuditTrail:
    """Non-blocking audit channel backed by an ``asyncio.Queue``."""

    def __init__(self, sink: AuditSink, *, max_queue_size: int = 1000) -> None:
        self._sink = sink
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: asyncio.Task | None = None

    def record(
        self,
        action: AuditAction,
        metadata: dict[str, Any] | None = None,
        *,
        user_id: str | None = None,
    ) -> None:
        """Enqueue an audit event; never awaits and never raises."""
        entry: dict[str, Any] = {
            "action": action.value,
            "created_at": datetime.now(timezone.utc),
        }
        if user_id:
            entry["user_id"] = user_id
        if metadata:
            entry["metadata"] = dict(metadata)
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            logger.warning(f"Audit queue full, dropping {action.value} event: {metadata}")

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain_forever(), name="audit-trail")

    async def flush(self) -> None:
        """Wait until every queued entry has been handed to the sink."""
        if self._worker is None:
            self.start()
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def _drain_forever(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self._sink.write(entry)
            except Exception as e:
                logger.error(f"Failed to write audit event {entry.get('action')}: {e}")
            finally:
                self._queue.task_done()
