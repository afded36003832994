"""
Best-effort mirroring of task and event writes into the search index.

Writers call `mirror_task` / `mirror_event` / `unmirror_task` after their
primary transaction commits. Those calls only enqueue; a background worker
applies each operation with a timeout, retries a bounded number of times with
exponential backoff, and dead-letters what still fails. Nothing here raises
into the write path, so the primary store and the index may briefly disagree.

Query methods go straight to the index and raise IndexUnavailableError when
it is not usable, so callers can fall back to the primary store.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from flowtrack.config import Settings
from flowtrack.errors import FlowTrackError, IndexUnavailableError
from flowtrack.models import (
    Event,
    EventAggregations,
    EventSearchFilters,
    Task,
    TaskSearchHit,
)
from flowtrack.observability.metrics import MetricName, metrics
from flowtrack.search import documents
from flowtrack.search.client import SearchIndexClient
from flowtrack.utils.time import utc_now

logger = logging.getLogger("flowtrack.mirror")


class MirrorAction(str, Enum):
    INDEX = "index"
    DELETE = "delete"


@dataclass
class MirrorOperation:
    """One pending write to the index."""

    action: MirrorAction
    index: str
    doc_id: str
    organization_id: Optional[str] = None
    document: Optional[dict[str, Any]] = None
    attempts: int = 0
    enqueued_at: datetime = field(default_factory=utc_now)


@dataclass
class DeadLetter:
    """A mirror operation that was abandoned."""

    operation: MirrorOperation
    error: str
    failed_at: datetime = field(default_factory=utc_now)


class IndexSynchronizer:
    """Queue-backed mirror of primary writes plus the index query path."""

    def __init__(
        self,
        client: SearchIndexClient,
        *,
        queue_size: int = 10000,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        operation_timeout_seconds: float = 2.0,
        dead_letter_capacity: int = 1000,
    ):
        self.client = client
        self.queue_size = queue_size
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.operation_timeout_seconds = operation_timeout_seconds
        self.dead_letters: deque[DeadLetter] = deque(maxlen=dead_letter_capacity)

        self._queue: Optional[asyncio.Queue[MirrorOperation]] = None
        self._worker: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, client: SearchIndexClient) -> "IndexSynchronizer":
        return cls(
            client,
            queue_size=settings.mirror_queue_size,
            max_retries=settings.mirror_max_retries,
            retry_backoff_seconds=settings.mirror_retry_backoff_seconds,
            operation_timeout_seconds=settings.index_request_timeout_ms / 1000,
            dead_letter_capacity=settings.mirror_dead_letter_capacity,
        )

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the background mirror worker."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._worker = asyncio.create_task(self._worker_loop(), name="flowtrack-index-mirror")
        logger.info(
            f"Index mirror started (queue: {self.queue_size}, retries: {self.max_retries})"
        )

    async def stop(self, timeout: float = 10.0) -> None:
        """Drain pending operations (up to `timeout`), then stop the worker."""
        if self._queue is not None and self.running:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Index mirror did not drain in {timeout}s, "
                    f"abandoning {self._queue.qsize()} pending operations"
                )

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass

        self._worker = None
        self._queue = None
        logger.info("Index mirror stopped")

    async def drain(self) -> None:
        """Wait until every queued operation has been applied or dead-lettered."""
        if self._queue is not None:
            await self._queue.join()

    # =========================================================================
    # Write path (fire-and-forget)
    # =========================================================================

    def mirror_task(self, task: Task) -> None:
        self._enqueue(
            MirrorOperation(
                action=MirrorAction.INDEX,
                index=self.client.task_index,
                doc_id=str(task.task_id),
                organization_id=str(task.organization_id),
                document=documents.task_document(task),
            )
        )

    def mirror_event(self, event: Event) -> None:
        self._enqueue(
            MirrorOperation(
                action=MirrorAction.INDEX,
                index=self.client.event_index,
                doc_id=str(event.event_id),
                organization_id=str(event.organization_id),
                document=documents.event_document(event),
            )
        )

    def unmirror_task(self, task_id: UUID) -> None:
        self._enqueue(
            MirrorOperation(
                action=MirrorAction.DELETE,
                index=self.client.task_index,
                doc_id=str(task_id),
            )
        )

    def _enqueue(self, operation: MirrorOperation) -> None:
        if not self.client.available:
            metrics.inc_counter(MetricName.MIRROR_SKIPPED)
            logger.debug(f"Index unavailable, not mirroring {operation.index}/{operation.doc_id}")
            return

        if self._queue is None or not self.running:
            self._dead_letter(operation, "mirror worker not running")
            return

        try:
            self._queue.put_nowait(operation)
        except asyncio.QueueFull:
            self._dead_letter(operation, "mirror queue full")
            return

        metrics.inc_counter(MetricName.MIRROR_ENQUEUED)
        metrics.set_gauge(MetricName.MIRROR_PENDING, self._queue.qsize())

    async def _worker_loop(self) -> None:
        while True:
            operation = await self._queue.get()
            try:
                await self._apply_with_retry(operation)
            except Exception as e:
                logger.error(f"Index mirror worker error: {e}", exc_info=True)
                self._dead_letter(operation, f"unexpected error: {e}")
            finally:
                self._queue.task_done()
                metrics.set_gauge(MetricName.MIRROR_PENDING, self._queue.qsize())

    async def _apply_with_retry(self, operation: MirrorOperation) -> None:
        last_error = ""
        for attempt in range(1, self.max_retries + 2):
            operation.attempts = attempt
            try:
                await asyncio.wait_for(self._apply(operation), timeout=self.operation_timeout_seconds)
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.operation_timeout_seconds}s"
            except FlowTrackError as e:
                last_error = e.message
            else:
                metrics.inc_counter(MetricName.MIRROR_SUCCEEDED)
                return

            metrics.inc_counter(MetricName.MIRROR_ATTEMPT_FAILED)
            logger.warning(
                f"Mirror {operation.action.value} {operation.index}/{operation.doc_id} "
                f"attempt {attempt} failed: {last_error}"
            )
            if attempt <= self.max_retries:
                await asyncio.sleep(self.retry_backoff_seconds * (2 ** (attempt - 1)))

        self._dead_letter(operation, last_error)

    async def _apply(self, operation: MirrorOperation) -> None:
        if operation.action == MirrorAction.DELETE:
            await self.client.delete_document(operation.index, operation.doc_id)
        else:
            await self.client.index_document(operation.index, operation.doc_id, operation.document)

    def _dead_letter(self, operation: MirrorOperation, error: str) -> None:
        self.dead_letters.append(DeadLetter(operation=operation, error=error))
        metrics.inc_counter(MetricName.MIRROR_DEAD_LETTER)
        logger.error(
            f"Mirror {operation.action.value} {operation.index}/{operation.doc_id} dead-lettered: {error}",
            extra={
                "index": operation.index,
                "doc_id": operation.doc_id,
                "organization_id": operation.organization_id,
                "attempts": operation.attempts,
            },
        )

    # =========================================================================
    # Query path
    # =========================================================================

    def _require_available(self) -> None:
        if not self.client.available:
            reason = "not connected" if self.client.configured else "search index is not configured"
            raise IndexUnavailableError(reason)

    async def search_tasks(
        self, organization_id: UUID, text: str, limit: int = 50
    ) -> list[TaskSearchHit]:
        """Fuzzy full-text search over task titles and descriptions."""
        self._require_available()
        response = await self.client.search(
            self.client.task_index,
            documents.task_search_query(organization_id, text, size=limit),
        )
        return documents.parse_task_hits(response)

    async def search_events(
        self, organization_id: UUID, filters: Optional[EventSearchFilters] = None
    ) -> list[Event]:
        """Exact-match event search, newest first."""
        self._require_available()
        response = await self.client.search(
            self.client.event_index,
            documents.event_search_query(organization_id, filters or EventSearchFilters()),
        )
        return documents.parse_event_hits(response)

    async def aggregate(
        self,
        organization_id: UUID,
        workflow_id: Optional[UUID] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> EventAggregations:
        """Event-type, stage and daily histograms computed by the index."""
        self._require_available()
        response = await self.client.search(
            self.client.event_index,
            documents.aggregation_query(organization_id, workflow_id, start, end),
        )
        return documents.parse_aggregations(response)
