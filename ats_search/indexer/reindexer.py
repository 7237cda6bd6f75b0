"""Reindexer: keeps ``search_documents`` consistent with source entities.

Entity modules call ``on_entity_changed`` after their write commits. The call
only records the trigger and returns; a fixed pool of asyncio worker tasks
drains a bounded queue and runs ``reindex`` for each key.

Execution model
- Triggers for a key already waiting in the queue are coalesced (latest
  reason wins, changed fields are merged); workers re-fetch the current
  entity, so one pass reflects every coalesced edit
- When the queue is full the oldest waiting key is dropped
- There is no ordering between in-flight reindexes of the same key; the
  store's atomic upsert is the only guarantee, so the last commit wins
- ``reindex`` never raises; failures are logged with the key and reported
  as ``ReindexOutcome.FAILED``
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np
import structlog

from ..capability import DegradationController
from ..common.logging import log_performance
from ..common.metrics import MetricsCollector
from ..embeddings.client import EmbeddingClient
from ..errors import EmbeddingError, EntityFetchFailed, StorageUnavailable
from ..models import BatchResult, DocumentFields, ReindexOutcome, ReindexReason, SourceKey, SourceType
from ..search_store.base import SearchDocumentStore
from .projectors import ProjectorRegistry, default_registry
from .sources import EntitySource

logger = structlog.get_logger("reindexer")


@dataclass
class PendingTrigger:
    """Coalesced trigger state of a key waiting in the queue."""
    reason: ReindexReason
    changed_fields: Optional[Set[str]] = None


def _merge_fields(current: Optional[Set[str]], new: Optional[Iterable[str]]) -> Optional[Set[str]]:
    # None means "unknown", which subsumes any explicit field list
    if current is None or new is None:
        return None
    return current | set(new)


class Reindexer:
    """Rebuilds search documents from source entities.

    Parameters
    - store: Search document store (sole writer is this class)
    - source: Reads current entity rows
    - embedding_client: Computes document vectors
    - controller: Vector capability state shared with the query engine
    - projectors: Entity to document text mapping
    - workers: Number of background worker tasks
    - queue_size: Max keys waiting for a worker
    - batch_delay: Seconds between items of ``reindex_batch``
    - metrics: Optional collector
    """

    def __init__(
        self,
        store: SearchDocumentStore,
        source: EntitySource,
        embedding_client: EmbeddingClient,
        controller: DegradationController,
        projectors: Optional[ProjectorRegistry] = None,
        workers: int = 4,
        queue_size: int = 1000,
        batch_delay: float = 0.1,
        metrics: Optional[MetricsCollector] = None,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")

        self.store = store
        self.source = source
        self.embedding_client = embedding_client
        self.controller = controller
        self.projectors = projectors or default_registry
        self.worker_count = workers
        self.queue_size = queue_size
        self.batch_delay = batch_delay
        self.metrics = metrics

        self._queue: Optional[asyncio.Queue] = None
        self._order: Deque[SourceKey] = deque()
        self._pending: Dict[SourceKey, PendingTrigger] = {}
        # Keys being reindexed, and triggers that arrived for them meanwhile
        self._in_flight: Set[SourceKey] = set()
        self._deferred: Dict[SourceKey, PendingTrigger] = {}
        self._workers: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Trigger intake
    # ------------------------------------------------------------------

    def on_entity_changed(
        self,
        source_type: Any,
        source_id: Any,
        reason: Any = ReindexReason.UPDATE,
        changed_fields: Optional[Iterable[str]] = None
    ) -> None:
        """Record that an entity changed; returns immediately.

        Must be called from the event loop thread. Never raises.
        """
        try:
            key = (SourceType.parse(source_type), str(source_id))
            reason = ReindexReason(reason)
        except ValueError as e:
            logger.error(
                "Ignoring invalid reindex trigger",
                source_type=str(source_type),
                source_id=str(source_id),
                reason=str(reason),
                error=str(e)
            )
            return

        pending = self._pending.get(key) or self._deferred.get(key)
        if pending is not None:
            pending.reason = reason
            pending.changed_fields = _merge_fields(pending.changed_fields, changed_fields)
            logger.debug("Coalesced reindex trigger", source_type=key[0].value, source_id=key[1])
            return

        trigger = PendingTrigger(
            reason=reason,
            changed_fields=set(changed_fields) if changed_fields is not None else None,
        )
        if key in self._in_flight:
            # Runs after the current pass so a stale read cannot land last
            self._deferred[key] = trigger
            return

        if not self._ensure_started():
            logger.warning(
                "No running event loop, reindex trigger dropped",
                source_type=key[0].value,
                source_id=key[1]
            )
            return

        self._enqueue(key, trigger)

    def _enqueue(self, key: SourceKey, trigger: PendingTrigger) -> None:
        if len(self._order) >= self.queue_size:
            self._drop_oldest()
        self._pending[key] = trigger
        self._order.append(key)
        self._queue.put_nowait(key)

    def _drop_oldest(self) -> None:
        oldest = self._order.popleft()
        self._pending.pop(oldest, None)
        # Keep the queue and the order deque aligned
        self._queue.get_nowait()
        self._queue.task_done()

        logger.warning(
            "Reindex queue full, dropped oldest pending trigger",
            source_type=oldest[0].value,
            source_id=oldest[1],
            queue_size=self.queue_size
        )
        if self.metrics is not None:
            self.metrics.record_reindex_dropped(oldest[0].value)

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker tasks on the running event loop (idempotent)."""
        if self._workers:
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"reindex-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info("Reindex workers started", workers=self.worker_count, queue_size=self.queue_size)

    def _ensure_started(self) -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        self.start()
        return True

    async def _worker(self, worker_id: int) -> None:
        while True:
            key = await self._queue.get()
            try:
                # Queue and order deque are both FIFO over the same keys
                self._order.popleft()
                trigger = self._pending.pop(key)
                self._in_flight.add(key)
                try:
                    await self.reindex(key[0], key[1], trigger.reason, trigger.changed_fields)
                finally:
                    self._in_flight.discard(key)
                    deferred = self._deferred.pop(key, None)
                    if deferred is not None:
                        self._enqueue(key, deferred)
            finally:
                self._queue.task_done()

    @property
    def queue_depth(self) -> int:
        """Number of keys waiting for a worker."""
        return len(self._order)

    async def drain(self) -> None:
        """Wait until every queued trigger has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker tasks; pending triggers are discarded."""
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        pending = len(self._order) + len(self._deferred)
        if pending:
            logger.warning("Reindexer stopped with pending triggers", pending=pending)
        self._in_flight.clear()
        self._deferred.clear()
        logger.info("Reindex workers stopped")

    # ------------------------------------------------------------------
    # Per-item work
    # ------------------------------------------------------------------

    async def reindex(
        self,
        source_type: Any,
        source_id: Any,
        reason: Any = ReindexReason.UPDATE,
        changed_fields: Optional[Iterable[str]] = None
    ) -> ReindexOutcome:
        """Bring the document of one key in line with its entity.

        Never raises.
        """
        try:
            source_type = SourceType.parse(source_type)
            reason = ReindexReason(reason)
        except ValueError as e:
            logger.error(
                "Invalid reindex request",
                source_type=str(source_type),
                source_id=str(source_id),
                error=str(e)
            )
            return ReindexOutcome.FAILED

        source_id = str(source_id)
        start_time = time.time()
        try:
            outcome = await self._reindex_one(source_type, source_id, reason)
        except Exception as e:
            logger.error(
                "Reindex failed",
                source_type=source_type.value,
                source_id=source_id,
                reason=reason.value,
                changed_fields=sorted(changed_fields) if changed_fields else None,
                error=str(e),
                error_type=type(e).__name__
            )
            outcome = ReindexOutcome.FAILED

        if self.metrics is not None:
            self.metrics.record_reindex(source_type.value, outcome.value)
        log_performance(
            "reindex",
            (time.time() - start_time) * 1000,
            source_type=source_type.value,
            source_id=source_id,
            reason=reason.value,
            outcome=outcome.value
        )
        return outcome

    async def _reindex_one(
        self,
        source_type: SourceType,
        source_id: str,
        reason: ReindexReason
    ) -> ReindexOutcome:
        if reason.is_delete:
            await self.store.delete(source_type, source_id)
            return ReindexOutcome.DELETED

        try:
            entity = await self.source.fetch(source_type, source_id)
        except EntityFetchFailed as e:
            logger.info(
                "Source entity no longer exists, removing document",
                source_type=source_type.value,
                source_id=source_id,
                error=str(e)
            )
            await self.store.delete(source_type, source_id)
            return ReindexOutcome.DELETED

        projection = self.projectors.project(source_type, entity)
        if projection is None:
            logger.info(
                "Entity is not searchable, removing document",
                source_type=source_type.value,
                source_id=source_id
            )
            await self.store.delete(source_type, source_id)
            return ReindexOutcome.DELETED

        embedding = await self._embed(projection.text, f"{source_type.value}:{source_id}")
        fields = DocumentFields(
            text=projection.text,
            title=projection.title,
            html=projection.html,
            metadata=projection.metadata,
            permissions=projection.permissions,
            embedding=embedding,
        )

        try:
            await self.store.upsert(source_type, source_id, fields)
        except StorageUnavailable as e:
            self.controller.handle_storage_failure(e)
            fields.embedding = None
            await self.store.upsert(source_type, source_id, fields)

        if fields.embedding is None:
            return ReindexOutcome.INDEXED_LEXICAL_ONLY
        return ReindexOutcome.INDEXED

    async def _embed(self, text: str, owner: str) -> Optional[np.ndarray]:
        if not self.controller.vector_enabled or not text.strip():
            return None
        try:
            return await self.embedding_client.embed(text, owner=owner)
        except EmbeddingError as e:
            structural = self.controller.handle_embedding_failure(e)
            logger.warning(
                "Embedding failed, storing document without vector",
                owner=owner,
                structural=structural,
                error=str(e)
            )
            return None

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def reindex_batch(
        self,
        keys: Iterable[Tuple[Any, Any]],
        reason: Any = ReindexReason.MANUAL
    ) -> BatchResult:
        """Reindex ``keys`` one after another, ``batch_delay`` apart."""
        result = BatchResult()
        start_time = time.time()

        for index, (source_type, source_id) in enumerate(keys):
            if index > 0 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

            outcome = await self.reindex(source_type, source_id, reason)
            if outcome == ReindexOutcome.FAILED:
                result.failed += 1
                result.failures.append(f"{getattr(source_type, 'value', source_type)}:{source_id}")
            else:
                result.processed += 1
                if outcome == ReindexOutcome.INDEXED_LEXICAL_ONLY:
                    result.lexical_only += 1

        logger.info(
            "Batch reindex complete",
            processed=result.processed,
            failed=result.failed,
            lexical_only=result.lexical_only,
            duration_seconds=round(time.time() - start_time, 3)
        )
        if result.failures:
            logger.warning("Batch reindex failures", failures=result.failures)
        return result

    async def reindex_all(self, source_type: Any, reason: Any = ReindexReason.MANUAL) -> BatchResult:
        """Reindex every entity of ``source_type``."""
        source_type = SourceType.parse(source_type)
        ids = await self.source.list_ids(source_type)
        logger.info("Reindexing all entities", source_type=source_type.value, count=len(ids))
        return await self.reindex_batch([(source_type, entity_id) for entity_id in ids], reason)

    async def reindex_missing_embeddings(
        self,
        source_type: Optional[Any] = None,
        limit: Optional[int] = None
    ) -> BatchResult:
        """Re-embed stored documents whose vector is NULL.

        Does nothing while the vector capability is disabled.
        """
        if not self.controller.vector_enabled:
            logger.info("Vector capability disabled, skipping missing-embedding reindex")
            return BatchResult()

        parsed = SourceType.parse(source_type) if source_type is not None else None
        try:
            keys = await self.store.list_missing_embeddings(parsed, limit)
        except StorageUnavailable as e:
            self.controller.handle_storage_failure(e)
            return BatchResult()

        logger.info(
            "Reindexing documents without embeddings",
            source_type=parsed.value if parsed else None,
            count=len(keys)
        )
        return await self.reindex_batch(keys, ReindexReason.MANUAL)
