"""
Index synchronization queue.

Catalog mutations schedule sync tasks here instead of writing to the index
engine directly, so a mutation never blocks on (or fails because of) the
engine. A single consumer drains the queue in batches:

- ready tasks run by priority (higher first), FIFO within a priority
- identical pending tasks enqueued within the dedup window collapse into one
- records are read from the catalog at processing time, never at enqueue time
- a failed task is retried after ``retry_base ** attempt`` seconds; a bulk
  task retries only the ids that failed
- a task that runs out of attempts becomes a dead letter: logged and kept
- every successful task invalidates the search-facing cache tiers

The queue is an explicit instance with injected dependencies and clock.
"""

import heapq
import itertools
import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, UTC
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..entities import (
    Asset,
    BulkPayload,
    CreatePayload,
    DeadLetterRecord,
    DeletePayload,
    SyncPayload,
    SyncTask,
    SyncTaskStatus,
    UpdatePayload,
)
from ..errors import PermanentTaskError, ValidationError
from ..ports import AssetCatalogRepository, IndexEngine
from ..utils import SequenceGenerator
from ..value_objects import CacheTier, QueueMetrics, QueueStatus, SyncQueueConfig
from .cache_layer import TieredCache

logger = logging.getLogger(__name__)

INVALIDATED_TIERS: Tuple[CacheTier, ...] = (CacheTier.LIVE, CacheTier.SEARCH, CacheTier.SUGGESTION)


class IndexSyncQueue:
    """
    Priority queue of index synchronization tasks with retry and dead-lettering.

    All queue state is guarded by one lock; task execution happens outside it,
    one batch at a time.
    """

    def __init__(
        self,
        catalog: AssetCatalogRepository,
        engine: IndexEngine,
        cache: Optional[TieredCache] = None,
        config: SyncQueueConfig = SyncQueueConfig(),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._catalog = catalog
        self._engine = engine
        self._cache = cache
        self._config = config
        self._clock = clock

        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._wake_requested = False
        self._ready: List[Tuple[int, int, SyncTask]] = []
        self._delayed: List[Tuple[float, int, SyncTask]] = []
        self._pending: Dict[Tuple[str, Tuple[str, ...]], SyncTask] = {}
        self._dead_letters: List[DeadLetterRecord] = []
        self._sequence = itertools.count()
        self._ids = SequenceGenerator("sync")
        self._processing = False
        self._batch_lock = threading.Lock()

        self._metrics = QueueMetrics()
        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_create(self, asset_id: str, priority: Optional[int] = None) -> str:
        """
        Schedule indexing of a newly created asset.

        Returns:
            Id of the queued task (or of the identical task already pending)
        """
        return self._schedule(CreatePayload(asset_id=self._require_id(asset_id)), priority)

    def schedule_update(self, asset_id: str, priority: Optional[int] = None) -> str:
        """Schedule re-indexing of a modified asset."""
        return self._schedule(UpdatePayload(asset_id=self._require_id(asset_id)), priority)

    def schedule_delete(self, asset_id: str, priority: Optional[int] = None) -> str:
        """Schedule removal of an asset from the index (urgent by default)."""
        if priority is None:
            priority = self._config.delete_priority
        return self._schedule(DeletePayload(asset_id=self._require_id(asset_id)), priority)

    def schedule_bulk(
        self,
        asset_ids: Optional[Sequence[str]] = None,
        full_sync: bool = False,
        priority: Optional[int] = None,
    ) -> List[str]:
        """
        Schedule re-indexing of many assets, chunked into batch-sized tasks.

        Args:
            asset_ids: Explicit ids to re-index
            full_sync: Re-index every non-draft asset in the catalog
            priority: Task priority (1-10)

        Returns:
            Ids of the queued tasks

        Raises:
            ValidationError: If neither ids nor full_sync is given
        """
        if full_sync:
            ids = self._catalog.list_ids(exclude_statuses=("draft",))
        elif asset_ids:
            ids = list(dict.fromkeys(self._require_id(i) for i in asset_ids))
        else:
            raise ValidationError("Either asset_ids or full_sync is required")

        if not ids:
            logger.info("Bulk sync requested but there is nothing to index")
            return []

        size = self._config.batch_size
        chunks = [tuple(ids[i:i + size]) for i in range(0, len(ids), size)]
        task_ids = [self._schedule(BulkPayload(asset_ids=chunk), priority) for chunk in chunks]
        logger.info(f"Scheduled bulk sync of {len(ids)} assets in {len(chunks)} tasks")
        return task_ids

    def _schedule(self, payload: SyncPayload, priority: Optional[int]) -> str:
        if priority is None:
            priority = self._config.default_priority
        if not (1 <= priority <= 10):
            raise ValidationError(f"priority must be between 1 and 10, got {priority}")

        max_attempts = (
            self._config.bulk_max_attempts
            if isinstance(payload, BulkPayload)
            else self._config.max_attempts
        )

        with self._wakeup:
            now = self._clock()
            key = (payload.kind.value, self._target_ids(payload))
            existing = self._pending.get(key)
            if (
                existing is not None
                and existing.status == SyncTaskStatus.PENDING
                and now - existing.enqueued_at < self._config.dedup_window_s
            ):
                self._bump(deduplicated=1)
                logger.debug(f"Dropped duplicate {payload.kind.value} task for {key[1]}")
                return existing.id

            task = SyncTask(
                id=self._ids.next_id(),
                payload=payload,
                priority=priority,
                max_attempts=max_attempts,
                enqueued_at=now,
                scheduled_at=now,
            )
            self._pending[key] = task
            heapq.heappush(self._ready, (-task.priority, next(self._sequence), task))
            self._record_queue_length()
            self._wake_requested = True
            self._wakeup.notify()

        logger.debug(f"Queued {task.type.value} task {task.id} (priority {priority})")
        return task.id

    @staticmethod
    def _target_ids(payload: SyncPayload) -> Tuple[str, ...]:
        if isinstance(payload, BulkPayload):
            return payload.asset_ids
        return (payload.asset_id,)

    @staticmethod
    def _require_id(asset_id: str) -> str:
        if asset_id is None or not str(asset_id).strip():
            raise ValidationError("asset_id cannot be empty")
        return str(asset_id)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_batch(self) -> int:
        """
        Process up to ``batch_size`` ready tasks, sequentially.

        Only one batch runs at a time; a concurrent call returns immediately.

        Returns:
            Number of tasks processed
        """
        if not self._batch_lock.acquire(blocking=False):
            return 0

        try:
            with self._lock:
                self._promote_due(self._clock())
                batch: List[SyncTask] = []
                while self._ready and len(batch) < self._config.batch_size:
                    _, _, task = heapq.heappop(self._ready)
                    if self._pending.get(task.dedup_key) is task:
                        del self._pending[task.dedup_key]
                    task.transition(SyncTaskStatus.PROCESSING)
                    batch.append(task)
                self._processing = bool(batch)

            if not batch:
                return 0

            started = time.monotonic()
            for task in batch:
                self._run_task(task)
            elapsed_ms = (time.monotonic() - started) * 1000

            with self._lock:
                self._bump(total_batches=1, total_tasks=len(batch), total_processing_ms=elapsed_ms)

            logger.info(f"Processed sync batch of {len(batch)} tasks in {elapsed_ms:.1f}ms")
            return len(batch)
        finally:
            with self._lock:
                self._processing = False
            self._batch_lock.release()

    def drain(self, max_batches: Optional[int] = None) -> int:
        """
        Process batches until no task is ready (delayed retries are left alone).

        Returns:
            Total number of tasks processed
        """
        processed = 0
        batches = 0
        while max_batches is None or batches < max_batches:
            count = self.process_batch()
            if count == 0:
                break
            processed += count
            batches += 1
        return processed

    def _promote_due(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, task = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, (-task.priority, next(self._sequence), task))

    def _run_task(self, task: SyncTask) -> None:
        task.attempt += 1
        try:
            failed = self._execute(task)
        except ValueError as e:
            # Bad data will not get better by retrying
            self._dead_letter(task, f"validation error: {e}")
            return
        except Exception as e:
            self._handle_failure(task, str(e))
            return

        if failed:
            succeeded = len(task.target_ids) - len(failed)
            if succeeded:
                self._invalidate_cache()
            task.narrow_to(tuple(doc_id for doc_id, _ in failed))
            errors = "; ".join(f"{doc_id}: {error}" for doc_id, error in failed)
            self._handle_failure(task, f"{len(failed)} documents failed ({errors})")
            return

        task.last_error = None
        task.transition(SyncTaskStatus.DONE)
        with self._lock:
            self._bump(succeeded=1)
        self._invalidate_cache()
        logger.debug(f"Sync task {task.id} done after {task.attempt} attempt(s)")

    def _execute(self, task: SyncTask) -> List[Tuple[str, str]]:
        """Apply one task to the index engine. Returns (id, error) pairs of bulk failures."""
        payload = task.payload

        if isinstance(payload, DeletePayload):
            self._engine.delete(payload.asset_id)
            return []

        if isinstance(payload, (CreatePayload, UpdatePayload)):
            asset = self._catalog.get_by_id(payload.asset_id)
            if asset is None:
                # The record is gone; the index must not keep a stale copy.
                logger.info(
                    f"Asset {payload.asset_id} no longer exists, removing it from the index"
                )
                self._engine.delete(payload.asset_id)
                return []
            self._engine.upsert(asset.to_index_document())
            return []

        return self._execute_bulk(payload)

    def _execute_bulk(self, payload: BulkPayload) -> List[Tuple[str, str]]:
        assets: Dict[str, Asset] = self._catalog.get_many(payload.asset_ids)
        documents = [assets[i].to_index_document() for i in payload.asset_ids if i in assets]
        failed: List[Tuple[str, str]] = []

        if documents:
            failed.extend(self._engine.bulk_upsert(documents))

        for missing_id in (i for i in payload.asset_ids if i not in assets):
            try:
                self._engine.delete(missing_id)
            except Exception as e:
                failed.append((missing_id, str(e)))
        return failed

    def _handle_failure(self, task: SyncTask, error: str) -> None:
        task.last_error = error

        if not task.has_attempts_left():
            self._dead_letter(task, error)
            return

        delay = self._config.retry_base ** task.attempt
        task.transition(SyncTaskStatus.RETRY_SCHEDULED)
        with self._wakeup:
            task.scheduled_at = self._clock() + delay
            heapq.heappush(self._delayed, (task.scheduled_at, next(self._sequence), task))
            self._bump(retried=1)
            self._record_queue_length()
            self._wakeup.notify()

        logger.warning(
            f"Sync task {task.id} ({task.type.value}) failed on attempt "
            f"{task.attempt}/{task.max_attempts}, retrying in {delay:.0f}s: {error}"
        )

    def _dead_letter(self, task: SyncTask, error: str) -> None:
        task.last_error = error
        task.transition(SyncTaskStatus.DEAD_LETTER)
        record = DeadLetterRecord(task=task, error=error, failed_at=datetime.now(UTC))
        with self._lock:
            self._dead_letters.append(record)
            self._bump(dead_lettered=1)

        failure = PermanentTaskError(
            f"Sync task {task.id} ({task.type.value} {list(task.target_ids)}) "
            f"gave up after {task.attempt} attempt(s): {error}"
        )
        logger.error(str(failure))

    def _invalidate_cache(self) -> None:
        if self._cache is None:
            return
        try:
            self._cache.invalidate_tiers(INVALIDATED_TIERS)
        except Exception as e:
            logger.warning(f"Cache invalidation after sync failed: {e}")

    # ------------------------------------------------------------------
    # Background worker
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the single background consumer thread (idempotent)."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._run, name="index-sync-worker", daemon=True)
        self._worker.start()
        logger.info("Index sync worker started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background consumer and wait for the current batch to finish."""
        self._stop_event.set()
        with self._wakeup:
            self._wakeup.notify_all()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None
        logger.info("Index sync worker stopped")

    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            with self._wakeup:
                self._wakeup.wait_for(
                    lambda: self._wake_requested or self._stop_event.is_set(),
                    timeout=self._next_wait(),
                )
                self._wake_requested = False
            if self._stop_event.is_set():
                break
            try:
                self.drain()
            except Exception as e:
                logger.exception(f"Index sync worker batch failed: {e}")

    def _next_wait(self) -> float:
        wait = self._config.tick_interval_s
        if self._delayed:
            wait = min(wait, max(0.0, self._delayed[0][0] - self._clock()))
        return wait

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> QueueStatus:
        """Current queue sizes and the next tasks in processing order."""
        with self._lock:
            upcoming = [task for _, _, task in sorted(self._ready)]
            upcoming += [task for _, _, task in sorted(self._delayed)]
            preview = tuple(
                replace(task, history=list(task.history))
                for task in upcoming[: self._config.status_preview_size]
            )
            return QueueStatus(
                ready=len(self._ready),
                delayed=len(self._delayed),
                processing=self._processing,
                dead_letters=len(self._dead_letters),
                upcoming=preview,
            )

    def metrics(self) -> QueueMetrics:
        with self._lock:
            return self._metrics

    def dead_letters(self) -> List[DeadLetterRecord]:
        with self._lock:
            return list(self._dead_letters)

    def clear(self) -> int:
        """
        Drop every queued task (ready and delayed). Dead letters are kept.

        Returns:
            Number of tasks dropped
        """
        with self._lock:
            dropped = len(self._ready) + len(self._delayed)
            self._ready.clear()
            self._delayed.clear()
            self._pending.clear()
        logger.warning(f"Cleared {dropped} tasks from the index sync queue")
        return dropped

    def _record_queue_length(self) -> None:
        length = len(self._ready) + len(self._delayed)
        if length > self._metrics.max_queue_length:
            self._metrics = replace(self._metrics, max_queue_length=length)

    def _bump(self, **deltas: float) -> None:
        self._metrics = replace(
            self._metrics,
            **{name: getattr(self._metrics, name) + delta for name, delta in deltas.items()},
        )
