from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Optional, Protocol, Sequence
from weakref import WeakKeyDictionary

from prioritization_platform.core.embeddings.provider import (
    EmbeddingProvider,
    EmbeddingResult,
    EmbeddingStatus,
    EmbeddingTask,
    generate_batch_embeddings,
)


logger = logging.getLogger("prioritization_platform.embeddings.queue")


@dataclass(frozen=True)
class EmbeddingRecord:
    task_id: str
    task_text: str
    document_id: str
    status: EmbeddingStatus
    embedding: Optional[list[float]] = None
    error_message: Optional[str] = None


class EmbeddingStore(Protocol):
    async def store_embeddings(self, records: Sequence[EmbeddingRecord]) -> None: ...


@dataclass(frozen=True)
class QueueResult:
    success: int
    failed: int
    pending: int
    duration_ms: int

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "failed": self.failed,
            "pending": self.pending,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class QueueMetrics:
    queue_depth: int
    active_jobs: int
    total_processed: int
    total_failed: int


class QueueCounters:
    """Queue-wide counters shared by every in-flight batch."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._queue_depth = 0
        self._active_jobs = 0
        self._total_processed = 0
        self._total_failed = 0

    def tasks_queued(self, count: int) -> None:
        with self._lock:
            self._queue_depth += count

    def batch_started(self) -> None:
        with self._lock:
            self._active_jobs += 1

    def batch_finished(self, size: int, processed: int, failed: int) -> None:
        # Clamped at zero: a reset() may land while batches are still in flight.
        with self._lock:
            self._queue_depth = max(0, self._queue_depth - size)
            self._active_jobs = max(0, self._active_jobs - 1)
            self._total_processed += processed
            self._total_failed += failed

    def snapshot(self) -> QueueMetrics:
        with self._lock:
            return QueueMetrics(
                queue_depth=self._queue_depth,
                active_jobs=self._active_jobs,
                total_processed=self._total_processed,
                total_failed=self._total_failed,
            )

    def reset(self) -> None:
        with self._lock:
            self._queue_depth = 0
            self._active_jobs = 0
            self._total_processed = 0
            self._total_failed = 0


@dataclass(frozen=True)
class _BatchOutcome:
    success: int = 0
    failed: int = 0
    pending: int = 0


class EmbeddingQueue:
    """Embeds tasks in fixed-size batches with a cap on concurrently running batches.

    Failed tasks are reported as `pending` and left for a later re-trigger; nothing
    is retried here. A provider or store error that takes out a whole batch marks
    every task in that batch pending.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: Optional[EmbeddingStore] = None,
        *,
        batch_size: int = 50,
        max_concurrent_batches: int = 3,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_concurrent_batches < 1:
            raise ValueError("max_concurrent_batches must be >= 1")
        self.provider = provider
        self.store = store
        self.batch_size = batch_size
        self.max_concurrent_batches = max_concurrent_batches
        self._counters = QueueCounters()
        self._semaphores: WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore] = (
            WeakKeyDictionary()
        )

    def _semaphore(self) -> asyncio.Semaphore:
        # One per event loop: a Semaphore binds to the loop that first waits on it,
        # and the queue outlives any single asyncio.run().
        loop = asyncio.get_running_loop()
        sem = self._semaphores.get(loop)
        if sem is None:
            sem = asyncio.Semaphore(self.max_concurrent_batches)
            self._semaphores[loop] = sem
        return sem

    async def enqueue(self, tasks: Sequence[EmbeddingTask], document_id: str) -> QueueResult:
        if not tasks:
            logger.info("nothing to enqueue | document_id=%s", document_id)
            return QueueResult(success=0, failed=0, pending=0, duration_ms=0)

        started = time.perf_counter()
        batches = [
            list(tasks[i : i + self.batch_size]) for i in range(0, len(tasks), self.batch_size)
        ]
        self._counters.tasks_queued(len(tasks))
        logger.info(
            "enqueued | document_id=%s | tasks=%d | batches=%d | queue_depth=%d",
            document_id,
            len(tasks),
            len(batches),
            self._counters.snapshot().queue_depth,
        )

        outcomes = await asyncio.gather(
            *(
                self._process_batch(n, len(batches), batch, document_id)
                for n, batch in enumerate(batches, start=1)
            )
        )

        result = QueueResult(
            success=sum(o.success for o in outcomes),
            failed=sum(o.failed for o in outcomes),
            pending=sum(o.pending for o in outcomes),
            duration_ms=max(0, round((time.perf_counter() - started) * 1000)),
        )
        logger.info(
            "document done | document_id=%s | success=%d | pending=%d | failed=%d | duration_ms=%d",
            document_id,
            result.success,
            result.pending,
            result.failed,
            result.duration_ms,
        )
        return result

    async def _process_batch(
        self, number: int, total: int, batch: list[EmbeddingTask], document_id: str
    ) -> _BatchOutcome:
        async with self._semaphore():
            self._counters.batch_started()
            outcome = _BatchOutcome(pending=len(batch))
            try:
                results = await generate_batch_embeddings(batch, self.provider)
                if self.store is not None:
                    await self.store.store_embeddings(_records(batch, results, document_id))
                outcome = _count(results, len(batch))
                logger.info(
                    "batch %d/%d done | success=%d | pending=%d | failed=%d",
                    number,
                    total,
                    outcome.success,
                    outcome.pending,
                    outcome.failed,
                )
            except Exception as e:
                logger.error(
                    "batch %d/%d failed; marking %d tasks pending | document_id=%s | error=%s",
                    number,
                    total,
                    len(batch),
                    document_id,
                    e,
                )
            finally:
                self._counters.batch_finished(len(batch), outcome.success, outcome.failed)
            return outcome

    def metrics(self) -> QueueMetrics:
        return self._counters.snapshot()

    def reset(self) -> None:
        """Zero the counters; calls already sent to the provider keep running."""
        self._counters.reset()
        logger.info("queue reset")


def _count(results: Sequence[EmbeddingResult], batch_size: int) -> _BatchOutcome:
    success = sum(1 for r in results if r.status == "completed")
    failed = sum(1 for r in results if r.status == "failed")
    # Tasks missing from the provider's answer are still owed an embedding.
    pending = batch_size - success - failed
    return _BatchOutcome(success=success, failed=failed, pending=pending)


def _records(
    batch: Sequence[EmbeddingTask], results: Sequence[EmbeddingResult], document_id: str
) -> list[EmbeddingRecord]:
    by_id = {r.task_id: r for r in results}
    records: list[EmbeddingRecord] = []
    for task in batch:
        r = by_id.get(task.task_id)
        records.append(
            EmbeddingRecord(
                task_id=task.task_id,
                task_text=task.task_text,
                document_id=document_id,
                status=r.status if r else "pending",
                embedding=r.embedding if r else None,
                error_message=r.error_message if r else "no embedding returned",
            )
        )
    return records
