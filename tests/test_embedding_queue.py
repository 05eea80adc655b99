import asyncio

from prioritization_platform.core.embeddings.queue import EmbeddingQueue
from prioritization_platform.core.embeddings.provider import EmbeddingTask


def _tasks(n, doc="doc-1"):
    return [EmbeddingTask(task_id=f"t{i}", task_text=f"task number {i}", document_id=doc) for i in range(n)]


class TrackingProvider:
    """Counts how many batches are embedding at the same time."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed(self, text):
        if text in self.fail_on:
            raise RuntimeError("provider down")
        await asyncio.sleep(0)
        return [1.0, 0.0]

    async def embed_batch(self, texts):
        return [await self.embed(t) for t in texts]


class SlowStore:
    def __init__(self, provider, fail=False):
        self.provider = provider
        self.fail = fail
        self.records = []

    async def store_embeddings(self, records):
        self.provider.in_flight += 1
        self.provider.max_in_flight = max(self.provider.max_in_flight, self.provider.in_flight)
        await asyncio.sleep(0.01)
        self.provider.in_flight -= 1
        if self.fail:
            raise RuntimeError("database unavailable")
        self.records.extend(records)


def test_all_tasks_accounted_for_across_batches():
    provider = TrackingProvider()
    store = SlowStore(provider)
    queue = EmbeddingQueue(provider, store, batch_size=50, max_concurrent_batches=3)

    res = asyncio.run(queue.enqueue(_tasks(120), "doc-1"))

    assert res.success == 120
    assert res.success + res.pending + res.failed == 120
    assert len(store.records) == 120
    assert {r.document_id for r in store.records} == {"doc-1"}


def test_concurrent_batches_are_capped():
    provider = TrackingProvider()
    store = SlowStore(provider)
    queue = EmbeddingQueue(provider, store, batch_size=10, max_concurrent_batches=3)

    asyncio.run(queue.enqueue(_tasks(100), "doc-1"))

    assert provider.max_in_flight == 3


def test_failed_task_is_pending_and_others_succeed():
    provider = TrackingProvider(fail_on={"task number 3"})
    store = SlowStore(provider)
    queue = EmbeddingQueue(provider, store, batch_size=5)

    res = asyncio.run(queue.enqueue(_tasks(10), "doc-1"))

    assert (res.success, res.pending, res.failed) == (9, 1, 0)
    pending = [r for r in store.records if r.status == "pending"]
    assert [r.task_id for r in pending] == ["t3"]
    assert pending[0].error_message == "provider down"


def test_store_failure_marks_whole_batch_pending():
    provider = TrackingProvider()
    queue = EmbeddingQueue(provider, SlowStore(provider, fail=True), batch_size=4)

    res = asyncio.run(queue.enqueue(_tasks(6), "doc-1"))

    assert (res.success, res.pending, res.failed) == (0, 6, 0)


def test_counters_return_to_idle_and_reset():
    provider = TrackingProvider(fail_on={"task number 0"})
    queue = EmbeddingQueue(provider, batch_size=2)

    asyncio.run(queue.enqueue(_tasks(5), "doc-1"))

    m = queue.metrics()
    assert m.queue_depth == 0
    assert m.active_jobs == 0
    assert m.total_processed == 4
    assert m.total_failed == 0

    queue.reset()
    assert queue.metrics().total_processed == 0


def test_metrics_while_batches_run():
    provider = TrackingProvider()
    seen = []

    class PeekingStore:
        async def store_embeddings(self, records):
            seen.append(queue.metrics())

    queue = EmbeddingQueue(provider, PeekingStore(), batch_size=5, max_concurrent_batches=1)
    asyncio.run(queue.enqueue(_tasks(10), "doc-1"))

    assert seen[0].active_jobs == 1
    assert seen[0].queue_depth == 10
    assert seen[1].queue_depth == 5


def test_empty_enqueue():
    queue = EmbeddingQueue(TrackingProvider())
    res = asyncio.run(queue.enqueue([], "doc-1"))
    assert res.to_dict() == {"success": 0, "failed": 0, "pending": 0, "duration_ms": 0}


def test_queue_is_reusable_across_event_loops():
    provider = TrackingProvider()
    store = SlowStore(provider)
    queue = EmbeddingQueue(provider, store, batch_size=1, max_concurrent_batches=1)

    first = asyncio.run(queue.enqueue(_tasks(3), "doc-1"))
    second = asyncio.run(queue.enqueue(_tasks(3, doc="doc-2"), "doc-2"))

    assert first.success == 3
    assert second.success == 3
    assert provider.max_in_flight == 1
    assert queue.metrics().total_processed == 6
