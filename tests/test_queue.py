import asyncio
from typing import Any

import pytest

from ganttkit.models import Task
from ganttkit.queue import QueueFlushError, UpdateCoalescingQueue
from ganttkit.stores import MemoryTaskStore


class ManualSleep:
    """Sleep replacement that only returns when the test releases it."""

    def __init__(self) -> None:
        self.waiters: list[asyncio.Future] = []
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        future = asyncio.get_running_loop().create_future()
        self.waiters.append(future)
        await future

    def release(self) -> None:
        waiters, self.waiters = self.waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(None)


class RecordingWriter:
    def __init__(self, failures: int = 0) -> None:
        self.batches: list[list[dict[str, Any]]] = []
        self.failures = failures
        self.on_call = None

    async def __call__(self, rows: list[dict[str, Any]]) -> None:
        if self.on_call:
            self.on_call()
        if self.failures:
            self.failures -= 1
            raise RuntimeError("store unavailable")
        self.batches.append(rows)


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def test_rapid_updates_coalesce_into_one_write() -> None:
    writer = RecordingWriter()
    sleep = ManualSleep()
    events: list[dict[str, Any]] = []

    async def _run() -> None:
        queue = UpdateCoalescingQueue(
            writer, quiet_period=1.0, sleep=sleep, event_hook=events.append
        )
        queue.queue_update("a", {"name": "Pour slab"})
        queue.queue_update("a", {"progress_percent": 10})
        queue.queue_update("b", {"start_date": "2024-03-01"})
        queue.queue_update("a", {"progress_percent": 40, "end_date": "2024-03-09"})
        await _settle()

        assert writer.batches == []
        assert queue.pending_count() == 2
        assert len(sleep.waiters) == 1

        sleep.release()
        await _settle()
        assert queue.pending_count() == 0

    asyncio.run(_run())

    assert writer.batches == [
        [
            {
                "id": "a",
                "name": "Pour slab",
                "progress_percent": 40,
                "end_date": "2024-03-09",
            },
            {"id": "b", "start_date": "2024-03-01"},
        ]
    ]
    assert sleep.calls and set(sleep.calls) == {1.0}
    assert events == [{"event": "queue_flushed", "count": 2}]


def test_structural_fields_are_rejected() -> None:
    queue = UpdateCoalescingQueue(RecordingWriter())

    with pytest.raises(ValueError):
        queue.queue_update("a", {"hierarchy_number": "2"})
    with pytest.raises(ValueError):
        queue.queue_update("a", {"name": "ok", "parent_id": "b"})
    assert queue.pending_count() == 0


def test_quiet_period_must_be_positive() -> None:
    with pytest.raises(ValueError):
        UpdateCoalescingQueue(RecordingWriter(), quiet_period=0)
    with pytest.raises(ValueError):
        UpdateCoalescingQueue(RecordingWriter(), quiet_period=-1.5)


def test_failed_flush_requeues_beneath_newer_edits() -> None:
    writer = RecordingWriter(failures=1)
    sleep = ManualSleep()
    events: list[dict[str, Any]] = []

    async def _run() -> None:
        queue = UpdateCoalescingQueue(writer, sleep=sleep, event_hook=events.append)
        queue.queue_update("a", {"name": "old", "duration_days": 3})

        def _edit_during_write() -> None:
            writer.on_call = None
            queue.queue_update("a", {"name": "newer", "progress_percent": 10})

        writer.on_call = _edit_during_write
        await _settle()
        sleep.release()
        await _settle()

        assert writer.batches == []
        assert queue.pending_snapshot() == {
            "a": {"name": "newer", "duration_days": 3, "progress_percent": 10}
        }
        assert len(sleep.waiters) == 1

        written = await queue.force_flush()
        assert written == 1

    asyncio.run(_run())

    assert writer.batches == [
        [{"id": "a", "name": "newer", "duration_days": 3, "progress_percent": 10}]
    ]
    assert [event["event"] for event in events] == ["queue_flush_failed", "queue_flushed"]


def test_force_flush_raises_after_requeue() -> None:
    writer = RecordingWriter(failures=1)

    async def _run() -> UpdateCoalescingQueue:
        queue = UpdateCoalescingQueue(writer, sleep=ManualSleep())
        queue.queue_update("a", {"name": "x"})
        with pytest.raises(QueueFlushError) as excinfo:
            await queue.force_flush()
        assert excinfo.value.pending == 1
        return queue

    queue = asyncio.run(_run())

    assert queue.pending_snapshot() == {"a": {"name": "x"}}
    assert writer.batches == []


def test_flush_with_nothing_pending() -> None:
    writer = RecordingWriter()
    queue = UpdateCoalescingQueue(writer)

    assert asyncio.run(queue.flush()) == 0
    assert asyncio.run(queue.force_flush()) == 0
    assert writer.batches == []


def test_context_manager_flushes_on_exit() -> None:
    writer = RecordingWriter()

    async def _run() -> None:
        async with UpdateCoalescingQueue(writer, sleep=ManualSleep()) as queue:
            queue.queue_update("a", {"resources": "crane"})

    asyncio.run(_run())

    assert writer.batches == [[{"id": "a", "resources": "crane"}]]


def test_for_store_writes_batches_to_task_store() -> None:
    store = MemoryTaskStore()
    store.seed("p", [Task(id="a", hierarchy_number="1"), Task(id="b", hierarchy_number="2")])

    async def _run() -> int:
        queue = UpdateCoalescingQueue.for_store(store, "p", sleep=ManualSleep())
        queue.queue_update("a", {"name": "Formwork"})
        queue.queue_update("b", {"progress_percent": 100})
        return await queue.force_flush()

    assert asyncio.run(_run()) == 2
    rows = store.table("p").rows
    assert rows["a"]["name"] == "Formwork"
    assert rows["b"]["progress_percent"] == 100
