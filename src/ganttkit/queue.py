from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable, Callable
from typing import Any

from ganttkit.logs import get_logger
from ganttkit.models import STRUCTURAL_FIELDS
from ganttkit.stores.base import TaskStore

QueueWriter = Callable[[list[dict[str, Any]]], Awaitable[Any]]
QueueEventHook = Callable[[dict[str, Any]], None]

log = get_logger("queue")


class QueueFlushError(RuntimeError):
    """Raised by ``force_flush`` when the batched write fails."""

    def __init__(self, message: str, *, pending: int = 0) -> None:
        super().__init__(message)
        self.pending = pending


class UpdateCoalescingQueue:
    """Debounced write-back buffer for field-only task edits.

    Edits to the same task merge field by field. One shared timer is re-armed
    on every edit; when it fires after ``quiet_period`` seconds without a new
    edit, everything pending goes out in a single batched write.
    """

    def __init__(
        self,
        writer: QueueWriter,
        *,
        quiet_period: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        event_hook: QueueEventHook | None = None,
    ) -> None:
        if quiet_period <= 0:
            raise ValueError(f"quiet_period must be positive, got {quiet_period}")
        self._writer = writer
        self.quiet_period = quiet_period
        self._sleep = sleep
        self.event_hook = event_hook
        self._pending: dict[str, dict[str, Any]] = {}
        self._timer: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()

    @classmethod
    def for_store(
        cls, store: TaskStore, project_id: str, **kwargs: Any
    ) -> UpdateCoalescingQueue:
        async def _write(rows: list[dict[str, Any]]) -> int:
            return await store.update_tasks(project_id, rows)

        return cls(_write, **kwargs)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def pending_count(self) -> int:
        return len(self._pending)

    def pending_snapshot(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._pending)

    def queue_update(self, task_id: str, fields: dict[str, Any]) -> None:
        structural = sorted(STRUCTURAL_FIELDS.intersection(fields))
        if structural:
            raise ValueError(
                f"Structural fields cannot be queued: {', '.join(structural)}; "
                "use a structural edit instead"
            )
        if not fields:
            return
        self._pending.setdefault(task_id, {}).update(fields)
        self._arm()

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    def _arm(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().create_task(self._debounce())

    async def _debounce(self) -> None:
        await self._sleep(self.quiet_period)
        # a running flush must not be cancelled by a newer edit
        self._timer = None
        await self.flush()

    def _requeue(self, batch: dict[str, dict[str, Any]]) -> None:
        merged: dict[str, dict[str, Any]] = {}
        for task_id, fields in batch.items():
            merged[task_id] = {**fields, **self._pending.get(task_id, {})}
        for task_id, fields in self._pending.items():
            merged.setdefault(task_id, fields)
        self._pending = merged

    async def _drain(self) -> int:
        async with self._write_lock:
            if not self._pending:
                return 0
            batch = self._pending
            self._pending = {}
            rows = [{"id": task_id, **fields} for task_id, fields in batch.items()]
            try:
                await self._writer(rows)
            except Exception:
                self._requeue(batch)
                raise
        self._emit({"event": "queue_flushed", "count": len(rows)})
        log.debug("Flushed %d queued update(s)", len(rows))
        return len(rows)

    async def flush(self) -> int:
        """Write everything pending; failures are re-queued and retried later."""
        try:
            return await self._drain()
        except Exception as exc:
            log.error(
                "Queued update flush failed, %d task(s) re-queued: %s", len(self._pending), exc
            )
            self._emit(
                {"event": "queue_flush_failed", "pending": len(self._pending), "error": str(exc)}
            )
            self._arm()
            return 0

    async def force_flush(self) -> int:
        self._cancel_timer()
        try:
            return await self._drain()
        except Exception as exc:
            self._emit(
                {"event": "queue_flush_failed", "pending": len(self._pending), "error": str(exc)}
            )
            raise QueueFlushError(
                f"Failed to write queued updates: {exc}", pending=len(self._pending)
            ) from exc

    async def __aenter__(self) -> UpdateCoalescingQueue:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._cancel_timer()
        await self.force_flush()
