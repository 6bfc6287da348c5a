"""Conflict-free persistence of a batch of hierarchy number changes.

Numbers are unique per project, so rewriting ``1 -> 2`` and ``2 -> 1`` row by
row would collide. Phase one moves every affected row to a unique placeholder
and waits for all writes to settle; phase two writes the final numbers.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from ganttkit.logs import get_logger
from ganttkit.models import HierarchyUpdate, PredecessorUpdate, utcnow_iso
from ganttkit.stores.base import StoreError, TaskStore

CommitEventHook = Callable[[dict[str, Any]], None]

DEFAULT_PLACEHOLDER_PREFIX = "__TEMP_"

log = get_logger("committer")


class CommitError(RuntimeError):
    """Raised when a batch could not be persisted completely."""

    def __init__(
        self,
        message: str,
        *,
        phase: int,
        failures: list[str] | None = None,
        applied: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.failures = failures or []
        self.applied = applied or []


@dataclass(slots=True)
class CommitReport:
    updated_count: int = 0
    total_count: int = 0
    phase1_ms: float = 0.0
    phase2_ms: float = 0.0
    predecessors_updated: int = 0
    atomic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class _Write:
    task_id: str
    fields: dict[str, Any] = field(default_factory=dict)


def _settle(results: Sequence[Any], writes: Sequence[_Write]) -> tuple[list[str], list[str]]:
    applied: list[str] = []
    failures: list[str] = []
    for write, result in zip(writes, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            failures.append(f"{write.task_id}: {result}")
        else:
            applied.append(write.task_id)
    return applied, failures


class TwoPhaseCommitter:
    def __init__(
        self,
        store: TaskStore,
        *,
        placeholder_prefix: str = DEFAULT_PLACEHOLDER_PREFIX,
        event_hook: CommitEventHook | None = None,
        clock: Callable[[], float] = time.perf_counter,
        prefer_atomic: bool = False,
    ) -> None:
        self.store = store
        self.placeholder_prefix = placeholder_prefix
        self.event_hook = event_hook
        self.clock = clock
        self.prefer_atomic = prefer_atomic

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _elapsed_ms(self, started: float) -> float:
        return round((self.clock() - started) * 1000, 3)

    @staticmethod
    def _preflight(updates: Sequence[HierarchyUpdate]) -> None:
        problems: list[str] = []
        for position, update in enumerate(updates):
            if not update.id or not update.hierarchy_number:
                problems.append(f"update {position} needs an id and a hierarchy_number")
        for task_id, count in Counter(update.id for update in updates).items():
            if count > 1:
                problems.append(f"task {task_id} appears {count} times")
        for number, count in Counter(update.hierarchy_number for update in updates).items():
            if count > 1:
                problems.append(f"number {number} assigned {count} times")
        if problems:
            raise CommitError(
                f"Invalid renumber batch: {'; '.join(problems)}", phase=0, failures=problems
            )

    def placeholder(self, token: str, position: int) -> str:
        return f"{self.placeholder_prefix}{token}_{position}"

    async def _write_all(self, project_id: str, writes: Sequence[_Write]) -> list[Any]:
        return await asyncio.gather(
            *(self.store.update_task(project_id, write.task_id, write.fields) for write in writes),
            return_exceptions=True,
        )

    def _final_writes(
        self,
        updates: Sequence[HierarchyUpdate],
        predecessor_updates: Sequence[PredecessorUpdate],
    ) -> list[_Write]:
        now = utcnow_iso()
        writes: dict[str, _Write] = {}
        for update in updates:
            writes[update.id] = _Write(
                update.id, {"hierarchy_number": update.hierarchy_number, "updated_at": now}
            )
        for update in predecessor_updates:
            write = writes.setdefault(update.task_id, _Write(update.task_id, {"updated_at": now}))
            write.fields["predecessors"] = list(update.new_predecessors)
        return list(writes.values())

    async def commit(
        self,
        project_id: str,
        updates: Iterable[HierarchyUpdate],
        predecessor_updates: Iterable[PredecessorUpdate] = (),
    ) -> CommitReport:
        updates = list(updates)
        predecessor_updates = list(predecessor_updates)
        self._preflight(updates)
        total = len(updates)
        if not updates and not predecessor_updates:
            return CommitReport()

        if self.prefer_atomic and self.store.supports_atomic_renumber and updates:
            report = await self._commit_atomic(project_id, updates, predecessor_updates)
            if report is not None:
                return report

        token = uuid.uuid4().hex[:12]
        started = self.clock()
        placeholders = [
            _Write(update.id, {"hierarchy_number": self.placeholder(token, position)})
            for position, update in enumerate(updates)
        ]
        results = await self._write_all(project_id, placeholders)
        _, failures = _settle(results, placeholders)
        phase1_ms = self._elapsed_ms(started)
        if failures:
            log.error("Renumber phase 1 failed for %d of %d rows", len(failures), total)
            self._emit(
                {
                    "event": "commit_phase1_failed",
                    "project_id": project_id,
                    "failures": failures,
                    "elapsed_ms": phase1_ms,
                }
            )
            raise CommitError(
                f"Phase 1 failed for {len(failures)} of {total} rows: {'; '.join(failures[:5])}",
                phase=1,
                failures=failures,
            )
        self._emit(
            {
                "event": "commit_phase1_complete",
                "project_id": project_id,
                "count": total,
                "elapsed_ms": phase1_ms,
            }
        )

        started = self.clock()
        writes = self._final_writes(updates, predecessor_updates)
        results = await self._write_all(project_id, writes)
        applied, failures = _settle(results, writes)
        phase2_ms = self._elapsed_ms(started)
        if failures:
            log.error("Renumber phase 2 failed for %d of %d rows", len(failures), len(writes))
            self._emit(
                {
                    "event": "commit_phase2_failed",
                    "project_id": project_id,
                    "failures": failures,
                    "applied": applied,
                    "elapsed_ms": phase2_ms,
                }
            )
            raise CommitError(
                f"Phase 2 failed for {len(failures)} of {len(writes)} rows: "
                f"{'; '.join(failures[:5])}",
                phase=2,
                failures=failures,
                applied=applied,
            )

        report = CommitReport(
            updated_count=total,
            total_count=total,
            phase1_ms=phase1_ms,
            phase2_ms=phase2_ms,
            predecessors_updated=len(predecessor_updates),
        )
        self._emit({"event": "commit_complete", "project_id": project_id, **report.to_dict()})
        log.info(
            "Committed %d number(s) and %d predecessor list(s)", total, len(predecessor_updates)
        )
        return report

    async def _commit_atomic(
        self,
        project_id: str,
        updates: Sequence[HierarchyUpdate],
        predecessor_updates: Sequence[PredecessorUpdate],
    ) -> CommitReport | None:
        started = self.clock()
        try:
            await self.store.atomic_renumber(project_id, updates)
        except StoreError as exc:
            log.warning("Atomic renumber failed, falling back to two phases: %s", exc)
            self._emit(
                {"event": "commit_atomic_fallback", "project_id": project_id, "error": str(exc)}
            )
            return None
        phase1_ms = self._elapsed_ms(started)

        started = self.clock()
        writes = self._final_writes((), predecessor_updates)
        results = await self._write_all(project_id, writes)
        applied, failures = _settle(results, writes)
        phase2_ms = self._elapsed_ms(started)
        if failures:
            raise CommitError(
                f"Predecessor update failed for {len(failures)} of {len(writes)} rows",
                phase=2,
                failures=failures,
                applied=[update.id for update in updates] + applied,
            )

        report = CommitReport(
            updated_count=len(updates),
            total_count=len(updates),
            phase1_ms=phase1_ms,
            phase2_ms=phase2_ms,
            predecessors_updated=len(predecessor_updates),
            atomic=True,
        )
        self._emit({"event": "commit_complete", "project_id": project_id, **report.to_dict()})
        return report


def _parse_updates(raw_updates: Any) -> tuple[list[HierarchyUpdate], str | None]:
    if not isinstance(raw_updates, list) or not raw_updates:
        return [], "No updates provided"
    updates: list[HierarchyUpdate] = []
    for index, entry in enumerate(raw_updates):
        if not isinstance(entry, dict):
            return [], f"Invalid update at index {index}"
        task_id = entry.get("id")
        number = entry.get("hierarchy_number")
        if not isinstance(task_id, str) or not task_id or not isinstance(number, str) or not number:
            return [], f"Invalid update at index {index}: id and hierarchy_number are required"
        updates.append(HierarchyUpdate(id=task_id, hierarchy_number=number))
    return updates, None


async def handle_bulk_renumber(
    store: TaskStore,
    payload: Any,
    *,
    committer: TwoPhaseCommitter | None = None,
    clock: Callable[[], float] = time.perf_counter,
) -> dict[str, Any]:
    """Bulk renumber endpoint: ``{projectId, updates: [{id, hierarchy_number}]}``."""
    started = clock()
    if not isinstance(payload, dict):
        return {"success": False, "error": "Request body must be an object"}
    updates, error = _parse_updates(payload.get("updates"))
    if error:
        return {"success": False, "error": error}
    project_id = payload.get("projectId")
    if not project_id:
        return {"success": False, "error": "Project ID required"}

    committer = committer or TwoPhaseCommitter(store, clock=clock)
    try:
        report = await committer.commit(project_id, updates)
    except (CommitError, StoreError) as exc:
        log.error("Bulk renumber failed for project %s: %s", project_id, exc)
        return {"success": False, "error": str(exc)}

    return {
        "success": True,
        "updated": report.updated_count,
        "total": report.total_count,
        "elapsedMs": round((clock() - started) * 1000, 3),
        "phase1Ms": report.phase1_ms,
        "phase2Ms": report.phase2_ms,
    }
