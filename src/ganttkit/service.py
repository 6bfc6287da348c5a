from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from ganttkit.committer import CommitEventHook, CommitReport, TwoPhaseCommitter
from ganttkit.config import GanttkitConfig
from ganttkit.hierarchy import derive_structure, needs_normalization
from ganttkit.logs import get_logger
from ganttkit.models import Task
from ganttkit.operations import (
    DeletionPolicy,
    StructuralPlan,
    StructureError,
    plan_delete,
    plan_indent,
    plan_insert,
    plan_move,
    plan_normalize,
    plan_outdent,
    structure_updates,
)
from ganttkit.queue import QueueFlushError, UpdateCoalescingQueue
from ganttkit.remap import SelfReferenceReport, repair_self_references
from ganttkit.stores.base import TaskStore
from ganttkit.validation import (
    IntegrityReport,
    ValidationResult,
    audit_schedule,
    validate_predecessors,
)

log = get_logger("service")


@dataclass(slots=True)
class EditResult:
    plan: StructuralPlan
    report: CommitReport = field(default_factory=CommitReport)

    def to_dict(self) -> dict[str, Any]:
        return {**self.plan.summary(), "commit": self.report.to_dict()}


class ScheduleService:
    """Runs structural edits against a store: plan, persist rows, commit numbers."""

    def __init__(
        self,
        store: TaskStore,
        *,
        deletion_policy: DeletionPolicy | str = DeletionPolicy.PREVIOUS_SIBLING,
        committer: TwoPhaseCommitter | None = None,
        quiet_period: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        event_hook: CommitEventHook | None = None,
    ) -> None:
        self.store = store
        self.deletion_policy = DeletionPolicy(deletion_policy)
        self.committer = committer or TwoPhaseCommitter(store, event_hook=event_hook)
        self.quiet_period = quiet_period
        self._sleep = sleep
        self.event_hook = event_hook
        self._queues: dict[str, UpdateCoalescingQueue] = {}

    @classmethod
    def from_config(
        cls, store: TaskStore, config: GanttkitConfig, **kwargs: Any
    ) -> ScheduleService:
        event_hook = kwargs.pop("event_hook", None)
        committer = TwoPhaseCommitter(
            store,
            placeholder_prefix=config.schedule.placeholder_prefix,
            prefer_atomic=config.commit.prefer_atomic,
            event_hook=event_hook,
        )
        return cls(
            store,
            deletion_policy=config.schedule.deletion_policy,
            committer=committer,
            quiet_period=config.queue.quiet_period_seconds,
            event_hook=event_hook,
            **kwargs,
        )

    def session_queue(self, project_id: str) -> UpdateCoalescingQueue:
        queue = self._queues.get(project_id)
        if queue is None:
            queue = UpdateCoalescingQueue.for_store(
                self.store,
                project_id,
                quiet_period=self.quiet_period,
                sleep=self._sleep,
                event_hook=self.event_hook,
            )
            self._queues[project_id] = queue
        return queue

    def queue_update(self, project_id: str, task_id: str, fields: dict[str, Any]) -> None:
        self.session_queue(project_id).queue_update(task_id, fields)

    async def flush(self, project_id: str) -> int:
        queue = self._queues.get(project_id)
        return await queue.force_flush() if queue else 0

    async def close(self) -> None:
        """Force-flush every session queue, then report any that failed."""
        project_ids = list(self._queues)
        results = await asyncio.gather(
            *(self._queues[project_id].force_flush() for project_id in project_ids),
            return_exceptions=True,
        )
        failures: list[str] = []
        pending = 0
        for project_id, result in zip(project_ids, results):
            if not isinstance(result, BaseException):
                continue
            if not isinstance(result, Exception):
                raise result
            failures.append(f"{project_id}: {result}")
            pending += getattr(result, "pending", 0)
        if failures:
            log.error("Failed to flush %d session queue(s)", len(failures))
            raise QueueFlushError(
                f"Failed to flush queued updates for {'; '.join(failures)}", pending=pending
            )

    async def load(self, project_id: str) -> list[Task]:
        return await self.store.select_tasks(project_id)

    async def _load_for_edit(self, project_id: str) -> tuple[list[Task], list[Task]]:
        # queued field writes must land before numbers move underneath them
        await self.flush(project_id)
        stored = await self.load(project_id)
        return stored, derive_structure(stored)

    async def find_by_number(self, project_id: str, number: str) -> Task:
        for task in await self.load(project_id):
            if task.hierarchy_number == number:
                return task
        raise StructureError(f"No task numbered {number} in project {project_id}")

    async def apply_plan(
        self, project_id: str, stored: Sequence[Task], plan: StructuralPlan
    ) -> EditResult:
        if plan.deleted_ids:
            await self.store.delete_tasks(project_id, plan.deleted_ids)
        if plan.inserted is not None:
            await self.store.insert_task(project_id, plan.inserted)

        inserted_id = plan.inserted.id if plan.inserted else None
        rows = [
            update.to_row()
            for update in structure_updates(stored, plan.tasks)
            if update.id != inserted_id
        ]
        if rows:
            await self.store.update_tasks(project_id, rows)

        report = await self.committer.commit(
            project_id, plan.hierarchy_updates, plan.predecessor_updates
        )
        log.info(
            "Applied plan to %s: %d renumbered, %d deleted",
            project_id,
            len(plan.hierarchy_updates),
            len(plan.deleted_ids),
        )
        return EditResult(plan=plan, report=report)

    async def add_task(
        self,
        project_id: str,
        name: str = "New Task",
        *,
        parent_id: str | None = None,
        position: int | None = None,
        predecessors: Iterable[str] = (),
        task_id: str | None = None,
        **fields: Any,
    ) -> EditResult:
        stored, base = await self._load_for_edit(project_id)
        task = Task(
            id=task_id or str(uuid.uuid4()),
            name=name,
            project_id=project_id,
            predecessors=list(predecessors),
            **fields,
        )
        plan = plan_insert(base, task, parent_id=parent_id, position=position)
        return await self.apply_plan(project_id, stored, plan)

    async def delete_tasks(
        self,
        project_id: str,
        task_ids: Iterable[str],
        policy: DeletionPolicy | str | None = None,
    ) -> EditResult:
        stored, base = await self._load_for_edit(project_id)
        plan = plan_delete(base, list(task_ids), policy or self.deletion_policy)
        return await self.apply_plan(project_id, stored, plan)

    async def move_task(
        self,
        project_id: str,
        task_id: str,
        new_parent_id: str | None,
        position: int | None = None,
    ) -> EditResult:
        stored, base = await self._load_for_edit(project_id)
        plan = plan_move(base, task_id, new_parent_id, position)
        return await self.apply_plan(project_id, stored, plan)

    async def indent_task(self, project_id: str, task_id: str) -> EditResult:
        stored, base = await self._load_for_edit(project_id)
        return await self.apply_plan(project_id, stored, plan_indent(base, task_id))

    async def outdent_task(self, project_id: str, task_id: str) -> EditResult:
        stored, base = await self._load_for_edit(project_id)
        return await self.apply_plan(project_id, stored, plan_outdent(base, task_id))

    async def normalize(self, project_id: str, *, force: bool = False) -> EditResult | None:
        stored, base = await self._load_for_edit(project_id)
        if not force and not needs_normalization(stored):
            log.debug("Project %s numbering already canonical", project_id)
            return None
        return await self.apply_plan(project_id, stored, plan_normalize(base))

    async def repair_self_references(self, project_id: str) -> SelfReferenceReport:
        await self.flush(project_id)
        report = repair_self_references(await self.load(project_id))
        if report.updates:
            await self.committer.commit(project_id, (), report.updates)
        return report

    async def check(self, project_id: str) -> dict[str, Any]:
        tasks = await self.load(project_id)
        audit: IntegrityReport = audit_schedule(tasks)
        return {
            "project_id": project_id,
            "task_count": len(tasks),
            "needs_normalization": needs_normalization(tasks),
            "audit": audit.to_dict(),
        }

    async def recover(self, project_id: str) -> dict[str, Any]:
        """Re-establish canonical numbering after an interrupted commit."""
        before = await self.check(project_id)
        result = await self.normalize(project_id, force=True)
        after = await self.check(project_id)
        return {
            "before": before,
            "normalized": result.to_dict() if result else None,
            "after": after,
        }

    async def validate_predecessors(
        self, project_id: str, task_id: str, references: Any
    ) -> ValidationResult:
        tasks = await self.load(project_id)
        task = next((item for item in tasks if item.id == task_id), None)
        if task is None:
            raise StructureError(f"Unknown task: {task_id}", task_id=task_id)
        return validate_predecessors(task, references, tasks)
