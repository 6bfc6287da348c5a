from __future__ import annotations

import asyncio
import copy
from collections import Counter
from collections.abc import Iterable, Sequence
from typing import Any

from ganttkit.hierarchy import sort_key
from ganttkit.models import HierarchyUpdate, Task, utcnow_iso
from ganttkit.references import coerce_predecessors
from ganttkit.stores.base import DuplicateNumberError, StoreError, TaskNotFoundError, TaskStore


class ProjectTable:
    """Rows of one project keyed by id, with per-project number uniqueness."""

    def __init__(self, project_id: str, rows: Iterable[dict[str, Any]] = ()) -> None:
        self.project_id = project_id
        self.rows: dict[str, dict[str, Any]] = {}
        for row in rows:
            self.rows[str(row["id"])] = dict(row)

    def tasks(self) -> list[Task]:
        tasks = [Task.from_row(row) for row in self.rows.values()]
        tasks.sort(key=lambda task: sort_key(task.hierarchy_number))
        return tasks

    def to_rows(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(row) for row in self.rows.values()]

    def _check_number(self, task_id: str, number: str | None) -> None:
        if number is None:
            return
        for other_id, row in self.rows.items():
            if other_id != task_id and row.get("hierarchy_number") == number:
                raise DuplicateNumberError(
                    f"Hierarchy number {number} already used by task {other_id}",
                    project_id=self.project_id,
                    task_id=task_id,
                    hierarchy_number=number,
                )

    def insert(self, task: Task) -> Task:
        if task.id in self.rows:
            raise StoreError(
                f"Task id already exists: {task.id}", project_id=self.project_id, task_id=task.id
            )
        self._check_number(task.id, task.hierarchy_number)
        now = utcnow_iso()
        stored = task.copy(
            project_id=self.project_id,
            created_at=task.created_at or now,
            updated_at=task.updated_at or now,
        )
        self.rows[stored.id] = stored.to_row()
        return stored

    def update(self, task_id: str, fields: dict[str, Any]) -> None:
        row = self.rows.get(task_id)
        if row is None:
            raise TaskNotFoundError(
                f"Task not found: {task_id}", project_id=self.project_id, task_id=task_id
            )
        if "id" in fields and str(fields["id"]) != task_id:
            raise StoreError("Task ids are immutable", project_id=self.project_id, task_id=task_id)
        if "hierarchy_number" in fields:
            self._check_number(task_id, fields["hierarchy_number"])
        for name, value in fields.items():
            if name == "id":
                continue
            if name in ("predecessors", "predecessor"):
                row["predecessors"] = coerce_predecessors(value)
            else:
                row[name] = value

    def update_many(self, rows: Sequence[dict[str, Any]]) -> int:
        written = 0
        for row in rows:
            fields = dict(row)
            task_id = str(fields.pop("id"))
            self.update(task_id, fields)
            written += 1
        return written

    def delete(self, ids: Iterable[str]) -> int:
        removed = 0
        for task_id in ids:
            if self.rows.pop(task_id, None) is not None:
                removed += 1
        return removed

    def renumber_all(self, updates: Sequence[HierarchyUpdate]) -> int:
        missing = [update.id for update in updates if update.id not in self.rows]
        if missing:
            raise TaskNotFoundError(
                f"Tasks not found: {', '.join(missing)}", project_id=self.project_id
            )
        snapshot = {update.id: dict(self.rows[update.id]) for update in updates}
        now = utcnow_iso()
        for update in updates:
            self.rows[update.id]["hierarchy_number"] = update.hierarchy_number
            self.rows[update.id]["updated_at"] = now
        counts = Counter(
            row.get("hierarchy_number") for row in self.rows.values() if row.get("hierarchy_number")
        )
        clashes = sorted(number for number, count in counts.items() if count > 1)
        if clashes:
            self.rows.update(snapshot)
            raise DuplicateNumberError(
                f"Renumbering would duplicate: {', '.join(clashes)}",
                project_id=self.project_id,
                hierarchy_number=clashes[0],
            )
        return len(updates)


class MemoryTaskStore(TaskStore):
    """Process-local store, used for tests and the ``memory`` backend."""

    supports_atomic_renumber = True

    def __init__(self) -> None:
        self._tables: dict[str, ProjectTable] = {}

    def table(self, project_id: str) -> ProjectTable:
        return self._tables.setdefault(project_id, ProjectTable(project_id))

    def seed(self, project_id: str, tasks: Iterable[Task]) -> None:
        table = self.table(project_id)
        for task in tasks:
            table.insert(task)

    async def select_tasks(self, project_id: str) -> list[Task]:
        await asyncio.sleep(0)
        return self.table(project_id).tasks()

    async def insert_task(self, project_id: str, task: Task) -> Task:
        await asyncio.sleep(0)
        return self.table(project_id).insert(task)

    async def update_tasks(self, project_id: str, rows: Sequence[dict[str, Any]]) -> int:
        await asyncio.sleep(0)
        return self.table(project_id).update_many(rows)

    async def update_task(self, project_id: str, task_id: str, fields: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self.table(project_id).update(task_id, fields)

    async def delete_tasks(self, project_id: str, ids: Sequence[str]) -> int:
        await asyncio.sleep(0)
        return self.table(project_id).delete(ids)

    async def atomic_renumber(self, project_id: str, updates: Sequence[HierarchyUpdate]) -> int:
        await asyncio.sleep(0)
        return self.table(project_id).renumber_all(updates)
