from __future__ import annotations

import asyncio
import json
import os
import re
import threading
import time
from collections.abc import Callable, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from ganttkit.logs import get_logger
from ganttkit.models import HierarchyUpdate, Task, utcnow_iso
from ganttkit.stores.base import StoreError, TaskStore
from ganttkit.stores.memory import ProjectTable

log = get_logger("stores.local")

_PROJECT_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

T = TypeVar("T")


class LocalTaskStore(TaskStore):
    """One JSON document per project under ``<root>/<data_dir>/projects``.

    Every operation reads the document, applies the change through a
    ``ProjectTable`` and writes it back while holding a lock file, so separate
    processes sharing the directory never interleave a read-modify-write.
    """

    SCHEMA_VERSION = 1
    supports_atomic_renumber = True

    def __init__(
        self,
        root: Path,
        *,
        data_dir: str = ".ganttkit",
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.root = Path(root).resolve()
        self.projects_dir = self.root / data_dir / "projects"
        self.projects_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.projects_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds
        self._thread_lock = threading.Lock()

    def _project_file(self, project_id: str) -> Path:
        if not _PROJECT_ID.match(project_id or ""):
            raise StoreError(f"Unsupported project id: {project_id!r}", project_id=project_id)
        return self.projects_dir / f"{project_id}.json"

    @contextmanager
    def _state_lock(self):
        with self._thread_lock:
            start = time.monotonic()
            while True:
                try:
                    fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                    os.write(fd, str(os.getpid()).encode("utf-8"))
                    os.close(fd)
                    break
                except FileExistsError as exc:
                    if time.monotonic() - start > self.lock_timeout_seconds:
                        raise StoreError("Timed out waiting for store lock.") from exc
                    time.sleep(0.02)

            try:
                yield
            finally:
                try:
                    self.lock_file.unlink()
                except FileNotFoundError:
                    pass

    def get_envelope(self, project_id: str) -> dict[str, Any]:
        path = self._project_file(project_id)
        raw: Any = None
        if path.exists():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise StoreError(
                    f"Corrupt project file: {path}", project_id=project_id
                ) from exc

        if isinstance(raw, dict) and "data" in raw and "revision" in raw:
            return {
                "schema_version": int(raw.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw.get("revision") or 1),
                "updated_at": raw.get("updated_at") or utcnow_iso(),
                "data": raw.get("data") or [],
            }
        # bare row lists are accepted as revision 1
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1 if raw else 0,
            "updated_at": utcnow_iso(),
            "data": raw if isinstance(raw, list) else [],
        }

    def _read_table(self, project_id: str) -> ProjectTable:
        return ProjectTable(project_id, self.get_envelope(project_id)["data"])

    def _mutate(self, project_id: str, change: Callable[[ProjectTable], T]) -> T:
        with self._state_lock():
            envelope = self.get_envelope(project_id)
            table = ProjectTable(project_id, envelope["data"])
            result = change(table)
            payload = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": envelope["revision"] + 1,
                "updated_at": utcnow_iso(),
                "data": table.to_rows(),
            }
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
            self._project_file(project_id).write_text(serialized, encoding="utf-8")
        log.debug("Wrote project %s revision %d", project_id, payload["revision"])
        return result

    def list_projects(self) -> list[str]:
        return sorted(path.stem for path in self.projects_dir.glob("*.json"))

    async def select_tasks(self, project_id: str) -> list[Task]:
        table = await asyncio.to_thread(self._read_table, project_id)
        return table.tasks()

    async def insert_task(self, project_id: str, task: Task) -> Task:
        return await asyncio.to_thread(self._mutate, project_id, lambda table: table.insert(task))

    async def update_tasks(self, project_id: str, rows: Sequence[dict[str, Any]]) -> int:
        rows = [dict(row) for row in rows]
        return await asyncio.to_thread(
            self._mutate, project_id, lambda table: table.update_many(rows)
        )

    async def update_task(self, project_id: str, task_id: str, fields: dict[str, Any]) -> None:
        fields = dict(fields)
        await asyncio.to_thread(
            self._mutate, project_id, lambda table: table.update(task_id, fields)
        )

    async def delete_tasks(self, project_id: str, ids: Sequence[str]) -> int:
        ids = list(ids)
        return await asyncio.to_thread(self._mutate, project_id, lambda table: table.delete(ids))

    async def atomic_renumber(self, project_id: str, updates: Sequence[HierarchyUpdate]) -> int:
        updates = list(updates)
        return await asyncio.to_thread(
            self._mutate, project_id, lambda table: table.renumber_all(updates)
        )
