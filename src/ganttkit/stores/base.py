from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from ganttkit.models import HierarchyUpdate, Task


class StoreError(RuntimeError):
    """Raised when a task store operation fails."""

    def __init__(
        self,
        message: str,
        *,
        project_id: str | None = None,
        task_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.project_id = project_id
        self.task_id = task_id


class DuplicateNumberError(StoreError):
    """Raised when a write would give two tasks of a project the same number."""

    def __init__(
        self,
        message: str,
        *,
        project_id: str | None = None,
        task_id: str | None = None,
        hierarchy_number: str | None = None,
    ) -> None:
        super().__init__(message, project_id=project_id, task_id=task_id)
        self.hierarchy_number = hierarchy_number


class TaskNotFoundError(StoreError):
    """Raised when a row id does not exist in the project."""


class TaskStore(ABC):
    supports_atomic_renumber: bool = False

    @abstractmethod
    async def select_tasks(self, project_id: str) -> list[Task]:
        """Return every task of a project."""

    @abstractmethod
    async def insert_task(self, project_id: str, task: Task) -> Task:
        """Insert one task row and return it as stored."""

    @abstractmethod
    async def update_tasks(self, project_id: str, rows: Sequence[dict[str, Any]]) -> int:
        """Apply ``{"id", ...fields}`` rows in order and return the count written."""

    @abstractmethod
    async def update_task(self, project_id: str, task_id: str, fields: dict[str, Any]) -> None:
        """Apply ``fields`` to a single row."""

    @abstractmethod
    async def delete_tasks(self, project_id: str, ids: Sequence[str]) -> int:
        """Delete rows by id and return how many existed."""

    async def atomic_renumber(self, project_id: str, updates: Sequence[HierarchyUpdate]) -> int:
        """Apply every number in one step, checking uniqueness only at the end."""
        raise StoreError(
            f"{type(self).__name__} does not support atomic renumbering",
            project_id=project_id,
        )
