from ganttkit.stores.base import DuplicateNumberError, StoreError, TaskNotFoundError, TaskStore
from ganttkit.stores.local import LocalTaskStore
from ganttkit.stores.memory import MemoryTaskStore, ProjectTable

__all__ = [
    "DuplicateNumberError",
    "LocalTaskStore",
    "MemoryTaskStore",
    "ProjectTable",
    "StoreError",
    "TaskNotFoundError",
    "TaskStore",
]
