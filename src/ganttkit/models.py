from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from ganttkit.references import coerce_predecessors

STRUCTURAL_FIELDS = frozenset({"id", "hierarchy_number", "parent_id", "order_index"})

_ROW_FIELDS = (
    "id",
    "project_id",
    "name",
    "hierarchy_number",
    "parent_id",
    "order_index",
    "predecessors",
    "start_date",
    "end_date",
    "duration_days",
    "progress_percent",
    "resources",
    "created_at",
    "updated_at",
)


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Task:
    id: str
    hierarchy_number: str | None = None
    parent_id: str | None = None
    order_index: int = 0
    predecessors: list[str] = field(default_factory=list)
    name: str = "New Task"
    project_id: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    duration_days: int = 1
    progress_percent: int = 0
    resources: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def copy(self, **changes: Any) -> Task:
        if "predecessors" not in changes:
            changes["predecessors"] = list(self.predecessors)
        return replace(self, **changes)

    def to_row(self) -> dict[str, Any]:
        row = {name: getattr(self, name) for name in _ROW_FIELDS}
        row["predecessors"] = list(self.predecessors)
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Task:
        data = {name: row[name] for name in _ROW_FIELDS if name in row}
        # legacy rows use the singular column name
        raw_predecessors = row.get("predecessors", row.get("predecessor"))
        data["predecessors"] = coerce_predecessors(raw_predecessors)
        if data.get("order_index") is None:
            data["order_index"] = 0
        data["id"] = str(row["id"])
        return cls(**data)


@dataclass(slots=True)
class HierarchyUpdate:
    id: str
    hierarchy_number: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "hierarchy_number": self.hierarchy_number}


@dataclass(slots=True)
class PredecessorUpdate:
    task_id: str
    new_predecessors: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"taskId": self.task_id, "newPredecessors": list(self.new_predecessors)}


@dataclass(slots=True)
class StructureUpdate:
    id: str
    parent_id: str | None
    order_index: int

    def to_row(self) -> dict[str, Any]:
        return {"id": self.id, "parent_id": self.parent_id, "order_index": self.order_index}
