"""Structural edits planned as pure functions over a task list.

Every planner works on copies and returns a ``StructuralPlan`` describing the
rows to delete or insert and the numbering, predecessor and structure changes
to persist. Planners run the same pipeline: apply the structure change,
compact sibling order, renumber, diff, and remap predecessor references.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from ganttkit.hierarchy import (
    children_by_parent,
    hierarchy_updates,
    is_valid_number,
    numbering_map,
    renumber,
    sibling_key,
    sibling_position,
)
from ganttkit.logs import get_logger
from ganttkit.models import HierarchyUpdate, PredecessorUpdate, StructureUpdate, Task
from ganttkit.references import ParsedReference, parse_reference, reference_target
from ganttkit.remap import remap_predecessors

log = get_logger("operations")


class StructureError(RuntimeError):
    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class DeletionPolicy(str, Enum):
    PREVIOUS_SIBLING = "previous_sibling"
    DROP = "drop"


@dataclass(slots=True)
class StructuralPlan:
    tasks: list[Task]
    hierarchy_updates: list[HierarchyUpdate] = field(default_factory=list)
    predecessor_updates: list[PredecessorUpdate] = field(default_factory=list)
    structure_updates: list[StructureUpdate] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    inserted: Task | None = None
    numbering: dict[str, str] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not (
            self.hierarchy_updates
            or self.predecessor_updates
            or self.structure_updates
            or self.deleted_ids
            or self.inserted
        )

    def summary(self) -> dict:
        return {
            "renumbered": len(self.hierarchy_updates),
            "predecessors_updated": len(self.predecessor_updates),
            "restructured": len(self.structure_updates),
            "deleted": list(self.deleted_ids),
            "inserted": self.inserted.id if self.inserted else None,
            "numbering": dict(self.numbering),
        }


def _effective_parent(task: Task, known_ids: set[str]) -> str | None:
    if task.parent_id in known_ids and task.parent_id != task.id:
        return task.parent_id
    return None


def _siblings(tasks: Sequence[Task], parent_id: str | None) -> list[Task]:
    known_ids = {task.id for task in tasks}
    members = [
        (index, task)
        for index, task in enumerate(tasks)
        if _effective_parent(task, known_ids) == parent_id
    ]
    members.sort(key=lambda item: sibling_key(item[1], item[0]))
    return [task for _, task in members]


def _lookup(tasks: Sequence[Task], task_id: str) -> Task:
    for task in tasks:
        if task.id == task_id:
            return task
    raise StructureError(f"Unknown task: {task_id}", task_id=task_id)


def descendant_ids(tasks: Sequence[Task], task_id: str) -> set[str]:
    children: dict[str, list[str]] = {}
    for task in tasks:
        if task.parent_id is not None:
            children.setdefault(task.parent_id, []).append(task.id)
    found: set[str] = set()
    stack = list(children.get(task_id, []))
    while stack:
        current = stack.pop()
        if current in found or current == task_id:
            continue
        found.add(current)
        stack.extend(children.get(current, []))
    return found


def _place(tasks: list[Task], task: Task, parent_id: str | None, position: int | None) -> None:
    group = [member for member in _siblings(tasks, parent_id) if member.id != task.id]
    if position is None or position > len(group):
        position = len(group)
    group.insert(max(position, 0), task)
    task.parent_id = parent_id
    for index, member in enumerate(group):
        member.order_index = index


def _compact(tasks: Sequence[Task]) -> list[Task]:
    compacted = [task.copy() for task in tasks]
    for indexes in children_by_parent(compacted).values():
        for order, index in enumerate(indexes):
            compacted[index].order_index = order
    return compacted


def structure_updates(before: Sequence[Task], after: Sequence[Task]) -> list[StructureUpdate]:
    old_by_id = {task.id: task for task in before}
    updates: list[StructureUpdate] = []
    for task in after:
        old = old_by_id.get(task.id)
        if old is None:
            continue
        if old.parent_id != task.parent_id or old.order_index != task.order_index:
            updates.append(
                StructureUpdate(id=task.id, parent_id=task.parent_id, order_index=task.order_index)
            )
    return updates


def _redirect_deleted(
    tasks: Sequence[Task],
    old_numbers: dict[str, str | None],
    deleted_numbers: set[str],
    redirects: dict[str, str | None],
) -> tuple[list[Task], set[str]]:
    redirected: set[str] = set()
    result: list[Task] = []
    for task in tasks:
        own = old_numbers.get(task.id)
        kept: list[str] = []
        changed = False
        for raw in task.predecessors:
            parsed = parse_reference(raw)
            if not isinstance(parsed, ParsedReference) or parsed.target not in deleted_numbers:
                kept.append(raw)
                continue
            changed = True
            target = redirects.get(parsed.target)
            if target is None or target == own:
                log.info("Removing reference %s from task %s", raw, task.id)
                continue
            kept.append(parsed.with_target(target).serialize())
        if changed:
            redirected.add(task.id)
            result.append(task.copy(predecessors=kept))
        else:
            result.append(task)
    return result, redirected


def _finish(
    before: Sequence[Task],
    edited: Sequence[Task],
    *,
    deleted_ids: Iterable[str] = (),
    inserted_id: str | None = None,
    deleted_numbers: set[str] | None = None,
    redirects: dict[str, str | None] | None = None,
) -> StructuralPlan:
    after = renumber(_compact(edited))
    # a provisional number was never visible to other tasks' references
    numbering = numbering_map([task for task in before if task.id != inserted_id], after)

    working: list[Task] = after
    redirected: set[str] = set()
    if deleted_numbers:
        old_numbers = {task.id: task.hierarchy_number for task in before}
        working, redirected = _redirect_deleted(
            after, old_numbers, deleted_numbers, redirects or {}
        )

    remapped = {update.task_id: update for update in remap_predecessors(working, numbering)}
    final_tasks: list[Task] = []
    predecessor_updates: list[PredecessorUpdate] = []
    for task in working:
        if task.id in remapped:
            task = task.copy(predecessors=list(remapped[task.id].new_predecessors))
        elif task.id not in redirected:
            final_tasks.append(task)
            continue
        final_tasks.append(task)
        if task.id != inserted_id:
            predecessor_updates.append(
                PredecessorUpdate(task_id=task.id, new_predecessors=list(task.predecessors))
            )

    inserted = None
    if inserted_id is not None:
        provisional = next(task.hierarchy_number for task in before if task.id == inserted_id)
        final = next(task for task in final_tasks if task.id == inserted_id)
        inserted = final.copy(hierarchy_number=provisional)

    return StructuralPlan(
        tasks=final_tasks,
        hierarchy_updates=hierarchy_updates(before, final_tasks),
        predecessor_updates=predecessor_updates,
        structure_updates=[
            update for update in structure_updates(before, final_tasks) if update.id != inserted_id
        ],
        deleted_ids=list(deleted_ids),
        inserted=inserted,
        numbering=numbering,
    )


def provisional_number(tasks: Sequence[Task], parent_id: str | None) -> str:
    """Next free sibling slot under ``parent_id``, above the current maximum."""
    prefix = ""
    if parent_id is not None:
        prefix = f"{_lookup(tasks, parent_id).hierarchy_number}."
    highest = 0
    for sibling in _siblings(tasks, parent_id):
        position = sibling_position(sibling.hierarchy_number or "")
        if position is not None:
            highest = max(highest, position)
    taken = {task.hierarchy_number for task in tasks}
    candidate = highest + 1
    while f"{prefix}{candidate}" in taken:
        candidate += 1
    return f"{prefix}{candidate}"


def plan_insert(
    tasks: Sequence[Task],
    new_task: Task,
    parent_id: str | None = None,
    position: int | None = None,
) -> StructuralPlan:
    if any(task.id == new_task.id for task in tasks):
        raise StructureError(f"Task id already exists: {new_task.id}", task_id=new_task.id)
    if parent_id is not None:
        _lookup(tasks, parent_id)

    created = new_task.copy(
        parent_id=parent_id,
        hierarchy_number=provisional_number(tasks, parent_id),
    )
    before = [*tasks, created.copy()]
    edited = [task.copy() for task in tasks]
    edited.append(created)
    _place(edited, created, parent_id, position)
    return _finish(before, edited, inserted_id=created.id)


def _deletion_redirects(
    tasks: Sequence[Task], deleted: set[str], policy: DeletionPolicy
) -> dict[str, str | None]:
    redirects: dict[str, str | None] = {}
    if policy is DeletionPolicy.DROP:
        return redirects

    known_ids = {task.id for task in tasks}
    by_id = {task.id: task for task in tasks}
    for task_id in deleted:
        origin = by_id[task_id]
        if not is_valid_number(origin.hierarchy_number):
            continue
        target = None
        current: Task | None = origin
        while current is not None and target is None:
            siblings = _siblings(tasks, _effective_parent(current, known_ids))
            index = next(i for i, sibling in enumerate(siblings) if sibling.id == current.id)
            for candidate in reversed(siblings[:index]):
                if candidate.id not in deleted and is_valid_number(candidate.hierarchy_number):
                    target = candidate.hierarchy_number
                    break
            if target is not None:
                break
            parent = by_id.get(_effective_parent(current, known_ids) or "")
            current = parent if parent is not None and parent.id in deleted else None
        redirects[origin.hierarchy_number] = target
    return redirects


def plan_delete(
    tasks: Sequence[Task],
    task_ids: Iterable[str],
    policy: DeletionPolicy | str = DeletionPolicy.PREVIOUS_SIBLING,
) -> StructuralPlan:
    """Delete tasks with their subtrees and repoint references to them."""
    policy = DeletionPolicy(policy)
    deleted: set[str] = set()
    for task_id in task_ids:
        _lookup(tasks, task_id)
        deleted.add(task_id)
        deleted |= descendant_ids(tasks, task_id)

    survivors = [task.copy() for task in tasks if task.id not in deleted]
    surviving_numbers = {task.hierarchy_number for task in survivors}
    deleted_numbers = {
        task.hierarchy_number
        for task in tasks
        if task.id in deleted
        and is_valid_number(task.hierarchy_number)
        and task.hierarchy_number not in surviving_numbers
    }
    redirects = _deletion_redirects(tasks, deleted, policy)
    ordered_deleted = [task.id for task in tasks if task.id in deleted]
    log.debug("Deleting %d task(s) with policy %s", len(ordered_deleted), policy.value)
    return _finish(
        tasks,
        survivors,
        deleted_ids=ordered_deleted,
        deleted_numbers=deleted_numbers,
        redirects=redirects,
    )


def plan_move(
    tasks: Sequence[Task],
    task_id: str,
    new_parent_id: str | None,
    position: int | None = None,
) -> StructuralPlan:
    """Move a task (with its subtree) under ``new_parent_id`` at ``position``."""
    _lookup(tasks, task_id)
    if new_parent_id is not None:
        _lookup(tasks, new_parent_id)
        if new_parent_id == task_id or new_parent_id in descendant_ids(tasks, task_id):
            raise StructureError(
                f"Cannot move task {task_id} into its own subtree", task_id=task_id
            )
    edited = [task.copy() for task in tasks]
    moving = _lookup(edited, task_id)
    _place(edited, moving, new_parent_id, position)
    return _finish(tasks, edited)


def _previous_sibling(tasks: Sequence[Task], task: Task) -> Task | None:
    known_ids = {item.id for item in tasks}
    siblings = _siblings(tasks, _effective_parent(task, known_ids))
    index = next(i for i, sibling in enumerate(siblings) if sibling.id == task.id)
    return siblings[index - 1] if index > 0 else None


def can_indent(tasks: Sequence[Task], task_id: str) -> bool:
    return _previous_sibling(tasks, _lookup(tasks, task_id)) is not None


def plan_indent(tasks: Sequence[Task], task_id: str) -> StructuralPlan:
    task = _lookup(tasks, task_id)
    previous = _previous_sibling(tasks, task)
    if previous is None:
        raise StructureError(
            f"Task {task.hierarchy_number} has no previous sibling", task_id=task_id
        )
    return plan_move(tasks, task_id, previous.id, None)


def can_outdent(tasks: Sequence[Task], task_id: str) -> bool:
    known_ids = {task.id for task in tasks}
    return _effective_parent(_lookup(tasks, task_id), known_ids) is not None


def plan_outdent(tasks: Sequence[Task], task_id: str) -> StructuralPlan:
    task = _lookup(tasks, task_id)
    known_ids = {item.id for item in tasks}
    parent_id = _effective_parent(task, known_ids)
    if parent_id is None:
        raise StructureError(f"Task {task.hierarchy_number} is already top level", task_id=task_id)
    parent = _lookup(tasks, parent_id)
    grandparent_id = _effective_parent(parent, known_ids)
    siblings = _siblings(tasks, grandparent_id)
    index = next(i for i, sibling in enumerate(siblings) if sibling.id == parent_id)
    return plan_move(tasks, task_id, grandparent_id, index + 1)


def plan_normalize(tasks: Sequence[Task]) -> StructuralPlan:
    return _finish(tasks, [task.copy() for task in tasks])


def dependent_tasks(tasks: Sequence[Task], number: str) -> list[Task]:
    return [
        task
        for task in tasks
        if any(reference_target(raw) == number for raw in task.predecessors)
    ]
