from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence

from ganttkit.logs import get_logger
from ganttkit.models import HierarchyUpdate, Task
from ganttkit.references import TARGET_PATTERN

log = get_logger("hierarchy")


def parse_number(number: str | None) -> tuple[int, ...] | None:
    """Return the segments of a canonical hierarchy number, or None."""
    if not number or not TARGET_PATTERN.match(number):
        return None
    parts = number.split(".")
    if any(part != str(int(part)) or int(part) < 1 for part in parts):
        return None
    return tuple(int(part) for part in parts)


def is_valid_number(number: str | None) -> bool:
    return parse_number(number) is not None


def format_number(parts: Iterable[int]) -> str:
    return ".".join(str(part) for part in parts)


def parent_number(number: str) -> str | None:
    head, sep, _ = number.rpartition(".")
    return head if sep else None


def sibling_position(number: str) -> int | None:
    parts = parse_number(number)
    return parts[-1] if parts else None


def depth(number: str) -> int:
    return number.count(".")


def is_descendant(number: str, ancestor: str) -> bool:
    return number.startswith(ancestor + ".")


def sort_key(number: str | None) -> tuple:
    parts = parse_number(number)
    if parts is None:
        return (1, (), number or "")
    return (0, parts, "")


def sibling_key(task: Task, position: int) -> tuple:
    return (task.order_index, task.created_at is None, task.created_at or "", position)


def children_by_parent(tasks: Sequence[Task]) -> dict[str | None, list[int]]:
    known_ids = {task.id for task in tasks}
    children: dict[str | None, list[int]] = defaultdict(list)
    for index, task in enumerate(tasks):
        parent = task.parent_id
        if parent not in known_ids or parent == task.id:
            parent = None
        children[parent].append(index)
    for indexes in children.values():
        indexes.sort(key=lambda index: sibling_key(tasks[index], index))
    return children


def renumber(tasks: Sequence[Task]) -> list[Task]:
    """Assign canonical one-based outline numbers from parent and sibling order.

    The forest is built from ``parent_id``/``order_index``. A parent that is not
    part of the task set makes the task a root. Tasks caught in a parent cycle
    are unreachable from any root; they are promoted to roots, in sibling
    order, after the regular roots. Returned tasks are copies in input order.
    """
    children = children_by_parent(tasks)
    numbers: dict[int, str] = {}

    def _assign(root: int, root_number: str) -> None:
        stack = [(root, root_number)]
        while stack:
            index, number = stack.pop()
            if index in numbers:
                continue
            numbers[index] = number
            kids = children.get(tasks[index].id, [])
            # pushed in reverse so siblings pop in order
            for position in range(len(kids), 0, -1):
                child = kids[position - 1]
                if child not in numbers:
                    stack.append((child, f"{number}.{position}"))

    top_level = 0
    for index in children.get(None, []):
        top_level += 1
        _assign(index, str(top_level))

    if len(numbers) < len(tasks):
        stranded = sorted(
            (index for index in range(len(tasks)) if index not in numbers),
            key=lambda index: sibling_key(tasks[index], index),
        )
        log.warning("Promoting %d task(s) caught in a parent cycle to top level", len(stranded))
        for index in stranded:
            if index in numbers:
                continue
            top_level += 1
            _assign(index, str(top_level))

    return [task.copy(hierarchy_number=numbers[index]) for index, task in enumerate(tasks)]


def numbering_map(before: Sequence[Task], after: Sequence[Task]) -> dict[str, str]:
    """Old number to new number for every task whose number changed."""
    counts = Counter(task.hierarchy_number for task in before)
    new_by_id = {task.id: task.hierarchy_number for task in after}
    mapping: dict[str, str] = {}
    for task in before:
        old = task.hierarchy_number
        new = new_by_id.get(task.id)
        if not new or old == new or not is_valid_number(old):
            continue
        if counts[old] > 1:
            log.warning("Skipping ambiguous numbering %s shared by %d tasks", old, counts[old])
            continue
        mapping[old] = new
    return mapping


def hierarchy_updates(before: Sequence[Task], after: Sequence[Task]) -> list[HierarchyUpdate]:
    old_by_id = {task.id: task.hierarchy_number for task in before}
    return [
        HierarchyUpdate(id=task.id, hierarchy_number=task.hierarchy_number)
        for task in after
        if task.hierarchy_number and old_by_id.get(task.id) != task.hierarchy_number
    ]


def needs_normalization(tasks: Sequence[Task]) -> bool:
    """Cheap check whether the numbering already has canonical shape."""
    if not tasks:
        return False

    parsed: list[tuple[int, ...]] = []
    for task in tasks:
        parts = parse_number(task.hierarchy_number)
        if parts is None:
            log.info("Task %s has malformed numbering %r", task.id, task.hierarchy_number)
            return True
        parsed.append(parts)

    present = set(parsed)
    if len(present) != len(parsed):
        log.info("Duplicate hierarchy numbers found")
        return True

    groups: dict[tuple[int, ...], set[int]] = defaultdict(set)
    for parts in parsed:
        groups[parts[:-1]].add(parts[-1])

    if () not in groups:
        return True
    for parent, positions in groups.items():
        if parent and parent not in present:
            log.info("Children of missing parent %s", format_number(parent))
            return True
        if len(positions) != max(positions):
            label = format_number(parent) if parent else "top level"
            log.info("Gap found in numbering under %s", label)
            return True
    return False


def derive_structure(tasks: Sequence[Task]) -> list[Task]:
    """Rebuild ``parent_id`` and ``order_index`` from hierarchy numbers.

    Tasks with a usable number hang under the nearest existing ancestor number.
    Tasks without one (placeholders left by an interrupted commit) keep their
    stored parent and are ordered after the numbered siblings.
    """
    known_ids = {task.id for task in tasks}
    id_by_number: dict[str, str] = {}
    for task in tasks:
        if is_valid_number(task.hierarchy_number):
            id_by_number.setdefault(task.hierarchy_number, task.id)

    parents: list[str | None] = []
    for task in tasks:
        number = task.hierarchy_number
        if not is_valid_number(number):
            parent = task.parent_id if task.parent_id in known_ids else None
            parents.append(parent if parent != task.id else None)
            continue
        parent_id = None
        ancestor = parent_number(number)
        while ancestor is not None:
            if ancestor in id_by_number:
                parent_id = id_by_number[ancestor]
                break
            ancestor = parent_number(ancestor)
        parents.append(parent_id)

    groups: dict[str | None, list[int]] = defaultdict(list)
    for index, parent in enumerate(parents):
        groups[parent].append(index)

    order: dict[int, int] = {}
    for indexes in groups.values():
        indexes.sort(
            key=lambda index: (
                sort_key(tasks[index].hierarchy_number)[:2],
                tasks[index].order_index,
                index,
            )
        )
        for position, index in enumerate(indexes):
            order[index] = position

    return [
        task.copy(parent_id=parents[index], order_index=order[index])
        for index, task in enumerate(tasks)
    ]
