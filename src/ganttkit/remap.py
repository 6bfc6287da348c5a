from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from ganttkit.hierarchy import parent_number, sibling_position
from ganttkit.logs import get_logger
from ganttkit.models import PredecessorUpdate, Task
from ganttkit.references import ParsedReference, parse_reference

log = get_logger("remap")


def remap_predecessors(
    tasks: Sequence[Task], old_to_new: Mapping[str, str]
) -> list[PredecessorUpdate]:
    """Rewrite reference targets through ``old_to_new``.

    Every reference is looked up in the given mapping, never in an already
    rewritten value, so ``{"1": "2", "2": "1"}`` swaps cleanly.
    """
    if not old_to_new:
        return []

    updates: list[PredecessorUpdate] = []
    for task in tasks:
        changed = False
        rewritten: list[str] = []
        for raw in task.predecessors:
            parsed = parse_reference(raw)
            if isinstance(parsed, ParsedReference) and parsed.target in old_to_new:
                rewritten.append(parsed.with_target(old_to_new[parsed.target]).serialize())
                changed = True
            else:
                rewritten.append(raw)
        if changed:
            updates.append(PredecessorUpdate(task_id=task.id, new_predecessors=rewritten))
    log.debug("Remapped predecessors on %d task(s)", len(updates))
    return updates


@dataclass(slots=True)
class SelfReferenceFix:
    task_id: str
    hierarchy_number: str
    old_reference: str
    new_reference: str

    def to_dict(self) -> dict[str, str]:
        return {
            "task_id": self.task_id,
            "hierarchy_number": self.hierarchy_number,
            "old": self.old_reference,
            "new": self.new_reference,
        }


@dataclass(slots=True)
class SelfReferenceReport:
    fixed_count: int = 0
    fixes: list[SelfReferenceFix] = field(default_factory=list)
    unresolved: list[dict[str, str]] = field(default_factory=list)
    updates: list[PredecessorUpdate] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "fixed": self.fixed_count,
            "fixes": [fix.to_dict() for fix in self.fixes],
            "unresolved": list(self.unresolved),
        }


def _previous_sibling(number: str) -> str | None:
    position = sibling_position(number)
    if position is None or position <= 1:
        return None
    parent = parent_number(number)
    return f"{parent}.{position - 1}" if parent else str(position - 1)


def repair_self_references(tasks: Sequence[Task]) -> SelfReferenceReport:
    """Point self references at the previous sibling where one exists.

    A first child (or the first top-level task) has no previous sibling; such
    references are reported as unresolved and left untouched.
    """
    report = SelfReferenceReport()
    for task in tasks:
        number = task.hierarchy_number
        if not number:
            continue
        replacement = _previous_sibling(number)
        changed = False
        rewritten: list[str] = []
        for raw in task.predecessors:
            parsed = parse_reference(raw)
            if not isinstance(parsed, ParsedReference) or parsed.target != number:
                rewritten.append(raw)
                continue
            if replacement is None:
                log.warning(
                    "Task %s (%s) references itself with no earlier sibling", task.id, number
                )
                report.unresolved.append(
                    {"task_id": task.id, "hierarchy_number": number, "reference": raw}
                )
                rewritten.append(raw)
                continue
            new_reference = parsed.with_target(replacement).serialize()
            report.fixes.append(
                SelfReferenceFix(
                    task_id=task.id,
                    hierarchy_number=number,
                    old_reference=raw,
                    new_reference=new_reference,
                )
            )
            report.fixed_count += 1
            rewritten.append(new_reference)
            changed = True
        if changed:
            report.updates.append(PredecessorUpdate(task_id=task.id, new_predecessors=rewritten))
    return report
