from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from ganttkit.hierarchy import format_number, is_descendant, parse_number
from ganttkit.models import Task
from ganttkit.references import (
    ParsedReference,
    coerce_predecessors,
    parse_reference,
    reference_target,
)


@dataclass(slots=True)
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _dependency_graph(tasks: Sequence[Task]) -> dict[str, list[str]]:
    graph: dict[str, list[str]] = {}
    for task in tasks:
        if not task.hierarchy_number:
            continue
        targets = [reference_target(raw) for raw in task.predecessors]
        graph[task.hierarchy_number] = [target for target in targets if target]
    return graph


def _find_cycle(graph: dict[str, list[str]], start: str) -> list[str]:
    visited: set[str] = set()
    path: list[str] = []

    def dfs(node: str) -> bool:
        path.append(node)
        for dep in graph.get(node, []):
            if dep == start:
                path.append(dep)
                return True
            if dep not in visited:
                visited.add(dep)
                if dfs(dep):
                    return True
        path.pop()
        return False

    return path if dfs(start) else []


def validate_predecessors(task: Task, references: Any, tasks: Sequence[Task]) -> ValidationResult:
    """Check a proposed predecessor list for ``task`` against the schedule."""
    result = ValidationResult()
    references = coerce_predecessors(references)
    if not references:
        return result

    own = task.hierarchy_number
    numbers = {item.hierarchy_number for item in tasks if item.hierarchy_number}
    targets: list[str] = []
    for raw in references:
        parsed = parse_reference(raw)
        if isinstance(parsed, ParsedReference):
            targets.append(parsed.target)
        else:
            result.errors.append(f"Invalid predecessor format: {raw} ({parsed.reason})")

    if own and own in targets:
        result.errors.append("A task cannot be its own predecessor")

    unknown = [target for target in targets if target not in numbers]
    if unknown:
        result.errors.append(f"Invalid task references: {', '.join(unknown)}")

    if own:
        ancestors = [target for target in targets if is_descendant(own, target)]
        if ancestors:
            result.errors.append(
                "A parent task cannot be a predecessor of its child. "
                f"Invalid: {', '.join(ancestors)}"
            )

        graph = _dependency_graph(tasks)
        graph[own] = [target for target in targets if target != own]
        cycle = _find_cycle(graph, own)
        if cycle:
            result.errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")

    duplicates = sorted(target for target, count in Counter(targets).items() if count > 1)
    if duplicates:
        result.warnings.append(f"Duplicate predecessors: {', '.join(duplicates)}")
    return result


@dataclass(slots=True)
class IntegrityReport:
    duplicate_numbers: dict[str, list[str]] = field(default_factory=dict)
    numbering_gaps: list[dict[str, Any]] = field(default_factory=list)
    orphans: list[dict[str, str]] = field(default_factory=list)
    self_references: list[dict[str, str]] = field(default_factory=list)
    dangling_references: list[dict[str, str]] = field(default_factory=list)
    malformed_references: list[dict[str, str]] = field(default_factory=list)
    placeholders: list[dict[str, str | None]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(
            (
                self.duplicate_numbers,
                self.numbering_gaps,
                self.orphans,
                self.self_references,
                self.dangling_references,
                self.malformed_references,
                self.placeholders,
            )
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["ok"] = self.ok
        return payload


def audit_schedule(tasks: Sequence[Task]) -> IntegrityReport:
    """List every numbering and reference invariant violation in ``tasks``."""
    report = IntegrityReport()

    ids_by_number: dict[str, list[str]] = defaultdict(list)
    for task in tasks:
        if parse_number(task.hierarchy_number) is None:
            report.placeholders.append(
                {"task_id": task.id, "hierarchy_number": task.hierarchy_number}
            )
        else:
            ids_by_number[task.hierarchy_number].append(task.id)
    report.duplicate_numbers = {
        number: ids for number, ids in ids_by_number.items() if len(ids) > 1
    }

    present = {parse_number(number) for number in ids_by_number}
    groups: dict[tuple[int, ...], set[int]] = defaultdict(set)
    for parts in present:
        groups[parts[:-1]].add(parts[-1])
    for parent in sorted(groups):
        positions = groups[parent]
        missing = [
            position for position in range(1, max(positions) + 1) if position not in positions
        ]
        label = format_number(parent) if parent else None
        if missing:
            report.numbering_gaps.append({"parent": label, "missing": missing})
        if parent and parent not in present:
            for position in sorted(positions):
                number = format_number((*parent, position))
                for task_id in ids_by_number[number]:
                    report.orphans.append(
                        {"task_id": task_id, "hierarchy_number": number, "missing_parent": label}
                    )

    for task in tasks:
        for raw in task.predecessors:
            parsed = parse_reference(raw)
            if not isinstance(parsed, ParsedReference):
                report.malformed_references.append(
                    {"task_id": task.id, "reference": raw, "reason": parsed.reason}
                )
            elif parsed.target == task.hierarchy_number:
                report.self_references.append(
                    {
                        "task_id": task.id,
                        "hierarchy_number": task.hierarchy_number,
                        "reference": raw,
                    }
                )
            elif parsed.target not in ids_by_number:
                report.dangling_references.append({"task_id": task.id, "reference": raw})
    return report
