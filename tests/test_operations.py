import pytest

from ganttkit.hierarchy import needs_normalization, renumber
from ganttkit.models import Task
from ganttkit.operations import (
    DeletionPolicy,
    StructureError,
    can_indent,
    can_outdent,
    dependent_tasks,
    plan_delete,
    plan_indent,
    plan_insert,
    plan_move,
    plan_normalize,
    plan_outdent,
)


def _schedule() -> list[Task]:
    """1, 2 (with 2.1, 2.2), 3."""
    return [
        Task(id="a", hierarchy_number="1", order_index=0),
        Task(id="b", hierarchy_number="2", order_index=1),
        Task(id="b1", hierarchy_number="2.1", parent_id="b", order_index=0),
        Task(id="b2", hierarchy_number="2.2", parent_id="b", order_index=1, predecessors=["2.1"]),
        Task(id="c", hierarchy_number="3", order_index=2, predecessors=["2FS+1"]),
    ]


def _numbers(tasks: list[Task]) -> dict[str, str | None]:
    return {task.id: task.hierarchy_number for task in tasks}


def _predecessors(tasks: list[Task]) -> dict[str, list[str]]:
    return {task.id: task.predecessors for task in tasks}


def test_delete_middle_task_redirects_to_previous_sibling() -> None:
    tasks = [
        Task(id="a", hierarchy_number="1", order_index=0),
        Task(id="b", hierarchy_number="2", order_index=1),
        Task(id="c", hierarchy_number="3", order_index=2, predecessors=["2"]),
    ]

    plan = plan_delete(tasks, ["b"], DeletionPolicy.PREVIOUS_SIBLING)

    assert plan.deleted_ids == ["b"]
    assert _numbers(plan.tasks) == {"a": "1", "c": "2"}
    assert _predecessors(plan.tasks)["c"] == ["1"]
    assert [update.to_dict() for update in plan.predecessor_updates] == [
        {"taskId": "c", "newPredecessors": ["1"]}
    ]
    assert plan.numbering == {"3": "2"}


def test_delete_middle_task_drop_policy_removes_reference() -> None:
    tasks = [
        Task(id="a", hierarchy_number="1", order_index=0),
        Task(id="b", hierarchy_number="2", order_index=1),
        Task(id="c", hierarchy_number="3", order_index=2, predecessors=["2"]),
    ]

    plan = plan_delete(tasks, ["b"], "drop")

    assert _predecessors(plan.tasks)["c"] == []
    assert plan.predecessor_updates[0].new_predecessors == []


def test_delete_removes_subtree_and_remaps_survivors() -> None:
    plan = plan_delete(_schedule(), ["b"])

    assert set(plan.deleted_ids) == {"b", "b1", "b2"}
    assert _numbers(plan.tasks) == {"a": "1", "c": "2"}
    assert _predecessors(plan.tasks)["c"] == ["1FS+1"]


def test_delete_redirect_that_becomes_self_reference_is_removed() -> None:
    tasks = [
        Task(id="a", hierarchy_number="1", order_index=0, predecessors=["2", "3"]),
        Task(id="b", hierarchy_number="2", order_index=1),
        Task(id="c", hierarchy_number="3", order_index=2),
    ]

    plan = plan_delete(tasks, ["b"])

    assert _predecessors(plan.tasks)["a"] == ["2"]


def test_delete_first_child_falls_back_to_deleted_parent_sibling() -> None:
    tasks = _schedule()
    tasks[4].predecessors = ["2.1"]

    plan = plan_delete(tasks, ["b"])

    assert _predecessors(plan.tasks)["c"] == ["1"]


def test_delete_first_child_with_surviving_parent_removes_reference() -> None:
    tasks = _schedule()
    tasks[4].predecessors = ["2.1SS"]

    plan = plan_delete(tasks, ["b1"])

    assert _numbers(plan.tasks)["b2"] == "2.1"
    assert _predecessors(plan.tasks)["c"] == []
    assert _predecessors(plan.tasks)["b2"] == []


def test_insert_at_front_shifts_siblings_and_references() -> None:
    new = Task(id="n", name="Mobilise")

    plan = plan_insert(_schedule(), new, position=0)

    assert plan.inserted is not None
    assert plan.inserted.hierarchy_number == "4"
    assert _numbers(plan.tasks) == {
        "a": "2",
        "b": "3",
        "b1": "3.1",
        "b2": "3.2",
        "c": "4",
        "n": "1",
    }
    assert _predecessors(plan.tasks)["c"] == ["3FS+1"]
    assert _predecessors(plan.tasks)["b2"] == ["3.1"]
    assert {update.id for update in plan.hierarchy_updates} >= {"n", "a", "b", "c"}
    assert all(update.id != "n" for update in plan.structure_updates)


def test_insert_child_gets_next_free_slot() -> None:
    plan = plan_insert(_schedule(), Task(id="n"), parent_id="b")

    assert plan.inserted is not None
    assert plan.inserted.hierarchy_number == "2.3"
    assert plan.inserted.parent_id == "b"
    assert plan.hierarchy_updates == []
    assert plan.predecessor_updates == []


def test_insert_rejects_unknown_parent_and_duplicate_id() -> None:
    with pytest.raises(StructureError):
        plan_insert(_schedule(), Task(id="n"), parent_id="nope")
    with pytest.raises(StructureError):
        plan_insert(_schedule(), Task(id="a"))


def test_move_swaps_numbers_and_references() -> None:
    plan = plan_move(_schedule(), "c", None, 0)

    assert _numbers(plan.tasks) == {
        "c": "1",
        "a": "2",
        "b": "3",
        "b1": "3.1",
        "b2": "3.2",
    }
    assert _predecessors(plan.tasks)["c"] == ["3FS+1"]
    assert plan.numbering["3"] == "1"


def test_move_into_own_subtree_is_rejected() -> None:
    with pytest.raises(StructureError):
        plan_move(_schedule(), "b", "b1")
    with pytest.raises(StructureError):
        plan_move(_schedule(), "b", "b")


def test_indent_and_outdent() -> None:
    tasks = _schedule()
    assert can_indent(tasks, "c")
    assert not can_indent(tasks, "a")
    assert can_outdent(tasks, "b1")
    assert not can_outdent(tasks, "a")

    indented = plan_indent(tasks, "c")
    assert _numbers(indented.tasks)["c"] == "2.3"
    assert _predecessors(indented.tasks)["c"] == ["2FS+1"]

    outdented = plan_outdent(tasks, "b1")
    assert _numbers(outdented.tasks) == {
        "a": "1",
        "b": "2",
        "b2": "2.1",
        "b1": "3",
        "c": "4",
    }
    assert _predecessors(outdented.tasks)["b2"] == ["3"]
    assert _predecessors(outdented.tasks)["c"] == ["2FS+1"]

    with pytest.raises(StructureError):
        plan_indent(tasks, "a")
    with pytest.raises(StructureError):
        plan_outdent(tasks, "a")


def test_normalize_closes_gaps() -> None:
    tasks = [
        Task(id="a", hierarchy_number="2", order_index=0),
        Task(id="b", hierarchy_number="5", order_index=1, predecessors=["2"]),
    ]

    plan = plan_normalize(tasks)

    assert _numbers(plan.tasks) == {"a": "1", "b": "2"}
    assert _predecessors(plan.tasks)["b"] == ["1"]
    assert not needs_normalization(plan.tasks)
    assert plan_normalize(renumber(plan.tasks)).is_noop


def test_dependent_tasks() -> None:
    assert [task.id for task in dependent_tasks(_schedule(), "2")] == ["c"]
    assert [task.id for task in dependent_tasks(_schedule(), "2.1")] == ["b2"]
