import asyncio
from typing import Any

import pytest

from ganttkit.committer import CommitError, TwoPhaseCommitter
from ganttkit.config import GanttkitConfig
from ganttkit.hierarchy import needs_normalization
from ganttkit.models import Task
from ganttkit.operations import StructureError
from ganttkit.queue import QueueFlushError
from ganttkit.service import ScheduleService
from ganttkit.stores import MemoryTaskStore, StoreError


def _store() -> MemoryTaskStore:
    store = MemoryTaskStore()
    store.seed(
        "p",
        [
            Task(id="a", hierarchy_number="1", order_index=0, name="Site prep"),
            Task(id="b", hierarchy_number="2", order_index=1, name="Foundations"),
            Task(id="b1", hierarchy_number="2.1", parent_id="b", order_index=0),
            Task(id="c", hierarchy_number="3", order_index=2, predecessors=["2FS+1"]),
        ],
    )
    return store


def _numbers(store: MemoryTaskStore) -> dict[str, str | None]:
    return {task.id: task.hierarchy_number for task in store.table("p").tasks()}


def test_add_task_at_front_persists_renumbering() -> None:
    store = _store()
    service = ScheduleService(store)

    result = asyncio.run(service.add_task("p", "Mobilise", task_id="n", position=0))

    assert _numbers(store) == {"n": "1", "a": "2", "b": "3", "b1": "3.1", "c": "4"}
    assert store.table("p").rows["c"]["predecessors"] == ["3FS+1"]
    assert store.table("p").rows["a"]["order_index"] == 1
    assert result.report.updated_count == 5
    assert result.to_dict()["inserted"] == "n"


def test_delete_uses_configured_policy() -> None:
    store = _store()
    config = GanttkitConfig.default()
    config.schedule.deletion_policy = "drop"
    service = ScheduleService.from_config(store, config)

    asyncio.run(service.delete_tasks("p", ["b"]))

    assert _numbers(store) == {"a": "1", "c": "2"}
    assert store.table("p").rows["c"]["predecessors"] == []


def test_delete_default_policy_redirects() -> None:
    store = _store()

    asyncio.run(ScheduleService(store).delete_tasks("p", ["b"]))

    assert store.table("p").rows["c"]["predecessors"] == ["1FS+1"]


def test_indent_outdent_and_move_round_trip() -> None:
    store = _store()
    service = ScheduleService(store)

    asyncio.run(service.indent_task("p", "c"))
    assert _numbers(store)["c"] == "2.2"
    assert store.table("p").rows["c"]["parent_id"] == "b"

    asyncio.run(service.outdent_task("p", "c"))
    assert _numbers(store)["c"] == "3"

    asyncio.run(service.move_task("p", "c", None, 0))
    assert _numbers(store) == {"c": "1", "a": "2", "b": "3", "b1": "3.1"}
    assert store.table("p").rows["c"]["predecessors"] == ["3FS+1"]

    with pytest.raises(StructureError):
        asyncio.run(service.move_task("p", "b", "b1"))


def test_structural_edit_flushes_session_queue_first() -> None:
    store = _store()
    service = ScheduleService(store, quiet_period=60)

    async def _run() -> None:
        service.queue_update("p", "a", {"name": "Clearing"})
        await service.add_task("p", "Later", task_id="z")

    asyncio.run(_run())

    assert store.table("p").rows["a"]["name"] == "Clearing"
    assert service.session_queue("p").pending_count() == 0


def test_normalize_only_when_needed() -> None:
    store = MemoryTaskStore()
    store.seed(
        "p",
        [
            Task(id="a", hierarchy_number="2"),
            Task(id="b", hierarchy_number="4", predecessors=["2SS"]),
            Task(id="b1", hierarchy_number="4.3"),
        ],
    )
    service = ScheduleService(store)

    result = asyncio.run(service.normalize("p"))

    assert result is not None
    assert _numbers(store) == {"a": "1", "b": "2", "b1": "2.1"}
    assert store.table("p").rows["b"]["predecessors"] == ["1SS"]
    assert store.table("p").rows["b1"]["parent_id"] == "b"
    assert asyncio.run(service.normalize("p")) is None


def test_repair_self_references_persists_fixes() -> None:
    store = MemoryTaskStore()
    store.seed(
        "p",
        [
            Task(id="a", hierarchy_number="1", predecessors=["1"]),
            Task(id="b", hierarchy_number="2"),
            Task(id="c", hierarchy_number="3", predecessors=["3FS+2"]),
        ],
    )

    report = asyncio.run(ScheduleService(store).repair_self_references("p"))

    assert report.fixed_count == 1
    assert len(report.unresolved) == 1
    assert store.table("p").rows["c"]["predecessors"] == ["2FS+2"]
    assert store.table("p").rows["a"]["predecessors"] == ["1"]


def test_recover_after_interrupted_commit() -> None:
    class FailingSecondPhase(MemoryTaskStore):
        supports_atomic_renumber = False

        def __init__(self) -> None:
            super().__init__()
            self.armed = True

        async def update_task(self, project_id: str, task_id: str, fields: dict[str, Any]) -> None:
            if self.armed and task_id == "c" and fields.get("hierarchy_number") == "1":
                raise StoreError("connection reset", task_id=task_id)
            await super().update_task(project_id, task_id, fields)

    store = FailingSecondPhase()
    store.seed(
        "p",
        [
            Task(id="a", hierarchy_number="1", order_index=0),
            Task(id="b", hierarchy_number="2", order_index=1),
            Task(id="c", hierarchy_number="3", order_index=2),
        ],
    )
    service = ScheduleService(store, committer=TwoPhaseCommitter(store))

    with pytest.raises(CommitError) as excinfo:
        asyncio.run(service.move_task("p", "c", None, 0))
    assert excinfo.value.phase == 2

    check = asyncio.run(service.check("p"))
    assert check["needs_normalization"] is True
    assert check["audit"]["placeholders"]

    store.armed = False
    outcome = asyncio.run(service.recover("p"))

    assert outcome["after"]["audit"]["ok"] is True
    assert not needs_normalization(store.table("p").tasks())
    # the stranded placeholder row lands after its numbered siblings
    assert _numbers(store) == {"a": "1", "b": "2", "c": "3"}


def test_validate_predecessors_through_service() -> None:
    service = ScheduleService(_store())

    result = asyncio.run(service.validate_predecessors("p", "c", ["3"]))

    assert not result.is_valid
    with pytest.raises(StructureError):
        asyncio.run(service.validate_predecessors("p", "ghost", ["1"]))


def test_close_flushes_every_session_even_when_one_fails() -> None:
    store = MemoryTaskStore()
    store.seed("good", [Task(id="g", hierarchy_number="1")])
    service = ScheduleService(store, quiet_period=60)

    async def _run() -> None:
        service.queue_update("missing", "ghost", {"name": "lost"})
        service.queue_update("good", "g", {"name": "renamed"})
        with pytest.raises(QueueFlushError) as excinfo:
            await service.close()
        assert excinfo.value.pending == 1
        assert "missing" in str(excinfo.value)

    asyncio.run(_run())

    assert store.table("good").rows["g"]["name"] == "renamed"
    assert service.session_queue("missing").pending_snapshot() == {"ghost": {"name": "lost"}}
