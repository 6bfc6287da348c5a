from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from ganttkit.committer import CommitError, TwoPhaseCommitter, handle_bulk_renumber
from ganttkit.config import ConfigError, GanttkitConfig, load_config, save_config
from ganttkit.hierarchy import depth, sort_key
from ganttkit.logs import get_logger, setup_logging
from ganttkit.operations import StructureError
from ganttkit.queue import QueueFlushError
from ganttkit.service import ScheduleService
from ganttkit.stores import LocalTaskStore, MemoryTaskStore, StoreError, TaskStore

T = TypeVar("T")

DEFAULT_CONFIG = "ganttkit.toml"
DOMAIN_ERRORS = (CommitError, ConfigError, QueueFlushError, StoreError, StructureError, ValueError)

log = get_logger("cli")


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: GanttkitConfig
    store: TaskStore
    service: ScheduleService


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _record_event(event: dict[str, Any]) -> None:
    log.debug("event %s", json.dumps(event, ensure_ascii=False, sort_keys=True))


def _build_store(config: GanttkitConfig, repo_root: Path) -> TaskStore:
    if config.store.backend == "memory":
        return MemoryTaskStore()
    return LocalTaskStore(repo_root, data_dir=config.store.data_dir)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except (ConfigError, TypeError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    setup_logging(config.logging.level, config.logging.file or None)
    store = _build_store(config, repo_root)
    service = ScheduleService.from_config(store, config, event_hook=_record_event)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        service=service,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _run(runtime: Runtime, action: Callable[[ScheduleService], Awaitable[T]]) -> T:
    async def _main() -> T:
        try:
            return await action(runtime.service)
        finally:
            await runtime.service.close()

    try:
        return asyncio.run(_main())
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _position(value: int | None) -> int | None:
    if value is None:
        return None
    if value < 1:
        raise click.BadParameter("positions start at 1", param_hint="--position")
    return value - 1


async def _id_for(service: ScheduleService, project_id: str, number: str) -> str:
    return (await service.find_by_number(project_id, number)).id


def _field_changes(
    name: str | None,
    start: str | None,
    end: str | None,
    duration: int | None,
    progress: int | None,
    resources: str | None,
) -> dict[str, Any]:
    candidates = {
        "name": name,
        "start_date": start,
        "end_date": end,
        "duration_days": duration,
        "progress_percent": progress,
        "resources": resources,
    }
    return {key: value for key, value in candidates.items() if value is not None}


@click.group()
def cli() -> None:
    """Schedule hierarchy and dependency tool."""


@cli.command("init")
@click.option("--project", "project_id", default=None)
@click.option("--backend", type=click.Choice(["local", "memory"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(project_id: str | None, backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except (ConfigError, TypeError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    if project_id:
        config.project.default_project = project_id
    if backend:
        config.store.backend = backend  # type: ignore[assignment]
    save_config(config_path, config)

    if config.store.backend == "local":
        LocalTaskStore(repo_root, data_dir=config.store.data_dir)

    click.echo(f"Initialized ganttkit in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Project: {config.project.default_project}")
    click.echo(f"Store backend: {config.store.backend}")


@cli.command("list")
@click.option("--project", "project_id", default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def list_command(project_id: str | None, as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    project_id = project_id or runtime.config.project.default_project
    tasks = _run(runtime, lambda service: service.load(project_id))
    tasks.sort(key=lambda task: sort_key(task.hierarchy_number))
    if as_json:
        _echo_json([task.to_row() for task in tasks])
        return
    for task in tasks:
        number = task.hierarchy_number or "?"
        indent = "  " * depth(number)
        line = f"{indent}{number}  {task.name}"
        if task.predecessors:
            line += f"  <- {', '.join(task.predecessors)}"
        click.echo(line)


@cli.command("add")
@click.argument("name")
@click.option("--parent", "parent_number", default=None, help="Hierarchy number of the parent.")
@click.option("--position", type=int, default=None, help="1-based slot among siblings.")
@click.option("--predecessor", "predecessors", multiple=True)
@click.option("--start", default=None)
@click.option("--end", default=None)
@click.option("--duration", type=int, default=None)
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def add_command(
    name: str,
    parent_number: str | None,
    position: int | None,
    predecessors: tuple[str, ...],
    start: str | None,
    end: str | None,
    duration: int | None,
    project_id: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    project_id = project_id or runtime.config.project.default_project
    slot = _position(position)
    fields = _field_changes(None, start, end, duration, None, None)

    async def _add(service: ScheduleService):
        parent_id = await _id_for(service, project_id, parent_number) if parent_number else None
        return await service.add_task(
            project_id,
            name,
            parent_id=parent_id,
            position=slot,
            predecessors=predecessors,
            **fields,
        )

    result = _run(runtime, _add)
    _echo_json(result.to_dict())


@cli.command("delete")
@click.argument("numbers", nargs=-1, required=True)
@click.option("--policy", type=click.Choice(["previous_sibling", "drop"]), default=None)
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def delete_command(
    numbers: tuple[str, ...], policy: str | None, project_id: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value)
    project_id = project_id or runtime.config.project.default_project

    async def _delete(service: ScheduleService):
        ids = [await _id_for(service, project_id, number) for number in numbers]
        return await service.delete_tasks(project_id, ids, policy)

    _echo_json(_run(runtime, _delete).to_dict())


@cli.command("move")
@click.argument("number")
@click.option("--parent", "parent_number", default=None, help="New parent; omit for top level.")
@click.option("--position", type=int, default=None, help="1-based slot among new siblings.")
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def move_command(
    number: str,
    parent_number: str | None,
    position: int | None,
    project_id: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    project_id = project_id or runtime.config.project.default_project
    slot = _position(position)

    async def _move(service: ScheduleService):
        task_id = await _id_for(service, project_id, number)
        parent_id = await _id_for(service, project_id, parent_number) if parent_number else None
        return await service.move_task(project_id, task_id, parent_id, slot)

    _echo_json(_run(runtime, _move).to_dict())


@cli.command("indent")
@click.argument("number")
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def indent_command(number: str, project_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    project_id = project_id or runtime.config.project.default_project

    async def _indent(service: ScheduleService):
        return await service.indent_task(project_id, await _id_for(service, project_id, number))

    _echo_json(_run(runtime, _indent).to_dict())


@cli.command("outdent")
@click.argument("number")
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def outdent_command(number: str, project_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    project_id = project_id or runtime.config.project.default_project

    async def _outdent(service: ScheduleService):
        return await service.outdent_task(project_id, await _id_for(service, project_id, number))

    _echo_json(_run(runtime, _outdent).to_dict())


@cli.command("edit")
@click.argument("number")
@click.option("--name", default=None)
@click.option("--start", default=None)
@click.option("--end", default=None)
@click.option("--duration", type=int, default=None)
@click.option("--progress", type=click.IntRange(0, 100), default=None)
@click.option("--resources", default=None)
@click.option("--predecessor", "predecessors", multiple=True)
@click.option("--clear-predecessors", is_flag=True, default=False)
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def edit_command(
    number: str,
    name: str | None,
    start: str | None,
    end: str | None,
    duration: int | None,
    progress: int | None,
    resources: str | None,
    predecessors: tuple[str, ...],
    clear_predecessors: bool,
    project_id: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    project_id = project_id or runtime.config.project.default_project
    fields = _field_changes(name, start, end, duration, progress, resources)
    if clear_predecessors:
        fields["predecessors"] = []
    elif predecessors:
        fields["predecessors"] = list(predecessors)
    if not fields:
        raise click.ClickException("Nothing to edit.")

    async def _edit(service: ScheduleService):
        task_id = await _id_for(service, project_id, number)
        warnings: list[str] = []
        if fields.get("predecessors"):
            result = await service.validate_predecessors(
                project_id, task_id, fields["predecessors"]
            )
            if not result.is_valid:
                raise click.ClickException("; ".join(result.errors))
            warnings = result.warnings
        service.queue_update(project_id, task_id, fields)
        written = await service.flush(project_id)
        return {"task_id": task_id, "written": written, "fields": fields, "warnings": warnings}

    _echo_json(_run(runtime, _edit))


@cli.command("normalize")
@click.option("--force", is_flag=True, default=False)
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def normalize_command(force: bool, project_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    project_id = project_id or runtime.config.project.default_project
    result = _run(runtime, lambda service: service.normalize(project_id, force=force))
    if result is None:
        click.echo("Numbering already canonical.")
        return
    _echo_json(result.to_dict())


@cli.command("repair-self-refs")
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def repair_self_refs_command(project_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    project_id = project_id or runtime.config.project.default_project
    report = _run(runtime, lambda service: service.repair_self_references(project_id))
    _echo_json(report.to_dict())


@cli.command("check")
@click.option("--strict", is_flag=True, default=False, help="Exit non-zero on any violation.")
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def check_command(strict: bool, project_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    project_id = project_id or runtime.config.project.default_project
    payload = _run(runtime, lambda service: service.check(project_id))
    _echo_json(payload)
    if strict and (payload["needs_normalization"] or not payload["audit"]["ok"]):
        raise click.ClickException("Schedule has integrity violations.")


@cli.command("bulk-renumber")
@click.argument("payload_file", type=click.File("r", encoding="utf-8"), default="-")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def bulk_renumber_command(payload_file, config_value: str) -> None:
    """Apply a ``{projectId, updates}`` JSON document through the two-phase committer."""
    runtime = _runtime(config_value)
    try:
        payload = json.load(payload_file)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Invalid JSON payload: {exc}") from exc
    committer = TwoPhaseCommitter(
        runtime.store,
        placeholder_prefix=runtime.config.schedule.placeholder_prefix,
        prefer_atomic=runtime.config.commit.prefer_atomic,
        event_hook=_record_event,
    )
    response = _run(
        runtime,
        lambda service: handle_bulk_renumber(service.store, payload, committer=committer),
    )
    _echo_json(response)
    if not response.get("success"):
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
