from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ganttkit.committer import DEFAULT_PLACEHOLDER_PREFIX

DeletionPolicyName = Literal["previous_sibling", "drop"]
StoreBackendName = Literal["local", "memory"]


class ConfigError(RuntimeError):
    """Raised when a configuration file holds unsupported values."""


@dataclass(slots=True)
class ProjectConfig:
    default_project: str = "default"


@dataclass(slots=True)
class ScheduleConfig:
    deletion_policy: DeletionPolicyName = "previous_sibling"
    placeholder_prefix: str = DEFAULT_PLACEHOLDER_PREFIX


@dataclass(slots=True)
class QueueConfig:
    quiet_period_seconds: float = 1.0


@dataclass(slots=True)
class CommitConfig:
    prefer_atomic: bool = False


@dataclass(slots=True)
class StoreConfig:
    backend: StoreBackendName = "local"
    data_dir: str = ".ganttkit"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"
    file: str = ""


@dataclass(slots=True)
class GanttkitConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    commit: CommitConfig = field(default_factory=CommitConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> GanttkitConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> GanttkitConfig:
        config = cls(
            project=ProjectConfig(**data.get("project", {})),
            schedule=ScheduleConfig(**data.get("schedule", {})),
            queue=QueueConfig(**data.get("queue", {})),
            commit=CommitConfig(**data.get("commit", {})),
            store=StoreConfig(**data.get("store", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.schedule.deletion_policy not in ("previous_sibling", "drop"):
            raise ConfigError(f"Unsupported deletion policy: {self.schedule.deletion_policy}")
        if self.store.backend not in ("local", "memory"):
            raise ConfigError(f"Unsupported store backend: {self.store.backend}")
        if not self.schedule.placeholder_prefix:
            raise ConfigError("placeholder_prefix must not be empty")
        if self.queue.quiet_period_seconds <= 0:
            raise ConfigError("quiet_period_seconds must be positive")

    def to_dict(self) -> dict:
        return {
            "project": {
                "default_project": self.project.default_project,
            },
            "schedule": {
                "deletion_policy": self.schedule.deletion_policy,
                "placeholder_prefix": self.schedule.placeholder_prefix,
            },
            "queue": {
                "quiet_period_seconds": self.queue.quiet_period_seconds,
            },
            "commit": {
                "prefer_atomic": self.commit.prefer_atomic,
            },
            "store": {
                "backend": self.store.backend,
                "data_dir": self.store.data_dir,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: GanttkitConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "schedule", "queue", "commit", "store", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> GanttkitConfig:
    if not path.exists():
        return GanttkitConfig.default()
    return GanttkitConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: GanttkitConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
