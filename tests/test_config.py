import tomllib
from pathlib import Path

import pytest

from ganttkit import __version__
from ganttkit.config import ConfigError, GanttkitConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "ganttkit.toml"
    config = GanttkitConfig.default()
    config.project.default_project = "tower-b"
    config.schedule.deletion_policy = "drop"
    config.schedule.placeholder_prefix = "__HOLD_"
    config.queue.quiet_period_seconds = 2.5
    config.commit.prefer_atomic = True
    config.store.backend = "memory"
    config.store.data_dir = "state"
    config.logging.level = "DEBUG"
    config.logging.file = "ganttkit.log"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.default_project == "tower-b"
    assert loaded.schedule.deletion_policy == "drop"
    assert loaded.schedule.placeholder_prefix == "__HOLD_"
    assert loaded.queue.quiet_period_seconds == 2.5
    assert loaded.commit.prefer_atomic is True
    assert loaded.store.backend == "memory"
    assert loaded.store.data_dir == "state"
    assert loaded.logging.level == "DEBUG"
    assert loaded.logging.file == "ganttkit.log"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(GanttkitConfig.default())

    for section in ("[project]", "[schedule]", "[queue]", "[commit]", "[store]", "[logging]"):
        assert section in rendered
    assert 'deletion_policy = "previous_sibling"' in rendered
    assert 'placeholder_prefix = "__TEMP_"' in rendered
    assert "quiet_period_seconds = 1.0" in rendered
    assert "prefer_atomic = false" in rendered


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == GanttkitConfig.default()


def test_invalid_values_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "ganttkit.toml"
    config_path.write_text('[schedule]\ndeletion_policy = "cascade"\n', encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_path)

    with pytest.raises(ConfigError):
        GanttkitConfig.from_dict({"store": {"backend": "postgres"}})
    with pytest.raises(ConfigError):
        GanttkitConfig.from_dict({"queue": {"quiet_period_seconds": -1}})
    with pytest.raises(ConfigError):
        GanttkitConfig.from_dict({"queue": {"quiet_period_seconds": 0}})


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
