"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from mcpforge.config import AppConfig, ConfigError, default_claude_dir, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.claude_dir == default_claude_dir()
    assert config.document == default_claude_dir() / "claude_desktop_config.json"
    assert config.profile is None
    assert config.lock_timeout == 10.0
    assert config.backups.root == default_claude_dir() / "backups"
    assert config.backups.index == default_claude_dir() / "backups" / "backups.json"
    assert config.backups.keep == 20
    assert config.bulk.continue_on_error is False
    assert config.bulk.max_workers == 1
    assert config.validation.deep is False


def test_default_claude_dir_per_platform() -> None:
    """The desktop client directory depends on the platform."""
    assert default_claude_dir("darwin").parts[-3:] == ("Library", "Application Support", "Claude")
    assert default_claude_dir("win32").parts[-2:] == ("Roaming", "Claude")
    assert default_claude_dir("linux").parts[-2:] == (".config", "claude")


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "mcpforge.yml"
    cfg.write_text(
        "claude_dir: {claude}\n"
        "lock_timeout: 3\n"
        "backups:\n"
        "  keep: 5\n"
        "  max_age: 2w\n"
        "bulk:\n"
        "  continue_on_error: true\n"
        "  max_workers: 4\n"
        "validation:\n"
        "  deep: true\n".format(claude=tmp_path / "claude")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.claude_dir == tmp_path / "claude"
    assert config.document == tmp_path / "claude" / "claude_desktop_config.json"
    assert config.lock_timeout == 3.0
    assert config.backups.root == tmp_path / "claude" / "backups"
    assert config.backups.keep == 5
    assert config.backups.max_age == "2w"
    assert config.bulk.continue_on_error is True
    assert config.bulk.max_workers == 4
    assert config.validation.deep is True


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "mcpforge.yml"
    cfg.write_text("backups:\n  keep: 5\n")
    env = {
        "MCPFORGE_CLAUDE_DIR": str(tmp_path / "claude"),
        "MCPFORGE_LOCK_TIMEOUT": "45",
        "MCPFORGE_BACKUPS__KEEP": "50",
        "MCPFORGE_BACKUPS__ROOT": str(tmp_path / "bk"),
        "MCPFORGE_VALIDATION__DEEP": "true",
        "UNRELATED": "ignored",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.claude_dir == tmp_path / "claude"
    assert config.lock_timeout == 45.0
    assert config.backups.keep == 50
    assert config.backups.root == tmp_path / "bk"
    assert config.backups.index == tmp_path / "bk" / "backups.json"
    assert config.validation.deep is True


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    """MCPFORGE_CONFIG_FILE points the loader at another file."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("lock_timeout: 7\n")

    config = load_config(env={"MCPFORGE_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.lock_timeout == 7.0


def test_profile_changes_document_path(tmp_path: Path) -> None:
    """Profiles select profile_<name>.json; an explicit document wins."""
    env = {"MCPFORGE_CLAUDE_DIR": str(tmp_path)}

    profiled = load_config(
        config_file=tmp_path / "none.yml", env=env, overrides={"profile": "work"}
    )
    explicit = load_config(
        config_file=tmp_path / "none.yml",
        env=env,
        overrides={"profile": "work", "document": str(tmp_path / "other.json")},
    )

    assert profiled.document == tmp_path / "profile_work.json"
    assert explicit.document == tmp_path / "other.json"
    assert profiled.backups.root == tmp_path / "backups"


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("unknown_key: 1\n", "Unknown configuration keys"),
        ("backups:\n  compression: gzip\n", "Unknown backups configuration keys"),
        ("lock_timeout: 0\n", "greater than zero"),
        ("profile: ../escape\n", "Invalid profile name"),
        ("backups:\n  max_age: soon\n", "backups.max_age"),
        ("backups:\n  keep: -1\n", "non-negative"),
        ("bulk:\n  max_workers: 0\n", "at least 1"),
        ("validation:\n  deep: sometimes\n", "boolean"),
        ("- just\n- a list\n", "mapping"),
    ],
)
def test_invalid_configuration_is_rejected(tmp_path: Path, content: str, message: str) -> None:
    """Invalid values raise ConfigError with a pointed message."""
    cfg = tmp_path / "mcpforge.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})
