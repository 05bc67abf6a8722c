"""Tests for the configuration management subsystem."""

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from git_replica.config import Config, parse_duration_ms, parse_size


@pytest.fixture(autouse=True)
def clear_config_cache(tmp_path: Path, mocker: MagicMock) -> Any:
    """Ensures every test starts with a clean cache and no real global config."""
    mocker.patch("git_replica.config.CONFIG_FILE", tmp_path / "missing.toml")
    Config._global_cache = None
    yield
    Config._global_cache = None


def test_config_defaults() -> None:
    """Verifies that the configuration initializes with sensible defaults."""
    conf = Config()
    assert conf.core.remote_name == "origin"
    assert conf.core.device_name is None
    assert conf.sync.debounce == 5000
    assert conf.sync.notify is False
    assert conf.merge.history_table == "watch_history"
    assert conf.merge.subject_column == "anime_id"
    assert conf.merge.sequence_column == "episode_number"


def test_config_load_merges_layers(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies the cascading merge logic (Defaults -> Global -> Workspace).

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    global_config_path = tmp_path / "global_config.toml"
    global_config_path.write_text(
        '[core]\nremote_name = "upstream"\ndevice_name = "laptop"\n'
        '[sync]\ndebounce = "10s"\n'
    )

    workspace = tmp_path / "data"
    workspace.mkdir()
    (workspace / "replica.toml").write_text(
        '[sync]\ndebounce = 250\n[merge]\nhistory_table = "plays"\n'
    )

    mocker.patch("git_replica.config.CONFIG_FILE", global_config_path)

    conf = Config.load(workspace)

    assert conf.core.remote_name == "upstream"  # From Global
    assert conf.core.device_name == "laptop"  # From Global
    assert conf.sync.debounce == 250  # Workspace overrides Global
    assert conf.merge.history_table == "plays"  # From Workspace


def test_workspace_override_does_not_leak_into_cache(tmp_path: Path) -> None:
    """Verifies that one workspace's settings never bleed into another's."""
    first = tmp_path / "first"
    second = tmp_path / "second"
    first.mkdir()
    second.mkdir()
    (first / "replica.toml").write_text('[core]\nremote_name = "mirror"\n')

    assert Config.load(first).core.remote_name == "mirror"
    assert Config.load(second).core.remote_name == "origin"


def test_workspace_config_uses_host_name_by_default(
    tmp_path: Path, mocker: MagicMock
) -> None:
    """Verifies that the device name falls back to the host name."""
    mocker.patch("git_replica.config.get_device_name", return_value="desk")

    wc = Config().workspace_config(tmp_path)

    assert wc.path == tmp_path
    assert wc.device_name == "desk"
    assert wc.remote_name == "origin"
    assert wc.debounce_ms == 5000


def test_workspace_config_prefers_configured_device_name(tmp_path: Path) -> None:
    conf = Config()
    conf.core.device_name = "phone"
    conf.sync.notify = True

    wc = conf.workspace_config(tmp_path)

    assert wc.device_name == "phone"
    assert wc.notify is True


def test_parse_size() -> None:
    """Verifies that human-readable sizes are correctly converted to bytes."""
    assert parse_size(100) == 100
    assert parse_size("100kb") == 102400
    assert parse_size("10 MB") == 10485760
    assert parse_size("1.5gb") == int(1.5 * 1024**3)

    with pytest.raises(ValueError, match=r"Invalid size format '100 bits'"):
        parse_size("100 bits")


def test_parse_duration_ms() -> None:
    """Verifies that human-readable durations are converted to milliseconds."""
    assert parse_duration_ms(750) == 750
    assert parse_duration_ms("750ms") == 750
    assert parse_duration_ms("5s") == 5000
    assert parse_duration_ms("2 sec") == 2000
    assert parse_duration_ms("1min") == 60000
    assert parse_duration_ms("0.5s") == 500

    with pytest.raises(ValueError, match=r"Invalid duration format '3 weeks'"):
        parse_duration_ms("3 weeks")
    with pytest.raises(ValueError):
        parse_duration_ms(-1)


def test_config_invalid_keys_and_values(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that unknown keys are ignored and invalid values fallback to defaults.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        caplog (pytest.LogCaptureFixture): Pytest fixture for capturing logs.
    """
    import logging

    caplog.set_level(logging.WARNING)

    (tmp_path / "replica.toml").write_text(
        "[sync]\n"
        'debounce = "soon"\n'
        'fake_setting = "ignored"\n'
        "[limits]\n"
        'max_log_size = "10 gallons"\n'
    )

    conf = Config.load(tmp_path)

    assert conf.sync.debounce == 5000
    assert conf.limits.max_log_size == 5242880

    assert "Unknown config keys in [sync]: fake_setting" in caplog.text
    assert "Config error in [sync].debounce: Invalid duration format" in caplog.text
    assert "Config error in [limits].max_log_size: Invalid size format" in caplog.text


def test_config_syntax_error_is_logged(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    (tmp_path / "replica.toml").write_text("[sync\ndebounce = ")

    conf = Config.load(tmp_path)

    assert conf.sync.debounce == 5000
    assert "Config syntax error" in caplog.text
