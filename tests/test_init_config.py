from __future__ import annotations

import pytest

from codex_connector.config import (
    DATA_DIR_ENV,
    DEFAULT_LOGS_MAX_FILE_BYTES,
    ConfigError,
    initialize_config,
    load_settings,
    resolve_data_dir,
)


def test_init_config_writes_defaults_that_load_back(tmp_path):
    config_file = initialize_config(tmp_path / "home")
    config_text = config_file.read_text(encoding="utf-8")

    assert "[codex]" in config_text
    assert 'default_sandbox = "danger-full-access"' in config_text
    assert "heartbeat_interval_sec = 30" in config_text
    assert "kill_grace_sec = 5" in config_text
    assert "enabled = true" in config_text

    settings = load_settings(tmp_path / "home")
    assert settings.heartbeat_interval_sec == 30.0
    assert settings.stall_threshold_sec == 120.0
    assert settings.kill_grace_sec == 5.0
    assert settings.tail_lines == 50
    assert settings.list_limit == 20
    assert settings.poll_interval_ms == 1000
    assert settings.logs_max_file_bytes == DEFAULT_LOGS_MAX_FILE_BYTES
    assert settings.logs_dir.is_dir()


def test_init_refuses_to_overwrite_without_force(tmp_path):
    initialize_config(tmp_path)

    with pytest.raises(ConfigError) as exc_info:
        initialize_config(tmp_path)
    assert "already exists" in str(exc_info.value)

    assert initialize_config(tmp_path, force=True).is_file()


def test_invalid_values_fall_back_to_defaults(tmp_path):
    (tmp_path / "config.toml").write_text(
        "\n".join(
            [
                "[codex]",
                'binary = "/opt/bin/codex"',
                'default_sandbox = "root-everything"',
                'args = ["exec", "{prompt}"]',
                "",
                "[supervisor]",
                "heartbeat_interval_sec = -1",
                'stall_threshold_sec = "soon"',
                "kill_grace_sec = 2.5",
                "",
                "[defaults]",
                "tail_lines = 0",
                "",
                "[logs]",
                'enabled = "off"',
                'redaction = "everything"',
                "",
            ]
        ),
        encoding="utf-8",
    )

    settings = load_settings(tmp_path)

    assert settings.codex_binary == "/opt/bin/codex"
    assert settings.default_sandbox == "danger-full-access"
    assert settings.heartbeat_interval_sec == 30.0
    assert settings.stall_threshold_sec == 120.0
    assert settings.kill_grace_sec == 2.5
    assert settings.tail_lines == 50
    assert settings.logs_enabled is False
    assert settings.logs_redaction == "default"
    assert settings.command_template().build(
        prompt="hi", sandbox="read-only", result_file="/r"
    ) == ["/opt/bin/codex", "exec", "hi"]
    assert settings.supervisor_options().kill_grace_sec == 2.5


def test_broken_toml_raises_config_error(tmp_path):
    (tmp_path / "config.toml").write_text("[codex\nbinary = ", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_settings(tmp_path)


def test_data_dir_resolution_prefers_argument_then_env(tmp_path, monkeypatch):
    monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path / "from-env"))

    assert resolve_data_dir(tmp_path / "explicit") == (tmp_path / "explicit").resolve()
    assert resolve_data_dir() == (tmp_path / "from-env").resolve()

    monkeypatch.delenv(DATA_DIR_ENV)
    monkeypatch.setenv("HOME", str(tmp_path / "user"))
    assert resolve_data_dir() == (tmp_path / "user" / ".codex-connector").resolve()
