"""Configuration loading and directory resolution for codex-connector."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:  # pragma: no cover - exercised on Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python 3.9/3.10
    import tomli as tomllib  # type: ignore[no-redef]

from codex_connector.task.activity import (
    DEFAULT_HEARTBEAT_INTERVAL_SEC,
    DEFAULT_SNIPPET_BYTES,
    DEFAULT_SNIPPET_MIN_CHARS,
    DEFAULT_STALL_THRESHOLD_SEC,
)
from codex_connector.task.registry import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_TAIL_LINES,
)
from codex_connector.task.supervisor import DEFAULT_KILL_GRACE_SEC, SupervisorOptions
from codex_connector.task.types import (
    DEFAULT_PERMISSION_LEVEL,
    PERMISSION_LEVELS,
    CommandTemplate,
)

DATA_DIR_ENV = "CODEX_CONNECTOR_HOME"
DEFAULT_DATA_DIR_NAME = ".codex-connector"
CONFIG_FILE_NAME = "config.toml"
TASKS_FILE_NAME = "tasks.json"
LOGS_DIR_NAME = "logs"
DEBUG_LOGS_DIR_NAME = "debug"
DEFAULT_CODEX_BINARY = "codex"

DEFAULT_LOGS_ENABLED = True
DEFAULT_LOGS_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_LOGS_MAX_FILES = 5
DEFAULT_LOGS_REDACTION = "default"
ALLOWED_LOG_REDACTION = ("default", "none", "strict")


class ConfigError(RuntimeError):
    """Raised when the configuration file is unreadable or invalid."""


@dataclass
class Settings:
    """Resolved runtime settings for one supervising process."""

    data_dir: Path
    codex_binary: str = DEFAULT_CODEX_BINARY
    default_sandbox: str = DEFAULT_PERMISSION_LEVEL
    heartbeat_interval_sec: float = DEFAULT_HEARTBEAT_INTERVAL_SEC
    stall_threshold_sec: float = DEFAULT_STALL_THRESHOLD_SEC
    kill_grace_sec: float = DEFAULT_KILL_GRACE_SEC
    snippet_bytes: int = DEFAULT_SNIPPET_BYTES
    snippet_min_chars: int = DEFAULT_SNIPPET_MIN_CHARS
    tail_lines: int = DEFAULT_TAIL_LINES
    list_limit: int = DEFAULT_LIST_LIMIT
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION
    codex_args: Optional[List[str]] = field(default=None)

    @property
    def config_file(self) -> Path:
        return self.data_dir / CONFIG_FILE_NAME

    @property
    def tasks_file(self) -> Path:
        return self.data_dir / TASKS_FILE_NAME

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / LOGS_DIR_NAME

    @property
    def debug_logs_dir(self) -> Path:
        return self.logs_dir / DEBUG_LOGS_DIR_NAME

    def command_template(self) -> CommandTemplate:
        if self.codex_args:
            return CommandTemplate(binary=self.codex_binary, args=list(self.codex_args))
        return CommandTemplate(binary=self.codex_binary)

    def supervisor_options(self) -> SupervisorOptions:
        return SupervisorOptions(
            heartbeat_interval_sec=self.heartbeat_interval_sec,
            stall_threshold_sec=self.stall_threshold_sec,
            kill_grace_sec=self.kill_grace_sec,
            snippet_bytes=self.snippet_bytes,
            snippet_min_chars=self.snippet_min_chars,
        )


def resolve_data_dir(data_dir: Optional[Path] = None) -> Path:
    if data_dir is not None:
        return Path(data_dir).expanduser().resolve()
    env_value = str(os.environ.get(DATA_DIR_ENV) or "").strip()
    if env_value:
        return Path(env_value).expanduser().resolve()
    return (Path.home() / DEFAULT_DATA_DIR_NAME).resolve()


def resolve_codex_binary(configured: object = None) -> str:
    text = str(configured or "").strip()
    if text:
        return text
    return shutil.which(DEFAULT_CODEX_BINARY) or DEFAULT_CODEX_BINARY


def _safe_positive_int(value: object, default: int) -> int:
    try:
        converted = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted <= 0:
        return default
    return converted


def _safe_positive_float(value: object, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        converted = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted <= 0:
        return default
    return converted


def _safe_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _safe_redaction(value: object, default: str) -> str:
    normalized = str(value or default).strip().lower()
    if normalized not in ALLOWED_LOG_REDACTION:
        return default
    return normalized


def _safe_sandbox(value: object, default: str) -> str:
    normalized = str(value or default).strip().lower()
    if normalized not in PERMISSION_LEVELS:
        return default
    return normalized


def _safe_string_list(value: object) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    result = [str(item) for item in value if str(item or "").strip()]
    return result or None


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _parse_settings_data(data: Dict[str, Any], data_dir: Path) -> Settings:
    codex = _section(data, "codex")
    supervisor = _section(data, "supervisor")
    defaults = _section(data, "defaults")
    logs = _section(data, "logs")

    return Settings(
        data_dir=data_dir,
        codex_binary=resolve_codex_binary(codex.get("binary")),
        codex_args=_safe_string_list(codex.get("args")),
        default_sandbox=_safe_sandbox(codex.get("default_sandbox"), DEFAULT_PERMISSION_LEVEL),
        heartbeat_interval_sec=_safe_positive_float(
            supervisor.get("heartbeat_interval_sec"),
            DEFAULT_HEARTBEAT_INTERVAL_SEC,
        ),
        stall_threshold_sec=_safe_positive_float(
            supervisor.get("stall_threshold_sec"),
            DEFAULT_STALL_THRESHOLD_SEC,
        ),
        kill_grace_sec=_safe_positive_float(supervisor.get("kill_grace_sec"), DEFAULT_KILL_GRACE_SEC),
        snippet_bytes=_safe_positive_int(supervisor.get("snippet_bytes"), DEFAULT_SNIPPET_BYTES),
        snippet_min_chars=_safe_positive_int(supervisor.get("snippet_min_chars"), DEFAULT_SNIPPET_MIN_CHARS),
        tail_lines=_safe_positive_int(defaults.get("tail_lines"), DEFAULT_TAIL_LINES),
        list_limit=_safe_positive_int(defaults.get("list_limit"), DEFAULT_LIST_LIMIT),
        poll_interval_ms=_safe_positive_int(defaults.get("poll_interval_ms"), DEFAULT_POLL_INTERVAL_MS),
        logs_enabled=_safe_bool(logs.get("enabled"), DEFAULT_LOGS_ENABLED),
        logs_max_file_bytes=_safe_positive_int(logs.get("max_file_bytes"), DEFAULT_LOGS_MAX_FILE_BYTES),
        logs_max_files=_safe_positive_int(logs.get("max_files"), DEFAULT_LOGS_MAX_FILES),
        logs_redaction=_safe_redaction(logs.get("redaction"), DEFAULT_LOGS_REDACTION),
    )


def _render_config(settings: Settings) -> str:
    def _quote(text: str) -> str:
        return '"{0}"'.format(str(text).replace("\\", "\\\\").replace('"', '\\"'))

    return "\n".join(
        [
            "# codex-connector configuration",
            "",
            "[codex]",
            "binary = {0}".format(_quote(settings.codex_binary)),
            "default_sandbox = {0}".format(_quote(settings.default_sandbox)),
            "# args = [\"exec\", \"{model_args}\", \"--full-auto\", \"--sandbox\", \"{sandbox}\",",
            "#         \"--output-last-message\", \"{result_file}\", \"{prompt}\"]",
            "",
            "[supervisor]",
            "heartbeat_interval_sec = {0:g}".format(settings.heartbeat_interval_sec),
            "stall_threshold_sec = {0:g}".format(settings.stall_threshold_sec),
            "kill_grace_sec = {0:g}".format(settings.kill_grace_sec),
            "snippet_bytes = {0}".format(settings.snippet_bytes),
            "snippet_min_chars = {0}".format(settings.snippet_min_chars),
            "",
            "[defaults]",
            "tail_lines = {0}".format(settings.tail_lines),
            "list_limit = {0}".format(settings.list_limit),
            "poll_interval_ms = {0}".format(settings.poll_interval_ms),
            "",
            "[logs]",
            "enabled = {0}".format(str(bool(settings.logs_enabled)).lower()),
            "max_file_bytes = {0}".format(settings.logs_max_file_bytes),
            "max_files = {0}".format(settings.logs_max_files),
            "redaction = {0}".format(_quote(settings.logs_redaction)),
            "",
        ]
    )


def initialize_config(data_dir: Optional[Path] = None, force: bool = False) -> Path:
    resolved = resolve_data_dir(data_dir)
    config_file = resolved / CONFIG_FILE_NAME
    if config_file.exists() and not force:
        raise ConfigError("configuration file already exists: {0}".format(config_file))

    settings = Settings(data_dir=resolved, codex_binary=resolve_codex_binary())
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    config_file.write_text(_render_config(settings), encoding="utf-8")
    return config_file


def load_settings(data_dir: Optional[Path] = None) -> Settings:
    """Resolve settings from ``<data_dir>/config.toml``; defaults when absent."""

    resolved = resolve_data_dir(data_dir)
    config_file = resolved / CONFIG_FILE_NAME
    data: Dict[str, Any] = {}
    if config_file.is_file():
        try:
            parsed = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ConfigError("invalid config file: {0}".format(config_file)) from exc
        if not isinstance(parsed, dict):
            raise ConfigError("invalid config file: {0}".format(config_file))
        data = parsed

    settings = _parse_settings_data(data, resolved)
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    return settings
