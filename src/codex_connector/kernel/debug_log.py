"""JSONL diagnostics for the supervisor, with size rotation and secret scrubbing.

Each line is one entry::

    {"ts_ms": ..., "level": "warn", "component": "supervisor",
     "kind": "termination", "message": "task.termination_requested",
     "task_id": "1a2b3c4d", "status": "running", "failure_kind": "timeout",
     "pid": 4242, "data": {...}}

``status``, ``failure_kind`` and ``pid`` are present only on task entries.
Prompts end up in argv and log messages, so secrets are scrubbed before
anything is written.
"""

from __future__ import annotations

import json
import re
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from codex_connector.task.types import TaskRecord

DEBUG_LOG_FILE_NAME = "debug.log.jsonl"
REDACTION_MODES = ("default", "none", "strict")

_MASK = "***REDACTED***"
_SECRET_KEY_RE = re.compile(
    r"(password|secret|token|authorization|cookie|api[_-]?key|access[_-]?key|private[_-]?key)",
    re.IGNORECASE,
)
_SECRET_TEXT_RULES = (
    (re.compile(r"(?i)\bbearer\s+[^\s,;]+"), "Bearer " + _MASK),
    (
        re.compile(
            r"(?i)\b(api[_-]?key|access[_-]?key|token|secret|authorization|cookie|private[_-]?key)\b"
            r"\s*[:=]\s*[^\s,;]+"
        ),
        lambda match: "{0}={1}".format(match.group(1), _MASK),
    ),
    (re.compile(r"\bsk-[A-Za-z0-9]{8,}\b"), _MASK),
)


def scrub_text(text: str) -> str:
    for pattern, replacement in _SECRET_TEXT_RULES:
        text = pattern.sub(replacement, text)
    return text


class DebugLogWriter:
    """Appends diagnostic entries; never raises on I/O.

    Failed writes are counted and surfaced through ``status()`` so ``doctor``
    can report them.
    """

    def __init__(
        self,
        *,
        logs_dir: Path,
        enabled: bool,
        max_file_bytes: int = 10 * 1024 * 1024,
        max_files: int = 5,
        redaction: str = "default",
    ) -> None:
        self._logs_dir = Path(logs_dir)
        self._enabled = bool(enabled)
        self._max_file_bytes = max(1, int(max_file_bytes or 0))
        self._max_files = max(1, int(max_files or 0))
        mode = str(redaction or "").strip().lower()
        self._redaction = mode if mode in REDACTION_MODES else "default"
        self._write_errors = 0
        # Entries come from the event loop and from CLI code; keep rotation atomic.
        self._lock = threading.Lock()

    @classmethod
    def disabled(cls) -> "DebugLogWriter":
        return cls(logs_dir=Path("."), enabled=False)

    @property
    def active_log_file(self) -> Path:
        return self._logs_dir / DEBUG_LOG_FILE_NAME

    def write_task_entry(
        self,
        record: "TaskRecord",
        *,
        level: str,
        component: str,
        kind: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Entry tagged with the task's current status, failure kind and pid."""

        kind_value = record.outcome.failure_kind
        self.write_entry(
            level=level,
            component=component,
            kind=kind,
            message=message,
            task_id=record.id,
            task_fields={
                "status": record.status.value,
                "failure_kind": kind_value.value if kind_value else None,
                "pid": record.pid,
            },
            data=data,
        )

    def write_entry(
        self,
        *,
        level: str,
        component: str,
        kind: str,
        message: str,
        task_id: Optional[str] = None,
        task_fields: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._enabled:
            return

        entry: Dict[str, Any] = {
            "ts_ms": int(time.time() * 1000),
            "level": level,
            "component": component,
            "kind": kind,
            "message": message if self._redaction == "none" else scrub_text(message),
            "task_id": task_id or "",
        }
        if task_fields:
            entry.update(task_fields)
        payload = dict(data or {})
        entry["data"] = payload if self._redaction == "none" else self._scrub(payload)

        try:
            line = json.dumps(entry, ensure_ascii=True, separators=(",", ":"), default=str) + "\n"
        except (TypeError, ValueError):
            self._write_errors += 1
            return
        encoded = line.encode("utf-8")
        with self._lock:
            try:
                self._logs_dir.mkdir(parents=True, exist_ok=True)
                self._rotate_if_full(len(encoded))
                with self.active_log_file.open("ab") as fp:
                    fp.write(encoded)
            except OSError:
                self._write_errors += 1

    def status(self) -> Dict[str, Any]:
        with self._lock:
            active_size = 0
            rotated: List[str] = []
            total_size = 0
            if self._enabled:
                active_size = self._size(self.active_log_file)
                total_size = active_size
                for path in self._generations()[1:]:
                    if path.is_file():
                        rotated.append(str(path))
                        total_size += self._size(path)
            return {
                "logs_enabled": self._enabled,
                "logs_dir": str(self._logs_dir),
                "logs_active_file": str(self.active_log_file),
                "logs_active_size_bytes": active_size,
                "logs_max_file_bytes": self._max_file_bytes,
                "logs_max_files": self._max_files,
                "logs_total_size_bytes": total_size,
                "logs_rotated_files": rotated,
                "logs_write_errors": self._write_errors,
            }

    def _generations(self) -> List[Path]:
        active = self.active_log_file
        return [active] + [Path("{0}.{1}".format(active, index)) for index in range(1, self._max_files + 1)]

    @staticmethod
    def _size(path: Path) -> int:
        try:
            return int(path.stat().st_size)
        except OSError:
            return 0

    def _rotate_if_full(self, incoming: int) -> None:
        if self._size(self.active_log_file) + incoming <= self._max_file_bytes:
            return
        generations = self._generations()
        generations[-1].unlink(missing_ok=True)
        # Shift debug.log.jsonl.N-1 -> .N down to the active file -> .1
        for newer, older in zip(reversed(generations[:-1]), reversed(generations[1:])):
            if newer.exists():
                newer.replace(older)

    def _scrub(self, value: Any, key: Optional[str] = None) -> Any:
        if key is not None and _SECRET_KEY_RE.search(key):
            return _MASK
        if isinstance(value, dict):
            return {name: self._scrub(item, str(name)) for name, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._scrub(item) for item in value]
        if self._redaction == "strict":
            return _MASK
        if isinstance(value, str):
            return scrub_text(value)
        return value
