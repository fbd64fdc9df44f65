"""JSON-file persistence for task records with restart reconciliation."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from codex_connector.kernel.debug_log import DebugLogWriter
from codex_connector.task.errors import PersistenceFailure
from codex_connector.task.types import (
    RESTART_INTERRUPTED_REASON,
    FailureKind,
    TaskRecord,
    TaskStatus,
    now_ms,
)


class TaskStore:
    """Persists the full task map as one JSON object keyed by task id.

    The file is rewritten wholesale on every save through a temporary sibling
    and an atomic replace, so a concurrent reader sees either the previous or
    the next complete document.
    """

    def __init__(self, path: Path, debug_log: Optional[DebugLogWriter] = None) -> None:
        self._path = Path(path)
        self._debug_log = debug_log or DebugLogWriter.disabled()

    def load(self) -> Dict[str, TaskRecord]:
        """Read records and reconcile any left ``running`` by a previous process."""

        records = self.read()
        reconciled_at = now_ms()
        for record in records.values():
            if record.status != TaskStatus.RUNNING:
                continue
            stale_pid = record.pid
            record.status = TaskStatus.INTERRUPTED
            record.completed_at = reconciled_at
            record.pid = None
            record.outcome.failure_reason = RESTART_INTERRUPTED_REASON
            record.outcome.failure_kind = FailureKind.RESTART_INTERRUPTED
            self._debug_log.write_task_entry(
                record,
                level="warn",
                component="store",
                kind="reconcile",
                message="task.interrupted",
                data={"started_at_ms": record.started_at, "stale_pid": stale_pid},
            )
        return records

    def read(self) -> Dict[str, TaskRecord]:
        """Read records exactly as persisted. Unreadable state yields ``{}``."""

        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            self._log_load_failure("unreadable", exc)
            return {}

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._log_load_failure("corrupt", exc)
            return {}
        if not isinstance(parsed, dict):
            self._log_load_failure("corrupt", ValueError("top-level value is not an object"))
            return {}

        records: Dict[str, TaskRecord] = {}
        for key, value in parsed.items():
            if not isinstance(value, dict):
                continue
            try:
                record = TaskRecord.from_dict(value)
            except (KeyError, TypeError, ValueError) as exc:
                self._debug_log.write_entry(
                    level="warn",
                    component="store",
                    kind="load",
                    task_id=str(key),
                    message="store.record_skipped",
                    data={"error": str(exc)},
                )
                continue
            records[record.id] = record
        return records

    def save(self, records: Mapping[str, TaskRecord]) -> None:
        payload: Dict[str, Any] = {task_id: record.to_dict() for task_id, record in records.items()}
        text = json.dumps(payload, ensure_ascii=False, indent=2)

        tmp_name: Optional[str] = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=".{0}.".format(self._path.name),
                suffix=".tmp",
                dir=str(self._path.parent),
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                fp.write(text)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_name, self._path)
            tmp_name = None
        except OSError as exc:
            raise PersistenceFailure(
                "failed to write task state {0}: {1}".format(self._path, exc.strerror or exc),
            ) from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

    def _log_load_failure(self, reason: str, exc: BaseException) -> None:
        self._debug_log.write_entry(
            level="error",
            component="store",
            kind="load",
            message="store.load_failed",
            data={"reason": reason, "path": str(self._path), "error": str(exc)},
        )
