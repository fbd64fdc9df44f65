"""Runtime container wiring the supervisor core from settings."""

from __future__ import annotations

from shutil import which
from typing import Any, Dict, Optional

from codex_connector.config import Settings
from codex_connector.kernel.debug_log import DebugLogWriter
from codex_connector.task.notify import NotificationListener, NotificationSink
from codex_connector.task.registry import TaskRegistry
from codex_connector.task.store import TaskStore
from codex_connector.task.types import TaskSpec, TaskStatus


class Runtime:
    core_version = "1.0.0"

    def __init__(self, settings: Settings, listener: Optional[NotificationListener] = None) -> None:
        self.settings = settings
        settings.logs_dir.mkdir(parents=True, exist_ok=True)
        self.debug_log = DebugLogWriter(
            logs_dir=settings.debug_logs_dir,
            enabled=settings.logs_enabled,
            max_file_bytes=settings.logs_max_file_bytes,
            max_files=settings.logs_max_files,
            redaction=settings.logs_redaction,
        )
        self.store = TaskStore(settings.tasks_file, debug_log=self.debug_log)
        self.notifier = NotificationSink(listener, debug_log=self.debug_log)
        self._registry: Optional[TaskRegistry] = None

    @property
    def registry(self) -> TaskRegistry:
        """Created on first use so read-only commands never reconcile the store."""

        if self._registry is None:
            self._registry = TaskRegistry(
                self.store,
                self.settings.logs_dir,
                notifier=self.notifier,
                options=self.settings.supervisor_options(),
                debug_log=self.debug_log,
                poll_interval_ms=self.settings.poll_interval_ms,
            )
        return self._registry

    def build_spec(
        self,
        prompt: str,
        working_directory: str,
        *,
        sandbox: Optional[str] = None,
        model: Optional[str] = None,
        timeout_ms: int = 0,
    ) -> TaskSpec:
        return TaskSpec(
            prompt=prompt,
            working_directory=working_directory,
            command=self.settings.command_template(),
            permission_level=sandbox or self.settings.default_sandbox,
            model=model or None,
            timeout_ms=max(0, int(timeout_ms or 0)),
        )

    def doctor(self) -> Dict[str, Any]:
        writable_ok = True
        error = None
        try:
            probe = self.settings.data_dir / ".doctor_write_probe"
            probe.write_text("ok", encoding="utf-8")
            probe.unlink(missing_ok=True)
        except OSError as exc:
            writable_ok = False
            error = str(exc)

        counts = {status.value: 0 for status in TaskStatus}
        for record in self.store.read().values():
            counts[record.status.value] += 1

        report: Dict[str, Any] = {
            "core_version": self.core_version,
            "data_dir": str(self.settings.data_dir),
            "config_file": str(self.settings.config_file),
            "config_file_present": self.settings.config_file.is_file(),
            "tasks_file": str(self.settings.tasks_file),
            "task_logs_dir": str(self.settings.logs_dir),
            "codex_binary": self.settings.codex_binary,
            "codex_binary_found": bool(which(self.settings.codex_binary)),
            "default_sandbox": self.settings.default_sandbox,
            "data_dir_writable": writable_ok,
            "task_counts": counts,
            "heartbeat_interval_sec": self.settings.heartbeat_interval_sec,
            "stall_threshold_sec": self.settings.stall_threshold_sec,
            "kill_grace_sec": self.settings.kill_grace_sec,
        }
        if error:
            report["data_dir_error"] = error
        report.update(self.debug_log.status())
        return report

    async def close(self) -> None:
        if self._registry is not None:
            await self._registry.close()
