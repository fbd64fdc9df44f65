"""Per-task append-only text log."""

from __future__ import annotations

from collections import deque
from pathlib import Path
from typing import IO, Any, Deque, Dict, List, Optional

from codex_connector.kernel.debug_log import DebugLogWriter
from codex_connector.task.types import TaskRecord, format_duration, ms_to_iso, now_ms


def tail_lines(path: Path, count: int) -> List[str]:
    """Return the last ``count`` lines of a log file, or ``[]`` if absent."""

    if count <= 0:
        return []
    try:
        with Path(path).open("r", encoding="utf-8", errors="replace") as fp:
            window: Deque[str] = deque(fp, maxlen=count)
    except OSError:
        return []
    return [line.rstrip("\n") for line in window]


class TaskLog:
    """Writes the header, raw output, and lifecycle lines for one task.

    The file handle stays open while the task runs. Write errors are counted
    and reported to the debug log once; they never reach the supervisor.
    """

    def __init__(self, path: Path, task_id: str, debug_log: Optional[DebugLogWriter] = None) -> None:
        self._path = Path(path)
        self._task_id = task_id
        self._debug_log = debug_log or DebugLogWriter.disabled()
        self._fp: Optional[IO[bytes]] = None
        self._closed = False
        self.write_errors = 0

    def write_header(self, record: TaskRecord, argv: List[str]) -> None:
        spec = record.spec
        timeout = "{0}ms".format(spec.timeout_ms) if spec.timeout_ms > 0 else "none"
        self.event("Starting task {0}: {1}".format(record.id, spec.prompt))
        self.event("Command: {0}".format(" ".join(argv)))
        self.event("Working directory: {0}".format(spec.working_directory))
        self.event("Permission level: {0}".format(spec.permission_level))
        if spec.model:
            self.event("Model: {0}".format(spec.model))
        self.event("Timeout: {0}".format(timeout))
        self._write(b"\n")

    def output(self, stream: str, data: bytes) -> None:
        if stream == "stderr":
            self._write(b"[stderr] " + data)
            return
        self._write(data)

    def event(self, message: str, ts_ms: Optional[int] = None) -> None:
        line = "[{0}] {1}\n".format(ms_to_iso(ts_ms if ts_ms is not None else now_ms()), message)
        self._write(line.encode("utf-8"))

    def heartbeat(self, payload: Dict[str, Any]) -> None:
        self.event(
            "HEARTBEAT #{0} elapsed={1} idle={2} last={3} stdout={4}B stderr={5}B".format(
                payload.get("heartbeat_count"),
                format_duration(int(payload.get("elapsed_ms") or 0)),
                format_duration(int(payload.get("idle_ms") or 0)),
                payload.get("last_activity_type") or "-",
                payload.get("stdout_bytes"),
                payload.get("stderr_bytes"),
            )
        )

    def stall_warning(self, payload: Dict[str, Any]) -> None:
        self.event(
            "STALL WARNING: no output for {0} (threshold {1})".format(
                format_duration(int(payload.get("idle_ms") or 0)),
                format_duration(int(payload.get("threshold_ms") or 0)),
            )
        )

    def exit_summary(self, record: TaskRecord) -> None:
        outcome = record.outcome
        activity = record.activity
        self._write(b"\n")
        self.event(
            "Process finished status={0} exit_code={1} signal={2} duration={3}".format(
                record.status.value,
                outcome.exit_code if outcome.exit_code is not None else "-",
                outcome.exit_signal or "-",
                format_duration(record.duration_ms()),
            )
        )
        self.event(
            "Totals: stdout={0}B stderr={1}B heartbeats={2}".format(
                activity.stdout_bytes,
                activity.stderr_bytes,
                activity.heartbeat_count,
            )
        )
        if outcome.failure_reason:
            self.event("Failure reason: {0}".format(outcome.failure_reason))

    def close(self) -> None:
        self._closed = True
        fp = self._fp
        self._fp = None
        if fp is None:
            return
        try:
            fp.close()
        except OSError:
            self._record_error("close")

    def _write(self, data: bytes) -> None:
        if self._closed:
            return
        try:
            if self._fp is None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._fp = self._path.open("ab")
            self._fp.write(data)
            self._fp.flush()
        except OSError:
            self._record_error("write")

    def _record_error(self, op: str) -> None:
        self.write_errors += 1
        if self.write_errors > 1:
            return
        self._debug_log.write_entry(
            level="error",
            component="tasklog",
            kind="io",
            task_id=self._task_id,
            message="tasklog.{0}_failed".format(op),
            data={"path": str(self._path)},
        )
