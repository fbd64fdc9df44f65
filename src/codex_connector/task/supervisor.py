"""Spawn, monitor, and terminate one external process."""

from __future__ import annotations

import asyncio
import errno
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from codex_connector.kernel.debug_log import DebugLogWriter
from codex_connector.task.activity import (
    DEFAULT_HEARTBEAT_INTERVAL_SEC,
    DEFAULT_SNIPPET_BYTES,
    DEFAULT_SNIPPET_MIN_CHARS,
    DEFAULT_STALL_THRESHOLD_SEC,
    ActivityMonitor,
)
from codex_connector.task.notify import NotificationSink
from codex_connector.task.tasklog import TaskLog
from codex_connector.task.types import (
    USER_CANCELLED_REASON,
    FailureKind,
    TaskRecord,
    TaskStatus,
    now_ms,
)

DEFAULT_KILL_GRACE_SEC = 5.0
_READ_CHUNK_BYTES = 64 * 1024
_STREAM_LIMIT = 2 ** 16


@dataclass(frozen=True)
class SupervisorOptions:
    heartbeat_interval_sec: float = DEFAULT_HEARTBEAT_INTERVAL_SEC
    stall_threshold_sec: float = DEFAULT_STALL_THRESHOLD_SEC
    kill_grace_sec: float = DEFAULT_KILL_GRACE_SEC
    snippet_bytes: int = DEFAULT_SNIPPET_BYTES
    snippet_min_chars: int = DEFAULT_SNIPPET_MIN_CHARS


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return "signal {0}".format(signum)


def _process_error_reason(exc: BaseException) -> str:
    code_num = getattr(exc, "errno", None)
    code = errno.errorcode.get(code_num, "") if isinstance(code_num, int) else ""
    message = getattr(exc, "strerror", None) or str(exc) or type(exc).__name__
    filename = getattr(exc, "filename", None)
    if filename and str(filename) not in message:
        message = "{0}: {1}".format(message, filename)
    return "process error: {0} ({1})".format(message, code or type(exc).__name__)


class _ExitAwareProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that reports the child's exit as soon as it is reaped.

    ``Process.wait()`` only resolves once every pipe is closed, which never
    happens while a grandchild keeps stdout or stderr open.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited = asyncio.Event()

    def process_exited(self) -> None:
        super().process_exited()
        self.exited.set()


class ProcessSupervisor:
    """Owns the live process handle of exactly one task.

    Status is assigned in one place (``_complete``). Timeout and cancellation
    only record a failure reason and request termination; the exit handler
    decides the terminal status.
    """

    def __init__(
        self,
        record: TaskRecord,
        *,
        task_log: TaskLog,
        notifier: NotificationSink,
        on_change: Callable[[], None],
        options: Optional[SupervisorOptions] = None,
        debug_log: Optional[DebugLogWriter] = None,
    ) -> None:
        self._record = record
        self._log = task_log
        self._notifier = notifier
        self._on_change = on_change
        self._options = options or SupervisorOptions()
        self._debug_log = debug_log or DebugLogWriter.disabled()
        self._argv = record.spec.command.build(
            prompt=record.spec.prompt,
            sandbox=record.spec.permission_level,
            result_file=record.result_file,
            model=record.spec.model,
        )
        self._monitor = ActivityMonitor(
            record.activity,
            started_at_ms=record.started_at,
            event_sink=self._on_activity_event,
            heartbeat_interval_sec=self._options.heartbeat_interval_sec,
            stall_threshold_sec=self._options.stall_threshold_sec,
            snippet_bytes=self._options.snippet_bytes,
            snippet_min_chars=self._options.snippet_min_chars,
        )
        self._process: Optional[asyncio.subprocess.Process] = None
        self._transport: Optional[asyncio.SubprocessTransport] = None
        self._watcher: Optional[asyncio.Task[None]] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._kill_handle: Optional[asyncio.TimerHandle] = None
        self._termination_kind: Optional[FailureKind] = None
        self._stream_error: Optional[OSError] = None
        self._done = asyncio.Event()

    @property
    def record(self) -> TaskRecord:
        return self._record

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def exited(self) -> bool:
        """True once the child has been reaped, even if its outcome is still being recorded."""

        return self._process is not None and self._process.returncode is not None

    async def wait_closed(self) -> TaskRecord:
        await self._done.wait()
        return self._record

    async def spawn(self) -> None:
        record = self._record
        spec = record.spec
        self._log.write_header(record, self._argv)
        self._monitor.mark("started")

        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.subprocess_exec(
                lambda: _ExitAwareProtocol(_STREAM_LIMIT, loop),
                *self._argv,
                cwd=spec.working_directory or None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            self._finish_with_process_error(exc, FailureKind.SPAWN_FAILURE)
            return

        process = asyncio.subprocess.Process(transport, protocol, loop)
        self._process = process
        self._transport = transport
        record.pid = process.pid
        self._log.event("Spawned pid={0}".format(process.pid))
        self._debug_log.write_task_entry(
            record,
            level="info",
            component="supervisor",
            kind="lifecycle",
            message="task.spawned",
            data={"pid": process.pid, "argv": self._argv, "cwd": spec.working_directory},
        )
        self._emit(
            "task.started",
            {
                "status": record.status.value,
                "pid": process.pid,
                "working_directory": spec.working_directory,
                "timeout_ms": spec.timeout_ms,
            },
        )

        self._monitor.start()
        if spec.timeout_ms > 0:
            self._timeout_handle = loop.call_later(spec.timeout_ms / 1000.0, self._on_timeout)
        self._watcher = loop.create_task(self._watch(process, protocol.exited))
        if self._termination_kind is not None:
            # Termination was requested while the process was being created.
            self._signal_with_grace(process)
        self._on_change()

    def cancel(self) -> bool:
        """Request user cancellation. Returns False when already terminating, exited or done."""

        return self.request_termination(USER_CANCELLED_REASON, FailureKind.USER_CANCELLED)

    def request_termination(self, reason: str, kind: FailureKind) -> bool:
        record = self._record
        if record.is_terminal or self._termination_kind is not None or self.exited:
            return False

        self._termination_kind = kind
        record.outcome.failure_reason = reason
        record.outcome.failure_kind = kind
        self._log.event("TERMINATING: {0}".format(reason))
        self._debug_log.write_task_entry(
            record,
            level="warn",
            component="supervisor",
            kind="termination",
            message="task.termination_requested",
            data={"reason": reason, "kind": kind.value},
        )
        self._emit(
            "task.timeout" if kind == FailureKind.TIMEOUT else "task.cancel_requested",
            {"reason": reason},
        )

        process = self._process
        if process is not None:
            self._signal_with_grace(process)
        self._on_change()
        return True

    def _signal_with_grace(self, process: asyncio.subprocess.Process) -> None:
        self._send_signal(process, force=False)
        if self._kill_handle is None:
            self._kill_handle = asyncio.get_running_loop().call_later(
                self._options.kill_grace_sec,
                self._force_kill,
            )

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        record = self._record
        if record.is_terminal:
            return
        elapsed = record.duration_ms()
        self.request_termination(
            "timeout after {0}ms (limit {1}ms)".format(elapsed, record.spec.timeout_ms),
            FailureKind.TIMEOUT,
        )

    def _force_kill(self) -> None:
        self._kill_handle = None
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._log.event(
            "Process still alive after {0:g}s grace window, sending SIGKILL".format(
                self._options.kill_grace_sec
            )
        )
        self._send_signal(process, force=True)

    @staticmethod
    def _send_signal(process: asyncio.subprocess.Process, *, force: bool) -> None:
        if process.returncode is not None:
            return
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            return

    async def _pump(self, stream: str, reader: Optional[asyncio.StreamReader]) -> None:
        if reader is None:
            return
        try:
            while True:
                chunk = await reader.read(_READ_CHUNK_BYTES)
                if not chunk:
                    return
                self._monitor.record_chunk(stream, chunk)
                self._log.output(stream, chunk)
                self._on_change()
        except OSError as exc:
            if self._stream_error is None:
                self._stream_error = exc
            process = self._process
            if process is not None:
                self._send_signal(process, force=True)

    async def _watch(self, process: asyncio.subprocess.Process, exited: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        readers = [
            loop.create_task(self._pump("stdout", process.stdout)),
            loop.create_task(self._pump("stderr", process.stderr)),
        ]
        try:
            await exited.wait()
            returncode = process.returncode
            # Grandchildren may hold the pipes open after the child exits.
            _, pending = await asyncio.wait(readers, timeout=self._options.kill_grace_sec)
            for reader in pending:
                reader.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                self._log.event(
                    "Output pipes still open {0:g}s after exit, stopped reading".format(
                        self._options.kill_grace_sec
                    )
                )
        except asyncio.CancelledError:
            for reader in readers:
                reader.cancel()
            raise
        except Exception as exc:
            self._finish_with_process_error(exc, FailureKind.PROCESS_ERROR)
            return
        finally:
            if self._transport is not None:
                self._transport.close()

        if self._stream_error is not None:
            self._finish_with_process_error(self._stream_error, FailureKind.PROCESS_ERROR)
            return
        self._finish_exit(returncode)

    def _finish_exit(self, returncode: Optional[int]) -> None:
        record = self._record
        outcome = record.outcome
        if returncode is not None and returncode < 0:
            outcome.exit_signal = _signal_name(-returncode)
        else:
            outcome.exit_code = returncode

        if self._termination_kind is not None:
            # Reason recorded by timeout/cancel wins over the exit-derived one.
            status = (
                TaskStatus.CANCELLED
                if self._termination_kind == FailureKind.USER_CANCELLED
                else TaskStatus.FAILED
            )
        elif outcome.exit_signal:
            outcome.failure_reason = "killed by {0}".format(outcome.exit_signal)
            outcome.failure_kind = FailureKind.SIGNAL_TERMINATION
            status = TaskStatus.FAILED
        elif outcome.exit_code not in (0, None):
            outcome.failure_reason = "exited with code {0}".format(outcome.exit_code)
            outcome.failure_kind = FailureKind.NON_ZERO_EXIT
            status = TaskStatus.FAILED
        else:
            status = TaskStatus.COMPLETED

        outcome.result_payload = self._read_result()
        self._complete(status)

    def _finish_with_process_error(self, exc: BaseException, kind: FailureKind) -> None:
        outcome = self._record.outcome
        outcome.failure_reason = _process_error_reason(exc)
        outcome.failure_kind = kind
        self._log.event("Process error: {0}".format(exc))
        self._complete(TaskStatus.FAILED)

    def _read_result(self) -> Optional[str]:
        result_file = self._record.result_file
        if not result_file:
            return None
        path = Path(result_file)
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None
        except OSError as exc:
            self._debug_log.write_task_entry(
                self._record,
                level="warn",
                component="supervisor",
                kind="result",
                message="task.result_unreadable",
                data={"path": result_file, "error": str(exc)},
            )
            return None

    def _complete(self, status: TaskStatus) -> None:
        record = self._record
        if record.is_terminal:
            return
        self._monitor.stop()
        for handle in (self._timeout_handle, self._kill_handle):
            if handle is not None:
                handle.cancel()
        self._timeout_handle = None
        self._kill_handle = None

        record.status = status
        record.completed_at = now_ms()
        record.pid = None
        self._log.exit_summary(record)
        self._log.close()

        outcome = record.outcome
        summary: Dict[str, Any] = {
            "status": status.value,
            "exit_code": outcome.exit_code,
            "exit_signal": outcome.exit_signal,
            "failure_reason": outcome.failure_reason,
            "failure_kind": outcome.failure_kind.value if outcome.failure_kind else None,
            "duration_ms": record.duration_ms(),
            "stdout_bytes": record.activity.stdout_bytes,
            "stderr_bytes": record.activity.stderr_bytes,
            "heartbeat_count": record.activity.heartbeat_count,
        }
        self._debug_log.write_task_entry(
            record,
            level="info" if status == TaskStatus.COMPLETED else "warn",
            component="supervisor",
            kind="lifecycle",
            message="task.{0}".format(status.value),
            data=summary,
        )
        self._emit("task.{0}".format(status.value), summary)
        self._on_change()
        self._done.set()

    def _on_activity_event(self, event: str, payload: Dict[str, Any]) -> None:
        if event == "heartbeat":
            self._log.heartbeat(payload)
        elif event == "stall_warning":
            self._log.stall_warning(payload)
            self._debug_log.write_task_entry(
                self._record,
                level="warn",
                component="supervisor",
                kind="activity",
                message="task.stall_warning",
                data=payload,
            )
        self._emit("task.{0}".format(event), payload)
        self._on_change()

    def _emit(self, message: str, data: Dict[str, Any]) -> None:
        self._notifier.emit(self._record.id, message, data)
