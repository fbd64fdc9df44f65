"""Task records, specs, and result views for supervised processes."""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


PERMISSION_LEVELS = ("read-only", "workspace-write", "danger-full-access")
DEFAULT_PERMISSION_LEVEL = "danger-full-access"

RESTART_INTERRUPTED_REASON = "supervisor restarted while task was running"
USER_CANCELLED_REASON = "cancelled by user"

MODEL_ARGS_TOKEN = "{model_args}"
_PLACEHOLDER_RE = re.compile(r"\{(?:prompt|sandbox|model|result_file)\}")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_task_id() -> str:
    return uuid.uuid4().hex[:8]


def ms_to_iso(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    stamp = _EPOCH + timedelta(milliseconds=int(value))
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_to_ms(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    stamp = datetime.fromisoformat(text)
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return (stamp - _EPOCH) // timedelta(milliseconds=1)


def format_duration(ms: int) -> str:
    """Human duration for logs and reports: ``4.2s``, ``3m 7s``, ``2h 5m``."""

    seconds = max(0, int(ms)) / 1000.0
    if seconds < 60:
        return "{0:.1f}s".format(seconds)
    minutes, rest = divmod(int(seconds), 60)
    if minutes < 60:
        return "{0}m {1}s".format(minutes, rest)
    hours, minutes = divmod(minutes, 60)
    return "{0}h {1}m".format(hours, minutes)


class TaskStatus(str, Enum):
    """Lifecycle states for one supervised task."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != TaskStatus.RUNNING


class FailureKind(str, Enum):
    """Which failure path produced a task's failure reason."""

    SPAWN_FAILURE = "spawn_failure"
    PROCESS_ERROR = "process_error"
    TIMEOUT = "timeout"
    USER_CANCELLED = "user_cancelled"
    NON_ZERO_EXIT = "non_zero_exit"
    SIGNAL_TERMINATION = "signal_termination"
    RESTART_INTERRUPTED = "restart_interrupted"


@dataclass(frozen=True)
class CommandTemplate:
    """Argv template for the supervised program.

    Placeholders ``{prompt}``, ``{sandbox}``, ``{model}`` and ``{result_file}``
    are substituted inside each argument. A standalone ``{model_args}``
    argument expands to ``model_args`` when a model is set and to nothing
    otherwise.
    """

    binary: str = "codex"
    args: List[str] = field(
        default_factory=lambda: [
            "exec",
            MODEL_ARGS_TOKEN,
            "--full-auto",
            "--sandbox",
            "{sandbox}",
            "--output-last-message",
            "{result_file}",
            "{prompt}",
        ]
    )
    model_args: List[str] = field(default_factory=lambda: ["--model", "{model}"])

    def build(
        self,
        *,
        prompt: str,
        sandbox: str,
        result_file: str,
        model: Optional[str] = None,
    ) -> List[str]:
        values = {
            "{prompt}": prompt,
            "{sandbox}": sandbox,
            "{model}": model or "",
            "{result_file}": result_file,
        }

        def _fill(arg: str) -> str:
            return _PLACEHOLDER_RE.sub(lambda match: values[match.group(0)], arg)

        argv = [self.binary]
        for arg in self.args:
            if arg == MODEL_ARGS_TOKEN:
                if model:
                    argv.extend(_fill(item) for item in self.model_args)
                continue
            argv.append(_fill(arg))
        return argv

    def to_dict(self) -> Dict[str, Any]:
        return {
            "binary": self.binary,
            "args": list(self.args),
            "modelArgs": list(self.model_args),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandTemplate":
        default = cls()
        args = data.get("args")
        model_args = data.get("modelArgs")
        return cls(
            binary=str(data.get("binary") or default.binary),
            args=[str(item) for item in args] if isinstance(args, list) else list(default.args),
            model_args=(
                [str(item) for item in model_args]
                if isinstance(model_args, list)
                else list(default.model_args)
            ),
        )


@dataclass(frozen=True)
class TaskSpec:
    """What to run. Immutable once a task is created."""

    prompt: str
    working_directory: str
    command: CommandTemplate = field(default_factory=CommandTemplate)
    permission_level: str = DEFAULT_PERMISSION_LEVEL
    model: Optional[str] = None
    timeout_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "workingDirectory": self.working_directory,
            "command": self.command.to_dict(),
            "permissionLevel": self.permission_level,
            "model": self.model,
            "timeoutMs": int(self.timeout_ms),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskSpec":
        command = data.get("command")
        return cls(
            prompt=str(data.get("prompt") or ""),
            working_directory=str(data.get("workingDirectory") or ""),
            command=CommandTemplate.from_dict(command) if isinstance(command, dict) else CommandTemplate(),
            permission_level=str(data.get("permissionLevel") or DEFAULT_PERMISSION_LEVEL),
            model=str(data["model"]) if data.get("model") else None,
            timeout_ms=int(data.get("timeoutMs") or 0),
        )


@dataclass
class TaskActivity:
    last_activity_at: Optional[int] = None
    last_activity_type: str = ""
    last_output_snippet: str = ""
    stdout_bytes: int = 0
    stderr_bytes: int = 0
    heartbeat_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastActivityAt": ms_to_iso(self.last_activity_at),
            "lastActivityType": self.last_activity_type,
            "lastOutputSnippet": self.last_output_snippet,
            "stdoutBytes": self.stdout_bytes,
            "stderrBytes": self.stderr_bytes,
            "heartbeatCount": self.heartbeat_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskActivity":
        return cls(
            last_activity_at=iso_to_ms(data.get("lastActivityAt")),
            last_activity_type=str(data.get("lastActivityType") or ""),
            last_output_snippet=str(data.get("lastOutputSnippet") or ""),
            stdout_bytes=int(data.get("stdoutBytes") or 0),
            stderr_bytes=int(data.get("stderrBytes") or 0),
            heartbeat_count=int(data.get("heartbeatCount") or 0),
        )


@dataclass
class TaskOutcome:
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    result_payload: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exitCode": self.exit_code,
            "exitSignal": self.exit_signal,
            "failureReason": self.failure_reason,
            "failureKind": self.failure_kind.value if self.failure_kind else None,
            "resultPayload": self.result_payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskOutcome":
        kind = data.get("failureKind")
        exit_code = data.get("exitCode")
        return cls(
            exit_code=int(exit_code) if exit_code is not None else None,
            exit_signal=str(data["exitSignal"]) if data.get("exitSignal") else None,
            failure_reason=str(data["failureReason"]) if data.get("failureReason") else None,
            failure_kind=FailureKind(kind) if kind else None,
            result_payload=data.get("resultPayload"),
        )


@dataclass
class TaskRecord:
    """Durable view of one task. The process handle is never part of it."""

    id: str
    spec: TaskSpec
    status: TaskStatus = TaskStatus.RUNNING
    started_at: int = field(default_factory=now_ms)
    completed_at: Optional[int] = None
    activity: TaskActivity = field(default_factory=TaskActivity)
    outcome: TaskOutcome = field(default_factory=TaskOutcome)
    pid: Optional[int] = None
    log_file: str = ""
    result_file: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def duration_ms(self, now: Optional[int] = None) -> int:
        end = self.completed_at if self.completed_at is not None else (now if now is not None else now_ms())
        return max(0, int(end) - int(self.started_at))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "spec": self.spec.to_dict(),
            "status": self.status.value,
            "startedAt": ms_to_iso(self.started_at),
            "completedAt": ms_to_iso(self.completed_at),
            "activity": self.activity.to_dict(),
            "outcome": self.outcome.to_dict(),
            "pid": self.pid,
            "logFile": self.log_file,
            "resultFile": self.result_file,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskRecord":
        spec = data.get("spec")
        activity = data.get("activity")
        outcome = data.get("outcome")
        if not isinstance(spec, dict):
            raise ValueError("task record missing spec")
        task_id = str(data.get("id") or "").strip()
        if not task_id:
            raise ValueError("task record missing id")
        started_at = iso_to_ms(data.get("startedAt"))
        pid = data.get("pid")
        return cls(
            id=task_id,
            spec=TaskSpec.from_dict(spec),
            status=TaskStatus(str(data.get("status") or "")),
            started_at=started_at if started_at is not None else 0,
            completed_at=iso_to_ms(data.get("completedAt")),
            activity=TaskActivity.from_dict(activity) if isinstance(activity, dict) else TaskActivity(),
            outcome=TaskOutcome.from_dict(outcome) if isinstance(outcome, dict) else TaskOutcome(),
            pid=int(pid) if pid is not None else None,
            log_file=str(data.get("logFile") or ""),
            result_file=str(data.get("resultFile") or ""),
        )

    def copy(self) -> "TaskRecord":
        return TaskRecord.from_dict(self.to_dict())


@dataclass(frozen=True)
class StartResult:
    task_id: str
    record: TaskRecord


@dataclass(frozen=True)
class TaskSnapshot:
    """Read-only status view: record copy plus recent log lines."""

    record: TaskRecord
    log_tail: List[str] = field(default_factory=list)
    elapsed_ms: int = 0
    idle_ms: Optional[int] = None


@dataclass(frozen=True)
class CancelResult:
    task_id: str
    accepted: bool
    status: TaskStatus
    message: str


@dataclass(frozen=True)
class WaitResult:
    record: TaskRecord
    timed_out: bool = False

    @property
    def still_running(self) -> bool:
        return self.timed_out and not self.record.is_terminal
