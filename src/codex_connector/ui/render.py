"""Presentation helpers for codex-connector reports."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, TextIO

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from codex_connector.task.types import TaskRecord, TaskSnapshot, TaskStatus, format_duration

_TASK_PREVIEW_CHARS = 40


def render_notice(level: str, message: str) -> str:
    prefix_map = {
        "info": "Info",
        "warn": "Warning",
        "error": "Error",
        "success": "Success",
    }
    return "{0}: {1}".format(prefix_map.get(level, "Info"), message)


def _is_tty(stream: TextIO, forced: Optional[bool]) -> bool:
    if forced is not None:
        return forced
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except (OSError, ValueError):
            return False
    return False


def _preview(text: str, limit: int = _TASK_PREVIEW_CHARS) -> str:
    flat = " ".join(str(text or "").split())
    if len(flat) > limit:
        return flat[:limit] + "..."
    return flat


def _outcome_lines(record: TaskRecord) -> List[str]:
    outcome = record.outcome
    activity = record.activity
    lines: List[str] = []
    if outcome.exit_code is not None:
        lines.append("**Exit code:** {0}".format(outcome.exit_code))
    if outcome.exit_signal:
        lines.append("**Signal:** {0}".format(outcome.exit_signal))
    lines.append("**Duration:** {0}".format(format_duration(record.duration_ms())))
    lines.append(
        "**Output:** stdout {0} B, stderr {1} B, heartbeats {2}".format(
            activity.stdout_bytes,
            activity.stderr_bytes,
            activity.heartbeat_count,
        )
    )
    if outcome.failure_reason:
        lines.append("**Failure:** {0}".format(outcome.failure_reason))
    return lines


def render_result_report(record: TaskRecord) -> str:
    status = record.status.value
    if record.status == TaskStatus.COMPLETED:
        status = "completed successfully"
    lines = [
        "## Codex Agent Result",
        "",
        "**Task ID:** {0}".format(record.id),
        "**Status:** {0}".format(status),
    ]
    lines.extend(_outcome_lines(record))
    if record.outcome.result_payload:
        lines.extend(["", "### Output", record.outcome.result_payload.rstrip()])
    return "\n".join(lines)


def render_status_report(snapshot: TaskSnapshot, tail: int) -> str:
    record = snapshot.record
    activity = record.activity
    lines = [
        "## Codex Task Status",
        "",
        "**Task ID:** {0}".format(record.id),
        "**Status:** {0}".format(record.status.value),
        "**Task:** {0}".format(record.spec.prompt),
        "**Started:** {0}".format(record.to_dict()["startedAt"]),
    ]
    if record.completed_at is not None:
        lines.append("**Completed:** {0}".format(record.to_dict()["completedAt"]))
    else:
        lines.append("**Elapsed:** {0}".format(format_duration(snapshot.elapsed_ms)))
    if record.pid:
        lines.append("**PID:** {0}".format(record.pid))
    if snapshot.idle_ms is not None:
        lines.append(
            "**Last activity:** {0} ({1} ago)".format(
                activity.last_activity_type or "-",
                format_duration(snapshot.idle_ms),
            )
        )
    if activity.last_output_snippet and not record.is_terminal:
        lines.append("**Last output:** {0}".format(_preview(activity.last_output_snippet, 120)))
    if record.is_terminal:
        lines.extend(_outcome_lines(record))

    log_text = "\n".join(snapshot.log_tail) if snapshot.log_tail else "(no logs yet)"
    lines.extend(
        [
            "",
            "### Recent Logs (last {0} lines)".format(tail),
            "```",
            log_text,
            "```",
        ]
    )
    if record.outcome.result_payload:
        lines.extend(["", "### Result", record.outcome.result_payload.rstrip()])
    return "\n".join(lines)


def render_task_table_text(records: Iterable[TaskRecord], status_filter: str) -> str:
    rows = list(records)
    if not rows:
        return "No tasks found."
    lines = [
        "## Codex Tasks ({0})".format(status_filter),
        "",
        "| ID | Status | Task | Started |",
        "|----|--------|------|---------|",
    ]
    for record in rows:
        lines.append(
            "| {0} | {1} | {2} | {3} |".format(
                record.id,
                record.status.value,
                _preview(record.spec.prompt),
                record.to_dict()["startedAt"],
            )
        )
    return "\n".join(lines)


def print_task_table(
    records: Iterable[TaskRecord],
    status_filter: str,
    stream: TextIO,
    is_tty: Optional[bool] = None,
) -> None:
    rows = list(records)
    if not (rows and _is_tty(stream, is_tty)):
        stream.write(render_task_table_text(rows, status_filter) + "\n")
        stream.flush()
        return

    table = Table(title="Codex Tasks ({0})".format(status_filter), box=box.SIMPLE_HEAVY)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Task")
    table.add_column("Started", no_wrap=True)
    table.add_column("Duration", justify="right")
    styles = {
        TaskStatus.RUNNING: "yellow",
        TaskStatus.COMPLETED: "green",
        TaskStatus.FAILED: "red",
        TaskStatus.CANCELLED: "magenta",
        TaskStatus.INTERRUPTED: "dim",
    }
    for record in rows:
        table.add_row(
            record.id,
            "[{0}]{1}[/]".format(styles.get(record.status, "white"), record.status.value),
            _preview(record.spec.prompt),
            str(record.to_dict()["startedAt"]),
            format_duration(record.duration_ms()),
        )
    Console(file=stream, highlight=False, soft_wrap=True).print(table)


def print_markdown(text: str, stream: TextIO, is_tty: Optional[bool] = None) -> None:
    if _is_tty(stream, is_tty):
        Console(file=stream, highlight=False, soft_wrap=True).print(Markdown(text))
        return
    stream.write(text + "\n")
    stream.flush()


def render_progress_line(task_id: str, message: str, data: Dict[str, Any]) -> Optional[str]:
    """One-line progress text for a lifecycle notification, or None to skip."""

    if message == "task.started":
        return "[{0}] started pid={1}".format(task_id, data.get("pid"))
    if message == "task.heartbeat":
        return "[{0}] running {1}, last activity {2} ago ({3}), stdout={4}B stderr={5}B".format(
            task_id,
            format_duration(int(data.get("elapsed_ms") or 0)),
            format_duration(int(data.get("idle_ms") or 0)),
            data.get("last_activity_type") or "-",
            data.get("stdout_bytes", 0),
            data.get("stderr_bytes", 0),
        )
    if message == "task.stall_warning":
        return "[{0}] no output for {1}".format(task_id, format_duration(int(data.get("idle_ms") or 0)))
    if message in {"task.timeout", "task.cancel_requested"}:
        return "[{0}] terminating: {1}".format(task_id, data.get("reason") or "")
    if message.startswith("task.") and "status" in data:
        return "[{0}] {1}".format(task_id, data.get("status"))
    return None


def render_doctor_text(report: Dict[str, Any]) -> str:
    counts = report.get("task_counts")
    if not isinstance(counts, dict):
        counts = {}
    lines = [
        "Doctor Report",
        "data_dir={0}".format(report.get("data_dir", "")),
        "config_file={0} present={1}".format(
            report.get("config_file", ""),
            bool(report.get("config_file_present")),
        ),
        "data_dir_writable={0}".format(bool(report.get("data_dir_writable"))),
        "",
        "Codex",
        "codex_binary={0} found={1}".format(
            report.get("codex_binary", ""),
            bool(report.get("codex_binary_found")),
        ),
        "default_sandbox={0}".format(report.get("default_sandbox", "")),
        "",
        "Supervisor",
        "heartbeat_interval_sec={0} stall_threshold_sec={1} kill_grace_sec={2}".format(
            report.get("heartbeat_interval_sec"),
            report.get("stall_threshold_sec"),
            report.get("kill_grace_sec"),
        ),
        "tasks {0}".format(
            " ".join("{0}={1}".format(key, counts[key]) for key in sorted(counts.keys())) or "none"
        ),
        "",
        "Debug Logs",
        "logs_enabled={0}".format(bool(report.get("logs_enabled"))),
        "logs_active_size_bytes={0} logs_total_size_bytes={1}".format(
            int(report.get("logs_active_size_bytes") or 0),
            int(report.get("logs_total_size_bytes") or 0),
        ),
        "logs_write_errors={0}".format(int(report.get("logs_write_errors") or 0)),
    ]
    logs_active_file = report.get("logs_active_file")
    if logs_active_file:
        lines.append("logs_active_file={0}".format(logs_active_file))
    data_dir_error = report.get("data_dir_error")
    if data_dir_error:
        lines.extend(["", "Data Directory Error", str(data_dir_error)])
    return "\n".join(lines)
