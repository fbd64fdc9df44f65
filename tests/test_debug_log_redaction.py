from __future__ import annotations

import json

from codex_connector.kernel.debug_log import DebugLogWriter
from codex_connector.task.types import FailureKind, TaskRecord, TaskSpec


def test_debug_log_default_redaction_masks_sensitive_keys_and_values(tmp_path):
    writer = DebugLogWriter(
        logs_dir=tmp_path / "logs",
        enabled=True,
        max_file_bytes=1024 * 1024,
        max_files=2,
        redaction="default",
    )

    writer.write_entry(
        level="info",
        component="supervisor",
        kind="lifecycle",
        task_id="abc12345",
        message="Authorization: Bearer top-secret token=abc123 sk-1234567890ABCDEF",
        data={
            "token": "abc123",
            "argv": ["codex", "exec", "api_key=hunter2"],
            "nested": {
                "api_key": "sk-foo",
                "normal": "ok",
            },
        },
    )

    lines = (tmp_path / "logs" / "debug.log.jsonl").read_text(encoding="utf-8").strip().splitlines()
    assert len(lines) == 1
    row = json.loads(lines[0])

    assert row["task_id"] == "abc12345"
    assert "***REDACTED***" in row["message"]
    assert "top-secret" not in row["message"]
    assert "abc123" not in row["message"]
    assert row["data"]["token"] == "***REDACTED***"
    assert row["data"]["nested"]["api_key"] == "***REDACTED***"
    assert row["data"]["nested"]["normal"] == "ok"
    assert "hunter2" not in row["data"]["argv"][2]
    assert row["data"]["argv"][:2] == ["codex", "exec"]


def test_debug_log_strict_redaction_masks_all_scalars(tmp_path):
    writer = DebugLogWriter(
        logs_dir=tmp_path / "logs",
        enabled=True,
        redaction="strict",
    )

    writer.write_entry(
        level="warn",
        component="store",
        kind="load",
        message="store.load_failed",
        data={"path": "/tmp/tasks.json", "details": {"reason": "corrupt"}},
    )

    row = json.loads((tmp_path / "logs" / "debug.log.jsonl").read_text(encoding="utf-8").strip())
    assert row["data"]["path"] == "***REDACTED***"
    assert row["data"]["details"]["reason"] == "***REDACTED***"
    assert row["message"] == "store.load_failed"


def test_task_entry_carries_status_failure_kind_and_pid(tmp_path):
    writer = DebugLogWriter(logs_dir=tmp_path / "logs", enabled=True)
    record = TaskRecord(id="abc12345", spec=TaskSpec(prompt="fix it", working_directory=str(tmp_path)), pid=4242)
    record.outcome.failure_kind = FailureKind.TIMEOUT

    writer.write_task_entry(
        record,
        level="warn",
        component="supervisor",
        kind="termination",
        message="task.termination_requested",
        data={"reason": "timeout after 1000ms (limit 1000ms)"},
    )

    row = json.loads((tmp_path / "logs" / "debug.log.jsonl").read_text(encoding="utf-8").strip())
    assert row["task_id"] == "abc12345"
    assert row["status"] == "running"
    assert row["failure_kind"] == "timeout"
    assert row["pid"] == 4242
    assert row["data"]["reason"].startswith("timeout after")
