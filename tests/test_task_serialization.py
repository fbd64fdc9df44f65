from __future__ import annotations

from codex_connector.task.types import (
    CommandTemplate,
    FailureKind,
    TaskRecord,
    TaskSpec,
    TaskStatus,
    iso_to_ms,
    ms_to_iso,
)


def test_task_record_roundtrip_uses_camel_case_iso_fields():
    record = TaskRecord(
        id="deadbeef",
        spec=TaskSpec(prompt="fix the tests", working_directory="/work", model="o3", timeout_ms=5000),
        status=TaskStatus.FAILED,
        started_at=1_700_000_000_123,
        completed_at=1_700_000_004_456,
        log_file="/logs/deadbeef.log",
        result_file="/logs/deadbeef.result",
    )
    record.outcome.exit_code = 2
    record.outcome.failure_reason = "exited with code 2"
    record.outcome.failure_kind = FailureKind.NON_ZERO_EXIT
    record.activity.stdout_bytes = 12

    payload = record.to_dict()

    assert payload["startedAt"] == "2023-11-14T22:13:20.123Z"
    assert payload["spec"]["workingDirectory"] == "/work"
    assert payload["outcome"]["failureKind"] == "non_zero_exit"
    assert payload["activity"]["stdoutBytes"] == 12

    restored = TaskRecord.from_dict(payload)
    assert restored == record


def test_iso_helpers_keep_millisecond_precision():
    for value in (0, 1, 999, 1_700_000_000_001, 1_712_345_678_999):
        assert iso_to_ms(ms_to_iso(value)) == value
    assert ms_to_iso(None) is None
    assert iso_to_ms("") is None


def test_command_template_expands_model_args_only_when_model_set():
    template = CommandTemplate()

    without_model = template.build(prompt="hello world", sandbox="read-only", result_file="/r/out")
    with_model = template.build(prompt="hello world", sandbox="read-only", result_file="/r/out", model="o3")

    assert without_model == [
        "codex",
        "exec",
        "--full-auto",
        "--sandbox",
        "read-only",
        "--output-last-message",
        "/r/out",
        "hello world",
    ]
    assert with_model[:4] == ["codex", "exec", "--model", "o3"]
    assert with_model[-1] == "hello world"


def test_command_template_does_not_touch_braces_in_prompt():
    template = CommandTemplate(binary="tool", args=["{prompt}"])

    argv = template.build(prompt="use {sandbox} literally", sandbox="read-only", result_file="/r")

    assert argv == ["tool", "use {sandbox} literally"]


def test_from_dict_rejects_record_without_spec():
    try:
        TaskRecord.from_dict({"id": "x", "status": "running"})
    except ValueError as exc:
        assert "spec" in str(exc)
    else:
        raise AssertionError("expected ValueError")
