from __future__ import annotations

import json
import sys

from typer.testing import CliRunner

import codex_connector.cli
from codex_connector.task.store import TaskStore
from codex_connector.task.types import TaskRecord, TaskSpec, TaskStatus


def _combined_output(result) -> str:
    try:
        return result.stdout + result.stderr
    except Exception:
        return result.stdout


def _write_python_config(data_dir, code: str) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "config.toml").write_text(
        "\n".join(
            [
                "[codex]",
                "binary = {0}".format(json.dumps(sys.executable)),
                "args = [\"-c\", {0}]".format(json.dumps(code)),
                "",
                "[supervisor]",
                "heartbeat_interval_sec = 0.05",
                "kill_grace_sec = 0.5",
                "",
            ]
        ),
        encoding="utf-8",
    )


def test_doctor_outputs_json(tmp_path):
    runner = CliRunner()
    result = runner.invoke(codex_connector.cli.app, ["--data-dir", str(tmp_path), "doctor"])

    assert result.exit_code == 0
    parsed = json.loads(result.stdout)
    assert parsed["data_dir"] == str(tmp_path.resolve())
    assert parsed["data_dir_writable"] is True
    assert parsed["task_counts"]["running"] == 0
    assert "logs_enabled" in parsed


def test_doctor_text_and_bad_format(tmp_path):
    runner = CliRunner()

    text = runner.invoke(codex_connector.cli.app, ["--data-dir", str(tmp_path), "doctor", "--format", "text"])
    bad = runner.invoke(codex_connector.cli.app, ["--data-dir", str(tmp_path), "doctor", "--format", "yaml"])

    assert text.exit_code == 0
    assert "Doctor Report" in text.stdout
    assert "Debug Logs" in text.stdout
    assert bad.exit_code == 2
    assert "Unsupported format" in _combined_output(bad)


def test_init_then_init_again_requires_force(tmp_path):
    runner = CliRunner()
    args = ["--data-dir", str(tmp_path / "home"), "init"]

    first = runner.invoke(codex_connector.cli.app, args)
    second = runner.invoke(codex_connector.cli.app, args)
    forced = runner.invoke(codex_connector.cli.app, args + ["--force"])

    assert first.exit_code == 0
    assert (tmp_path / "home" / "config.toml").is_file()
    assert second.exit_code == 2
    assert "already exists" in _combined_output(second)
    assert forced.exit_code == 0


def test_status_unknown_task_exits_one(tmp_path):
    runner = CliRunner()
    result = runner.invoke(codex_connector.cli.app, ["--data-dir", str(tmp_path), "status", "nope1234"])

    assert result.exit_code == 1
    assert "task not found: nope1234" in _combined_output(result)


def test_tasks_lists_persisted_records_without_reconciling(tmp_path):
    store = TaskStore(tmp_path / "tasks.json")
    running = TaskRecord(
        id="run00001",
        spec=TaskSpec(prompt="a fairly long prompt that will need to be truncated in the table", working_directory="/w"),
        started_at=2_000,
        pid=99999,
    )
    failed = TaskRecord(
        id="fail0001",
        spec=TaskSpec(prompt="short", working_directory="/w"),
        status=TaskStatus.FAILED,
        started_at=1_000,
        completed_at=1_500,
    )
    store.save({running.id: running, failed.id: failed})
    runner = CliRunner()

    everything = runner.invoke(codex_connector.cli.app, ["--data-dir", str(tmp_path), "tasks"])
    only_failed = runner.invoke(codex_connector.cli.app, ["--data-dir", str(tmp_path), "tasks", "--status", "failed"])
    bad_filter = runner.invoke(codex_connector.cli.app, ["--data-dir", str(tmp_path), "tasks", "--status", "odd"])

    assert everything.exit_code == 0
    lines = everything.stdout.splitlines()
    run_row = next(index for index, line in enumerate(lines) if "run00001" in line)
    fail_row = next(index for index, line in enumerate(lines) if "fail0001" in line)
    assert run_row < fail_row
    assert "| running |" in lines[run_row]
    assert "a fairly long prompt that will need to b..." in lines[run_row]

    assert "run00001" not in only_failed.stdout
    assert "fail0001" in only_failed.stdout
    assert bad_filter.exit_code == 2
    assert store.read()["run00001"].status == TaskStatus.RUNNING


def test_run_reports_result_and_exit_code(tmp_path):
    data_dir = tmp_path / "home"
    _write_python_config(data_dir, "print('agent says hi')")
    runner = CliRunner()

    result = runner.invoke(
        codex_connector.cli.app,
        ["--data-dir", str(data_dir), "run", "say hi", "--cwd", str(tmp_path), "--quiet"],
    )

    assert result.exit_code == 0
    assert "Codex Agent Result" in result.stdout
    assert "completed successfully" in result.stdout

    records = list(TaskStore(data_dir / "tasks.json").read().values())
    assert len(records) == 1
    assert records[0].status == TaskStatus.COMPLETED
    assert records[0].activity.stdout_bytes == len("agent says hi\n")

    status = runner.invoke(codex_connector.cli.app, ["--data-dir", str(data_dir), "status", records[0].id])
    assert status.exit_code == 0
    assert "**Status:** completed" in status.stdout
    assert "agent says hi" in status.stdout


def test_run_failure_exits_one(tmp_path):
    data_dir = tmp_path / "home"
    _write_python_config(data_dir, "import sys; sys.exit(4)")
    runner = CliRunner()

    result = runner.invoke(
        codex_connector.cli.app,
        ["--data-dir", str(data_dir), "run", "fail please", "--cwd", str(tmp_path), "--quiet"],
    )

    assert result.exit_code == 1
    assert "exited with code 4" in result.stdout
