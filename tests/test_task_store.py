from __future__ import annotations

import json
import os

import pytest

from codex_connector.task.errors import PersistenceFailure
from codex_connector.task.store import TaskStore
from codex_connector.task.types import (
    RESTART_INTERRUPTED_REASON,
    FailureKind,
    TaskRecord,
    TaskSpec,
    TaskStatus,
)


def _record(task_id: str, status: TaskStatus = TaskStatus.RUNNING, started_at: int = 1_000) -> TaskRecord:
    record = TaskRecord(
        id=task_id,
        spec=TaskSpec(prompt="task {0}".format(task_id), working_directory="/work"),
        status=status,
        started_at=started_at,
        pid=4242 if status == TaskStatus.RUNNING else None,
    )
    if status.is_terminal:
        record.completed_at = started_at + 500
    return record


def test_save_then_read_returns_same_records(tmp_path):
    store = TaskStore(tmp_path / "tasks.json")
    records = {
        "aaaa0001": _record("aaaa0001", TaskStatus.COMPLETED),
        "aaaa0002": _record("aaaa0002", TaskStatus.RUNNING, started_at=2_000),
    }

    store.save(records)

    assert store.read() == records
    leftovers = [name for name in os.listdir(tmp_path) if name.endswith(".tmp")]
    assert leftovers == []


def test_load_reconciles_running_records_to_interrupted(tmp_path):
    store = TaskStore(tmp_path / "tasks.json")
    store.save({"aaaa0001": _record("aaaa0001"), "aaaa0002": _record("aaaa0002", TaskStatus.FAILED)})

    loaded = store.load()

    interrupted = loaded["aaaa0001"]
    assert interrupted.status == TaskStatus.INTERRUPTED
    assert interrupted.outcome.failure_reason == RESTART_INTERRUPTED_REASON
    assert interrupted.outcome.failure_kind == FailureKind.RESTART_INTERRUPTED
    assert interrupted.completed_at is not None
    assert interrupted.pid is None
    assert loaded["aaaa0002"].status == TaskStatus.FAILED

    # read() never reconciles.
    assert store.read()["aaaa0001"].status == TaskStatus.RUNNING


def test_missing_or_corrupt_file_yields_empty_map(tmp_path):
    path = tmp_path / "tasks.json"
    store = TaskStore(path)
    assert store.load() == {}

    path.write_text("{not json", encoding="utf-8")
    assert store.load() == {}

    path.write_text("[1, 2, 3]", encoding="utf-8")
    assert store.load() == {}


def test_invalid_entries_are_skipped(tmp_path):
    path = tmp_path / "tasks.json"
    good = _record("aaaa0001", TaskStatus.COMPLETED).to_dict()
    path.write_text(
        json.dumps({"aaaa0001": good, "broken": {"id": "broken", "status": "running"}, "junk": 3}),
        encoding="utf-8",
    )

    loaded = TaskStore(path).load()

    assert list(loaded.keys()) == ["aaaa0001"]


def test_save_failure_raises_persistence_failure(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    store = TaskStore(blocker / "tasks.json")

    with pytest.raises(PersistenceFailure) as exc_info:
        store.save({"aaaa0001": _record("aaaa0001")})

    assert "failed to write task state" in str(exc_info.value)
