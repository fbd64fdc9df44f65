"""In-memory index of tasks and their supervisors."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from codex_connector.kernel.debug_log import DebugLogWriter
from codex_connector.task.errors import PersistenceFailure, TaskNotFoundError
from codex_connector.task.notify import NotificationSink
from codex_connector.task.store import TaskStore
from codex_connector.task.supervisor import ProcessSupervisor, SupervisorOptions
from codex_connector.task.tasklog import TaskLog, tail_lines
from codex_connector.task.types import (
    CancelResult,
    StartResult,
    TaskRecord,
    TaskSnapshot,
    TaskSpec,
    WaitResult,
    new_task_id,
    now_ms,
)

STATUS_FILTER_ALL = "all"
DEFAULT_TAIL_LINES = 50
DEFAULT_LIST_LIMIT = 20
DEFAULT_POLL_INTERVAL_MS = 1000


class TaskRegistry:
    """Owns the task map for one supervising process.

    Records are mutated only by their supervisor while running (and by the
    store at load). Reads return copies. Persistence is coalesced into a
    single background save so it never sits on a child's I/O path.
    """

    def __init__(
        self,
        store: TaskStore,
        logs_dir: Path,
        *,
        notifier: Optional[NotificationSink] = None,
        options: Optional[SupervisorOptions] = None,
        debug_log: Optional[DebugLogWriter] = None,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    ) -> None:
        self._store = store
        self._poll_interval_ms = max(1, int(poll_interval_ms))
        self._logs_dir = Path(logs_dir)
        self._debug_log = debug_log or DebugLogWriter.disabled()
        self._notifier = notifier or NotificationSink(debug_log=self._debug_log)
        self._options = options or SupervisorOptions()
        self._records: Dict[str, TaskRecord] = store.load()
        self._supervisors: Dict[str, ProcessSupervisor] = {}
        self._dirty = False
        self._save_task: Optional[asyncio.Task[None]] = None
        self._background: Set["asyncio.Task[None]"] = set()
        self.save_failures = 0

    async def start(self, spec: TaskSpec, *, synchronous: bool = False) -> StartResult:
        task_id = self._allocate_id()
        record = TaskRecord(
            id=task_id,
            spec=spec,
            log_file=str(self._logs_dir / "{0}.log".format(task_id)),
            result_file=str(self._logs_dir / "{0}.result".format(task_id)),
        )
        self._records[task_id] = record
        supervisor = ProcessSupervisor(
            record,
            task_log=TaskLog(Path(record.log_file), task_id, debug_log=self._debug_log),
            notifier=self._notifier,
            on_change=self._mark_dirty,
            options=self._options,
            debug_log=self._debug_log,
        )
        self._supervisors[task_id] = supervisor
        self._mark_dirty()

        # Shielded like the wait below: cancelling the caller must not kill the child.
        await asyncio.shield(supervisor.spawn())
        if supervisor.done:
            self._supervisors.pop(task_id, None)
        else:
            watcher = asyncio.get_running_loop().create_task(self._release_when_done(supervisor))
            self._background.add(watcher)
            watcher.add_done_callback(self._background.discard)

        if not synchronous:
            return StartResult(task_id=task_id, record=record.copy())

        await asyncio.shield(supervisor.wait_closed())
        await self.flush()
        return StartResult(task_id=task_id, record=record.copy())

    def status(self, task_id: str, tail: int = DEFAULT_TAIL_LINES) -> TaskSnapshot:
        return build_snapshot(self._get(task_id), tail)

    def list_tasks(
        self,
        status_filter: str = STATUS_FILTER_ALL,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[TaskRecord]:
        return select_tasks(self._records.values(), status_filter, limit)

    def cancel(self, task_id: str) -> CancelResult:
        record = self._get(task_id)
        supervisor = self._supervisors.get(task_id)
        if record.is_terminal or supervisor is None:
            return CancelResult(
                task_id=task_id,
                accepted=False,
                status=record.status,
                message="task {0} is not running (status: {1})".format(task_id, record.status.value),
            )
        if supervisor.exited:
            return CancelResult(
                task_id=task_id,
                accepted=False,
                status=record.status,
                message="task {0} has already exited; its outcome is being recorded".format(task_id),
            )
        if not supervisor.cancel():
            return CancelResult(
                task_id=task_id,
                accepted=False,
                status=record.status,
                message="task {0} is already terminating ({1})".format(
                    task_id, record.outcome.failure_reason or "pending"
                ),
            )
        return CancelResult(
            task_id=task_id,
            accepted=True,
            status=record.status,
            message="sent SIGTERM to task {0} (pid {1}); it will be cancelled".format(task_id, record.pid),
        )

    async def wait(
        self,
        task_id: str,
        poll_interval_ms: Optional[int] = None,
        timeout_ms: int = 0,
    ) -> WaitResult:
        """Poll until the task is terminal or ``timeout_ms`` elapses (0 waits forever).

        Without ``poll_interval_ms`` the registry's configured interval is used.
        """

        record = self._get(task_id)
        if poll_interval_ms is None:
            poll_interval_ms = self._poll_interval_ms
        interval = max(1, int(poll_interval_ms)) / 1000.0
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000.0 if timeout_ms > 0 else None
        while not record.is_terminal:
            if deadline is None:
                await asyncio.sleep(interval)
                continue
            remaining = deadline - loop.time()
            if remaining <= 0:
                return WaitResult(record=record.copy(), timed_out=True)
            await asyncio.sleep(min(interval, remaining))
        return WaitResult(record=record.copy(), timed_out=False)

    async def flush(self) -> None:
        """Wait until every mutation so far has been written (or failed)."""

        while self._save_task is not None and not self._save_task.done():
            await asyncio.shield(self._save_task)
        if self._dirty:
            self._save_task = asyncio.get_running_loop().create_task(self._save_loop())
            await asyncio.shield(self._save_task)

    async def close(self) -> None:
        await self.flush()

    def _get(self, task_id: str) -> TaskRecord:
        record = self._records.get(str(task_id or ""))
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    def _allocate_id(self) -> str:
        while True:
            task_id = new_task_id()
            if task_id not in self._records:
                return task_id

    async def _release_when_done(self, supervisor: ProcessSupervisor) -> None:
        await supervisor.wait_closed()
        self._supervisors.pop(supervisor.record.id, None)

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._save_task is not None and not self._save_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._save_task = loop.create_task(self._save_loop())

    async def _save_loop(self) -> None:
        while self._dirty:
            self._dirty = False
            snapshot = {task_id: record.copy() for task_id, record in self._records.items()}
            try:
                await asyncio.to_thread(self._store.save, snapshot)
            except PersistenceFailure as exc:
                # Left for the next mutation to retry.
                self.save_failures += 1
                self._debug_log.write_entry(
                    level="error",
                    component="registry",
                    kind="persist",
                    message="store.save_failed",
                    data={"error": str(exc), "failures": self.save_failures},
                )
                return


def select_tasks(
    records: Iterable[TaskRecord],
    status_filter: str = STATUS_FILTER_ALL,
    limit: int = DEFAULT_LIST_LIMIT,
) -> List[TaskRecord]:
    """Filter by status and order most recently started first."""

    wanted = str(status_filter or STATUS_FILTER_ALL).strip().lower()
    selected = [
        record
        for record in records
        if wanted == STATUS_FILTER_ALL or record.status.value == wanted
    ]
    selected.sort(key=lambda record: record.started_at, reverse=True)
    return [record.copy() for record in selected[: max(0, int(limit))]]


def build_snapshot(record: TaskRecord, tail: int = DEFAULT_TAIL_LINES, now: Optional[int] = None) -> TaskSnapshot:
    current = now_ms() if now is None else now
    idle_ms: Optional[int] = None
    if not record.is_terminal and record.activity.last_activity_at is not None:
        idle_ms = max(0, current - record.activity.last_activity_at)
    return TaskSnapshot(
        record=record.copy(),
        log_tail=tail_lines(Path(record.log_file), tail) if record.log_file else [],
        elapsed_ms=record.duration_ms(current),
        idle_ms=idle_ms,
    )
