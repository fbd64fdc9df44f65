"""Liveness tracking for one task's output streams."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional

from codex_connector.task.types import TaskActivity, now_ms

ActivityEventSink = Callable[[str, Dict[str, Any]], None]

DEFAULT_HEARTBEAT_INTERVAL_SEC = 30.0
DEFAULT_STALL_THRESHOLD_SEC = 120.0
DEFAULT_SNIPPET_BYTES = 200
DEFAULT_SNIPPET_MIN_CHARS = 10


class ActivityMonitor:
    """Turns raw stdout/stderr chunks into activity fields and heartbeats.

    The monitor mutates ``activity`` in place. It is owned by the task's
    supervisor, so every update runs on the event loop thread.
    """

    def __init__(
        self,
        activity: TaskActivity,
        *,
        started_at_ms: int,
        event_sink: ActivityEventSink,
        heartbeat_interval_sec: float = DEFAULT_HEARTBEAT_INTERVAL_SEC,
        stall_threshold_sec: float = DEFAULT_STALL_THRESHOLD_SEC,
        snippet_bytes: int = DEFAULT_SNIPPET_BYTES,
        snippet_min_chars: int = DEFAULT_SNIPPET_MIN_CHARS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._activity = activity
        self._started_at_ms = int(started_at_ms)
        self._event_sink = event_sink
        self._interval_sec = max(0.001, float(heartbeat_interval_sec))
        self._stall_threshold_ms = int(float(stall_threshold_sec) * 1000)
        self._snippet_bytes = max(1, int(snippet_bytes))
        self._snippet_min_chars = max(0, int(snippet_min_chars))
        self._clock = clock
        self._timer: Optional[asyncio.Task[None]] = None
        self._stopped = False

    @property
    def activity(self) -> TaskActivity:
        return self._activity

    @property
    def stopped(self) -> bool:
        return self._stopped

    def mark(self, activity_type: str) -> None:
        self._activity.last_activity_at = self._clock()
        self._activity.last_activity_type = activity_type

    def record_chunk(self, stream: str, data: bytes) -> None:
        if not data:
            return
        self.mark(stream)
        if stream == "stderr":
            self._activity.stderr_bytes += len(data)
        else:
            self._activity.stdout_bytes += len(data)

        tail = data[-self._snippet_bytes :].decode("utf-8", errors="replace").strip()
        if len(tail) > self._snippet_min_chars:
            self._activity.last_output_snippet = tail

    def idle_ms(self, now: Optional[int] = None) -> int:
        current = now if now is not None else self._clock()
        last = self._activity.last_activity_at
        if last is None:
            last = self._started_at_ms
        return max(0, int(current) - int(last))

    def start(self) -> None:
        if self._stopped or self._timer is not None:
            return
        self._timer = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        timer = self._timer
        self._timer = None
        if timer is not None and not timer.done():
            timer.cancel()

    def tick(self, now: Optional[int] = None) -> None:
        """One heartbeat: bump the counter and emit heartbeat/stall events."""

        if self._stopped:
            return
        current = now if now is not None else self._clock()
        idle = self.idle_ms(current)
        self._activity.heartbeat_count += 1
        payload = {
            "heartbeat_count": self._activity.heartbeat_count,
            "elapsed_ms": max(0, int(current) - self._started_at_ms),
            "idle_ms": idle,
            "last_activity_type": self._activity.last_activity_type,
            "stdout_bytes": self._activity.stdout_bytes,
            "stderr_bytes": self._activity.stderr_bytes,
        }
        self._event_sink("heartbeat", payload)
        if idle > self._stall_threshold_ms:
            self._event_sink(
                "stall_warning",
                dict(payload, threshold_ms=self._stall_threshold_ms),
            )

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self._interval_sec)
            self.tick()
