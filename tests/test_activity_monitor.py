from __future__ import annotations

import asyncio

from codex_connector.task.activity import ActivityMonitor
from codex_connector.task.types import TaskActivity


class _Clock:
    def __init__(self, value: int) -> None:
        self.value = value

    def __call__(self) -> int:
        return self.value


def _monitor(events, clock, **kwargs):
    return ActivityMonitor(
        TaskActivity(),
        started_at_ms=1_000,
        event_sink=lambda event, payload: events.append((event, payload)),
        clock=clock,
        **kwargs,
    )


def test_record_chunk_counts_bytes_per_stream():
    events = []
    clock = _Clock(1_500)
    monitor = _monitor(events, clock)

    monitor.record_chunk("stdout", b"hello\n")
    clock.value = 1_600
    monitor.record_chunk("stderr", b"warning: disk almost full\n")

    activity = monitor.activity
    assert activity.stdout_bytes == 6
    assert activity.stderr_bytes == 26
    assert activity.last_activity_type == "stderr"
    assert activity.last_activity_at == 1_600
    assert activity.last_output_snippet == "warning: disk almost full"


def test_short_chunks_do_not_replace_snippet():
    monitor = _monitor([], _Clock(1_000))

    monitor.record_chunk("stdout", b"building the project now\n")
    monitor.record_chunk("stdout", b"  ok  \n")

    assert monitor.activity.last_output_snippet == "building the project now"
    assert monitor.activity.stdout_bytes == 25 + 7


def test_snippet_uses_trailing_bytes_only():
    monitor = _monitor([], _Clock(1_000), snippet_bytes=20)

    monitor.record_chunk("stdout", b"x" * 100 + b"0123456789abcdefghij")

    assert monitor.activity.last_output_snippet == "0123456789abcdefghij"


def test_tick_emits_heartbeat_and_stall_warning():
    events = []
    clock = _Clock(1_000)
    monitor = _monitor(events, clock, stall_threshold_sec=2.0)
    monitor.record_chunk("stdout", b"first line of output\n")

    clock.value = 2_000
    monitor.tick()
    assert [event for event, _ in events] == ["heartbeat"]
    assert events[0][1]["heartbeat_count"] == 1
    assert events[0][1]["elapsed_ms"] == 1_000
    assert events[0][1]["idle_ms"] == 1_000

    clock.value = 3_500
    monitor.tick()
    assert [event for event, _ in events] == ["heartbeat", "heartbeat", "stall_warning"]
    stall = events[-1][1]
    assert stall["idle_ms"] == 2_500
    assert stall["threshold_ms"] == 2_000
    assert monitor.activity.heartbeat_count == 2


def test_idle_falls_back_to_start_time():
    monitor = _monitor([], _Clock(4_000))

    assert monitor.idle_ms() == 3_000


def test_stop_is_idempotent_and_silences_ticks():
    events = []
    monitor = _monitor(events, _Clock(1_000))

    monitor.stop()
    monitor.stop()
    monitor.tick()

    assert monitor.stopped is True
    assert events == []
    assert monitor.activity.heartbeat_count == 0


def test_timer_emits_heartbeats_until_stopped():
    events = []

    async def scenario():
        monitor = ActivityMonitor(
            TaskActivity(),
            started_at_ms=0,
            event_sink=lambda event, payload: events.append(event),
            heartbeat_interval_sec=0.02,
        )
        monitor.start()
        await asyncio.sleep(0.15)
        monitor.stop()
        count = monitor.activity.heartbeat_count
        await asyncio.sleep(0.1)
        return count, monitor.activity.heartbeat_count

    at_stop, later = asyncio.run(scenario())

    assert at_stop >= 2
    assert later == at_stop
    assert events.count("heartbeat") == at_stop
