"""Best-effort lifecycle notifications."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from codex_connector.kernel.debug_log import DebugLogWriter

NotificationListener = Callable[[str, str, Dict[str, Any]], None]


class NotificationSink:
    """Fire-and-forget delivery of task events to an optional listener.

    ``emit`` never raises. This is the only place listener failures are
    suppressed; they are counted in ``failures``.
    """

    def __init__(
        self,
        listener: Optional[NotificationListener] = None,
        debug_log: Optional[DebugLogWriter] = None,
    ) -> None:
        self._listener = listener
        self._debug_log = debug_log or DebugLogWriter.disabled()
        self.failures = 0

    def emit(self, task_id: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            listener(str(task_id), str(message), dict(data or {}))
        except Exception as exc:
            self.failures += 1
            self._debug_log.write_entry(
                level="warn",
                component="notify",
                kind="delivery",
                task_id=task_id,
                message="notify.listener_failed",
                data={"event": message, "error": "{0}: {1}".format(type(exc).__name__, exc)},
            )
