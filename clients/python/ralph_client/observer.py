"""
Notification side channel from a task stream to its UI or caller.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ralph_client.models import ConnectionState, LogEntry, TaskEvent

logger = logging.getLogger("ralph_client")


class StreamObserver:
    """Receives stream notifications. Override the hooks you need."""

    def on_state(self, state: ConnectionState) -> None:
        pass

    def on_status(self, status: str) -> None:
        pass

    def on_log(self, entry: LogEntry) -> None:
        pass

    def on_event(self, event: TaskEvent) -> None:
        pass

    def on_error(self, message: Optional[str]) -> None:
        pass


class CallbackObserver(StreamObserver):
    """Observer built from plain callables, any of which may be omitted."""

    def __init__(
        self,
        on_state: Optional[Callable[[ConnectionState], None]] = None,
        on_status: Optional[Callable[[str], None]] = None,
        on_log: Optional[Callable[[LogEntry], None]] = None,
        on_event: Optional[Callable[[TaskEvent], None]] = None,
        on_error: Optional[Callable[[Optional[str]], None]] = None,
    ):
        self._callbacks = {
            "on_state": on_state,
            "on_status": on_status,
            "on_log": on_log,
            "on_event": on_event,
            "on_error": on_error,
        }

    def on_state(self, state: ConnectionState) -> None:
        self._call("on_state", state)

    def on_status(self, status: str) -> None:
        self._call("on_status", status)

    def on_log(self, entry: LogEntry) -> None:
        self._call("on_log", entry)

    def on_event(self, event: TaskEvent) -> None:
        self._call("on_event", event)

    def on_error(self, message: Optional[str]) -> None:
        self._call("on_error", message)

    def _call(self, hook: str, arg) -> None:
        callback = self._callbacks[hook]
        if callback is not None:
            callback(arg)


def notify(observer: Optional[StreamObserver], hook: str, arg) -> None:
    """Invoke ``observer.<hook>(arg)``; observer failures are logged, never raised."""
    if observer is None:
        return
    try:
        getattr(observer, hook)(arg)
    except Exception:
        logger.warning("Stream observer failed", exc_info=True, extra={"hook": hook})
