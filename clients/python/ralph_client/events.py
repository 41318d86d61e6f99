"""
Stream frame decoding and classification.

Frames are decoded leniently: anything that is not a JSON object with string
``topic`` and ``cursor`` fields raises ``StreamDecodeError`` and the stream
drops it. Accepted frames are turned into log entries, status strings,
backpressure notices or ring-buffer previews depending on their topic.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from pydantic import ValidationError

from ralph_client.config import BACKPRESSURE_DROPPED
from ralph_client.exceptions import StreamDecodeError
from ralph_client.models import BackpressureNotice, LogEntry, StreamEventEnvelope, TaskEvent

logger = logging.getLogger("ralph_client")


def decode_frame(raw: Union[str, bytes]) -> StreamEventEnvelope:
    """Parse one socket message into a stream envelope."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise StreamDecodeError(f"frame is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise StreamDecodeError("frame is not a JSON object")
    try:
        return StreamEventEnvelope.model_validate(data)
    except ValidationError as e:
        raise StreamDecodeError(f"frame is missing required fields: {e.error_count()} error(s)")


def _as_record(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def to_log_entry(event: StreamEventEnvelope) -> LogEntry:
    payload = _as_record(event.payload)
    source = "stderr" if payload and payload.get("source") == "stderr" else "stdout"

    line = ""
    if payload is not None:
        candidate = next(
            (payload[key] for key in ("line", "message", "text") if payload.get(key) is not None),
            None,
        )
        line = candidate if isinstance(candidate, str) else _to_json(payload)

    timestamp = payload.get("timestamp") if payload else None
    return LogEntry(
        id=event.sequence,
        cursor=event.cursor,
        line=line,
        timestamp=timestamp if isinstance(timestamp, str) else event.ts,
        source=source,
    )


def normalize_payload(payload: Any) -> Union[str, Dict[str, Any], None]:
    if payload is None or isinstance(payload, (str, dict)):
        return payload
    return _to_json(payload)


def to_task_event(event: StreamEventEnvelope) -> TaskEvent:
    payload = _as_record(event.payload) or {}
    iteration = payload.get("iteration")
    hat = payload.get("hat")
    triggered = payload.get("triggered")
    return TaskEvent(
        ts=event.ts,
        topic=event.topic,
        iteration=iteration if _is_number(iteration) else None,
        hat=hat if isinstance(hat, str) else None,
        triggered=triggered if isinstance(triggered, str) else None,
        payload=normalize_payload(event.payload),
    )


def status_from(event: StreamEventEnvelope) -> Optional[str]:
    """Status carried by a status-change frame (``to`` wins over ``status``)."""
    payload = _as_record(event.payload) or {}
    for key in ("to", "status"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def backpressure_from(event: StreamEventEnvelope) -> Optional[BackpressureNotice]:
    """Notice for an ``error.raised`` frame that reports dropped events."""
    payload = _as_record(event.payload) or {}
    message = payload.get("message")
    code = payload.get("code")
    message = message if isinstance(message, str) else "Stream error"
    code = code if isinstance(code, str) else "INTERNAL"
    if code != BACKPRESSURE_DROPPED:
        logger.warning("Stream error event", extra={"code": code, "error": message})
        return None
    return BackpressureNotice(code=code, message=message)


class LogBuffer:
    """
    Log entries waiting to be written to the store.

    ``schedule_flush`` arms a single debounce timer; entries appended while it
    is pending ride along in the same batch.
    """

    def __init__(
        self,
        on_flush: Callable[[List[LogEntry]], None],
        debounce_ms: int = 50,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._on_flush = on_flush
        self._debounce = debounce_ms / 1000.0
        self._loop = loop
        self._entries: List[LogEntry] = []
        self._handle: Optional[asyncio.TimerHandle] = None

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def flush_scheduled(self) -> bool:
        return self._handle is not None

    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)
        self.schedule_flush()

    def schedule_flush(self) -> None:
        if self._handle is not None:
            return
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self._debounce, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> None:
        """Hand the whole buffer over in one batch. Empty buffers are a no-op."""
        if not self._entries:
            return
        batch = self._entries
        self._entries = []
        self._on_flush(batch)

    def discard(self) -> None:
        self.cancel()
        self._entries = []

    def _fire(self) -> None:
        self._handle = None
        self.flush()


class EventRing:
    """Most recent non-log events, oldest dropped first."""

    def __init__(self, capacity: int = 200):
        self._events: Deque[TaskEvent] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._events)

    def append(self, event: TaskEvent) -> None:
        self._events.append(event)

    def clear(self) -> None:
        self._events.clear()

    @property
    def events(self) -> List[TaskEvent]:
        return list(self._events)

    @property
    def latest(self) -> Optional[TaskEvent]:
        return self._events[-1] if self._events else None
