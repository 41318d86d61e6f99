"""
Resume cursor tracking and debounced acknowledgment.

The tracker holds the newest cursor seen on a stream. That value is what a
reconnect resumes from, so it is updated synchronously for every accepted
frame, before the frame is dispatched. Acks are a separate, lossy channel:
at most one ack timer is pending and it always carries the newest cursor.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger("ralph_client")


def cursor_sequence(cursor: str) -> Optional[int]:
    """Sequence part of a ``<epochMillis>-<sequence>`` cursor, if it has one."""
    _, sep, tail = cursor.rpartition("-")
    if not sep or not tail.isdigit():
        return None
    return int(tail)


def is_older(candidate: str, current: Optional[str]) -> bool:
    """True when ``candidate`` is strictly behind ``current``.

    Cursors compare by sequence, the same ordering the server applies to
    acks. Cursors without a sequence are never considered older.
    """
    if current is None:
        return False
    candidate_seq = cursor_sequence(candidate)
    current_seq = cursor_sequence(current)
    if candidate_seq is None or current_seq is None:
        return False
    return candidate_seq < current_seq


def newest(*cursors: Optional[str]) -> Optional[str]:
    """Newest of the given cursors; earlier arguments win ties."""
    best: Optional[str] = None
    for cursor in cursors:
        if cursor is None:
            continue
        if best is None or is_older(best, cursor):
            best = cursor
    return best


class CursorTracker:
    """
    Last-cursor bookkeeping plus the ack debounce timer.

    ``on_ack_due`` is called with the cursor to acknowledge when the timer
    fires; deciding whether an ack can actually be sent (is there still a
    subscription?) is up to the owner.
    """

    def __init__(
        self,
        on_ack_due: Callable[[str], None],
        debounce_ms: int = 250,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._on_ack_due = on_ack_due
        self._debounce = debounce_ms / 1000.0
        self._loop = loop
        self._last_cursor: Optional[str] = None
        self._pending_ack: Optional[str] = None
        self._ack_handle: Optional[asyncio.TimerHandle] = None

    @property
    def last_cursor(self) -> Optional[str]:
        return self._last_cursor

    @property
    def pending_ack(self) -> Optional[str]:
        return self._pending_ack

    @property
    def ack_scheduled(self) -> bool:
        return self._ack_handle is not None

    def advance(self, cursor: str) -> bool:
        """Move the last cursor forward; returns False if ``cursor`` is older."""
        if is_older(cursor, self._last_cursor):
            logger.debug("Ignoring older cursor", extra={
                "cursor": cursor,
                "last_cursor": self._last_cursor,
            })
            return False
        self._last_cursor = cursor
        return True

    def observe(self, cursor: str) -> None:
        """Record a delivered frame's cursor and schedule an ack for it."""
        self.advance(cursor)
        self._pending_ack = self._last_cursor
        if self._ack_handle is not None:
            return
        loop = self._loop or asyncio.get_running_loop()
        self._ack_handle = loop.call_later(self._debounce, self._fire_ack)

    def resume_cursor(self, persisted: Optional[str]) -> Optional[str]:
        """Cursor to resume from: the newer of memory and the persisted checkpoint."""
        return newest(self._last_cursor, persisted)

    def cancel_ack(self) -> None:
        if self._ack_handle is not None:
            self._ack_handle.cancel()
            self._ack_handle = None
        self._pending_ack = None

    def reset(self, cursor: Optional[str] = None) -> None:
        """Forget everything, e.g. when the stream switches to another task."""
        self.cancel_ack()
        self._last_cursor = cursor

    def _fire_ack(self) -> None:
        self._ack_handle = None
        cursor = self._pending_ack
        self._pending_ack = None
        if cursor is None:
            return
        self._on_ack_due(cursor)
