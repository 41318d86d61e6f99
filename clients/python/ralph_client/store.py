"""
Per-task log history and cursor checkpoints.

``LogStore`` is the boundary the stream writes to. The stream only calls
``append_logs`` from its batched flush, never per event.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Deque, Dict, List, Optional, Sequence, Set, Union

from ralph_client.cursor import newest
from ralph_client.models import LogEntry

logger = logging.getLogger("ralph_client")


class LogStore(ABC):
    """Storage for task log entries and resume checkpoints."""

    @abstractmethod
    def append_logs(self, task_id: str, batch: Sequence[LogEntry]) -> None:
        ...

    @abstractmethod
    def clear_logs(self, task_id: str) -> None:
        ...

    @abstractmethod
    def get_logs(self, task_id: str) -> List[LogEntry]:
        ...

    @abstractmethod
    def get_last_cursor(self, task_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def save_cursor(self, task_id: str, cursor: str) -> None:
        ...

    def close(self) -> None:
        """Release resources; pending checkpoint writes are completed first."""


class InMemoryLogStore(LogStore):
    """
    Bounded in-process log history.

    Entries re-delivered after a resume (same stream sequence id) are
    dropped, so at-least-once delivery does not show duplicate lines.
    """

    def __init__(self, max_entries: int = 5000):
        self._max_entries = max_entries
        self._logs: Dict[str, Deque[LogEntry]] = {}
        self._ids: Dict[str, Set[int]] = {}
        self._cursors: Dict[str, str] = {}

    def append_logs(self, task_id: str, batch: Sequence[LogEntry]) -> None:
        if not batch:
            return
        entries = self._logs.setdefault(task_id, deque(maxlen=self._max_entries))
        held = self._ids.setdefault(task_id, set())
        for entry in batch:
            if entry.id is not None and entry.id in held:
                continue
            if entries and len(entries) == entries.maxlen:
                held.discard(entries[0].id)
            entries.append(entry)
            if entry.id is not None:
                held.add(entry.id)

    def clear_logs(self, task_id: str) -> None:
        self._logs.pop(task_id, None)
        self._ids.pop(task_id, None)

    def get_logs(self, task_id: str) -> List[LogEntry]:
        return list(self._logs.get(task_id, ()))

    def get_last_cursor(self, task_id: str) -> Optional[str]:
        entry_cursor = None
        for entry in reversed(self._logs.get(task_id, ())):
            if entry.cursor:
                entry_cursor = entry.cursor
                break
        return newest(self._cursors.get(task_id), entry_cursor)

    def save_cursor(self, task_id: str, cursor: str) -> None:
        self._cursors[task_id] = cursor


class JsonCheckpointStore(InMemoryLogStore):
    """
    In-memory log history with cursor checkpoints persisted to a JSON file,
    so a restarted client resumes where the previous process stopped.

    Called from a running event loop, ``save_cursor`` hands the file write
    to a single worker thread; writes land in call order and a failed write
    is logged. Outside a loop the write happens inline and failures raise.
    ``close()`` waits for queued writes.
    """

    def __init__(self, path: Union[str, Path], max_entries: int = 5000):
        super().__init__(max_entries=max_entries)
        self._path = Path(path)
        self._cursors.update(self._load())
        self._executor: Optional[ThreadPoolExecutor] = None

    def _load(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable checkpoint file", extra={
                "path": str(self._path),
                "error": str(e),
            })
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(k, str) and isinstance(v, str)}

    def save_cursor(self, task_id: str, cursor: str) -> None:
        if self._cursors.get(task_id) == cursor:
            return
        super().save_cursor(task_id, cursor)
        snapshot = dict(self._cursors)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(snapshot)
            return
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ralph-checkpoint")
        future = loop.run_in_executor(self._executor, self._write, snapshot)
        future.add_done_callback(self._write_done)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _write(self, snapshot: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".checkpoints-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(snapshot, f, indent=2, sort_keys=True)
            os.replace(tmp, self._path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _write_done(self, future: "asyncio.Future[None]") -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Checkpoint write failed", exc_info=exc, extra={
                "path": str(self._path),
            })
